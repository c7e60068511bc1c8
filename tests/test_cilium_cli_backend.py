"""Tests for the command line backend with a fake process runner."""

import json
import logging

import pytest

from ciliumctl.backends.base import BackendRequest
from ciliumctl.backends.cilium_cli import CiliumCliBackend, classify_failure
from ciliumctl.features.base import FeatureContext
from ciliumctl.shared import debug
from ciliumctl.shared.convergence import ConvergenceWaiter
from ciliumctl.shared.errors import (
    ConfigurationError,
    ConvergenceTimeoutError,
    FatalError,
    NotFoundError,
    TransientError,
)
from ciliumctl.shared.models import FeatureIdentity, FeatureKind, ObservedStatus, UpgradeMode
from ciliumctl.shared.utils import CommandResult

INSTALL = FeatureIdentity(FeatureKind.INSTALL, "kube-system", "cilium")


class FakeRunner:
    """Answers commands by the first matching word sequence."""

    def __init__(self, responses=None):
        self.commands = []
        self.envs = []
        self.responses = responses or []

    async def __call__(self, cmd, stdin_data=None, env=None):
        self.commands.append(cmd)
        self.envs.append(env)
        joined = " ".join(cmd)
        for needle, result in self.responses:
            if needle in joined:
                return result
        return CommandResult(0)


def _ok(payload):
    return CommandResult(0, stdout=json.dumps(payload))


@pytest.mark.parametrize(
    "result, expected",
    [
        (CommandResult(1, stderr='Error: release: not found'), NotFoundError),
        (CommandResult(1, stderr="dial tcp 10.0.0.1:6443: i/o timeout"), TransientError),
        (CommandResult(1, stderr="Unable to connect to the server: EOF"), TransientError),
        (CommandResult(1, stderr="invalid value for --datapath-mode"), FatalError),
        (CommandResult(127, stderr="cilium: No such file"), FatalError),
    ],
)
def test_classify_failure(result, expected):
    assert type(classify_failure(result, "op")) is expected


@pytest.mark.asyncio
async def test_first_install_runs_cilium_install():
    runner = FakeRunner([("helm status", CommandResult(1, stderr="Error: release: not found"))])
    backend = CiliumCliBackend(kubeconfig="/tmp/kc", context="east", runner=runner)

    await backend.install(
        BackendRequest(
            identity=INSTALL,
            version="1.17.3",
            options={"repository": "https://helm.cilium.io", "datapath_mode": ""},
            overrides=["ipam.mode=kubernetes"],
        )
    )

    cmd = runner.commands[-1]
    assert cmd[:2] == ["cilium", "install"]
    assert cmd[cmd.index("--version") + 1] == "1.17.3"
    assert cmd[cmd.index("--set") + 1] == "ipam.mode=kubernetes"
    assert cmd[cmd.index("--context") + 1] == "east"
    assert "--helm-release-name" not in cmd
    assert "--datapath-mode" not in cmd
    assert runner.envs[-1] == {"KUBECONFIG": "/tmp/kc"}


@pytest.mark.asyncio
async def test_install_over_existing_release_upgrades():
    runner = FakeRunner()
    backend = CiliumCliBackend(runner=runner)

    await backend.install(BackendRequest(identity=INSTALL, version="1.17.3"))

    assert runner.commands[-1][:2] == ["cilium", "upgrade"]


@pytest.mark.asyncio
async def test_upgrade_passes_values_mode_and_file():
    seen = {}

    async def runner(cmd, stdin_data=None, env=None):
        if "--values" in cmd:
            with open(cmd[cmd.index("--values") + 1]) as f:
                seen["values"] = f.read()
        seen["cmd"] = cmd
        return CommandResult(0)

    backend = CiliumCliBackend(runner=runner)
    identity = FeatureIdentity(FeatureKind.INSTALL, "kube-system", "my-cilium")

    await backend.upgrade(
        BackendRequest(identity=identity, values="debug:\n  enabled: true\n", upgrade_mode=UpgradeMode.RESET)
    )

    cmd = seen["cmd"]
    assert "--reset-values" in cmd
    assert cmd[cmd.index("--helm-release-name") + 1] == "my-cilium"
    assert seen["values"] == "debug:\n  enabled: true\n"


@pytest.mark.asyncio
async def test_install_status_reports_agent_readiness():
    runner = FakeRunner(
        [
            ("helm status", _ok({"info": {"status": "deployed"}, "chart": {"metadata": {"appVersion": "1.17.3"}}})),
            ("daemonset cilium", _ok({"status": {"numberReady": 2, "desiredNumberScheduled": 3}})),
        ]
    )
    report = await CiliumCliBackend(runner=runner).status(INSTALL)

    assert report.status is ObservedStatus.CONVERGING
    assert report.details["version"] == "1.17.3"
    assert report.details["ready"] == 2


@pytest.mark.asyncio
async def test_failed_release_is_error():
    runner = FakeRunner([("helm status", _ok({"info": {"status": "failed"}}))])

    report = await CiliumCliBackend(runner=runner).status(INSTALL)

    assert report.status is ObservedStatus.ERROR


@pytest.mark.asyncio
async def test_missing_release_is_absent():
    runner = FakeRunner([("helm status", CommandResult(1, stderr="Error: release: not found"))])

    report = await CiliumCliBackend(runner=runner).status(INSTALL)

    assert report.status is ObservedStatus.ABSENT


@pytest.mark.asyncio
async def test_unreachable_cluster_raises_transient():
    runner = FakeRunner([("helm status", CommandResult(1, stderr="connection refused"))])

    with pytest.raises(TransientError):
        await CiliumCliBackend(runner=runner).status(INSTALL)


@pytest.mark.asyncio
async def test_config_status_matches_value():
    identity = FeatureIdentity(FeatureKind.CONFIG, "kube-system", "cilium-config-debug")
    runner = FakeRunner([("config view", CommandResult(0, stdout="cluster-name   east\ndebug          true\n"))])
    backend = CiliumCliBackend(runner=runner)

    healthy = await backend.status(identity, {"key": "debug", "value": "true"})
    mismatch = await backend.status(identity, {"key": "debug", "value": "false"})
    missing = await backend.status(identity, {"key": "bpf-lb-mode", "value": "dsr"})

    assert healthy.status is ObservedStatus.HEALTHY
    assert mismatch.status is ObservedStatus.ABSENT
    assert missing.status is ObservedStatus.ABSENT


@pytest.mark.asyncio
async def test_kube_proxy_park_patch():
    identity = FeatureIdentity(FeatureKind.KUBEPROXY_FREE, "kube-system", "cilium-kubeproxy-less")
    runner = FakeRunner()

    await CiliumCliBackend(runner=runner).install(BackendRequest(identity=identity, options={"name": "kube-proxy"}))

    patch_cmd = runner.commands[-1]
    assert patch_cmd[:4] == ["kubectl", "patch", "daemonset", "kube-proxy"]
    patch = json.loads(patch_cmd[patch_cmd.index("-p") + 1])
    assert patch["spec"]["template"]["spec"]["nodeSelector"] == {"non-existing": "true"}


@pytest.mark.asyncio
async def test_kube_proxy_missing_on_create_is_fatal():
    identity = FeatureIdentity(FeatureKind.KUBEPROXY_FREE, "kube-system", "cilium-kubeproxy-less")
    runner = FakeRunner([("daemonset kube-proxy", CommandResult(1, stderr='daemonsets "kube-proxy" not found'))])
    backend = CiliumCliBackend(runner=runner)

    with pytest.raises(FatalError):
        await backend.install(BackendRequest(identity=identity, options={"name": "kube-proxy"}))

    report = await backend.status(identity, {"name": "kube-proxy"})
    assert report.status is ObservedStatus.HEALTHY


@pytest.mark.asyncio
async def test_kube_proxy_running_unparked_is_error():
    identity = FeatureIdentity(FeatureKind.KUBEPROXY_FREE, "kube-system", "cilium-kubeproxy-less")
    runner = FakeRunner([("daemonset kube-proxy", _ok({"status": {"numberReady": 3}, "spec": {}}))])

    report = await CiliumCliBackend(runner=runner).status(identity, {"name": "kube-proxy"})

    assert report.status is ObservedStatus.ERROR


@pytest.mark.asyncio
async def test_read_ca_and_metadata():
    runner = FakeRunner(
        [
            ("secret cilium-ca", _ok({"data": {"ca.crt": "Y3J0", "ca.key": "a2V5"}})),
            ("get metadata", _ok({"appVersion": "1.17.3"})),
        ]
    )
    backend = CiliumCliBackend(runner=runner)

    assert await backend.read_ca(INSTALL) == {"crt": "Y3J0", "key": "a2V5"}
    assert await backend.read_metadata(INSTALL) == "1.17.3"


@pytest.mark.asyncio
async def test_workload_readiness_counts_pods():
    runner = FakeRunner([("get pods", _ok({"items": [{}, {}]}))])

    assert await CiliumCliBackend(runner=runner).get_workload_readiness("kube-system", "k8s-app=hubble-relay") == 2


@pytest.mark.asyncio
async def test_namespace_phase_none_when_gone():
    runner = FakeRunner([("namespace cilium-test", CommandResult(1, stderr='namespaces "cilium-test" not found'))])

    assert await CiliumCliBackend(runner=runner).get_namespace_phase("cilium-test") is None


def _feature_ctx(runner, clock):
    waiter = ConvergenceWaiter(interval=1.0, clock=clock, sleep=clock.sleep)
    return FeatureContext(backend=CiliumCliBackend(runner=runner), waiter=waiter)


def _flag_values(cmd, flag):
    return [cmd[i + 1] for i, arg in enumerate(cmd) if arg == flag]


@pytest.mark.asyncio
async def test_config_status_without_value_checks_key_only():
    identity = FeatureIdentity(FeatureKind.CONFIG, "kube-system", "cilium-config-debug")
    runner = FakeRunner([("config view", CommandResult(0, stdout="debug          true\n"))])
    backend = CiliumCliBackend(runner=runner)

    present = await backend.status(identity, {"key": "debug"})
    missing = await backend.status(identity, {"key": "bpf-lb-mode"})

    assert present.status is ObservedStatus.HEALTHY
    assert present.details == {"value": "true"}
    assert missing.status is ObservedStatus.ABSENT


@pytest.mark.asyncio
async def test_config_read_by_identity_finds_live_key(features, clock):
    runner = FakeRunner([("config view", CommandResult(0, stdout="cluster-name   east\ndebug          true\n"))])
    feature = features.require(FeatureKind.CONFIG)
    identity = feature.identity_for("kube-system", {"key": "debug", "value": "true"})

    observed = await feature.read(_feature_ctx(runner, clock), identity)

    assert not observed.gone
    assert observed.status is ObservedStatus.HEALTHY
    assert observed.details["value"] == "true"


@pytest.mark.asyncio
async def test_config_delete_by_identity_uses_key_from_release(features, clock):
    runner = FakeRunner()
    feature = features.require(FeatureKind.CONFIG)
    identity = FeatureIdentity(FeatureKind.CONFIG, "kube-system", "cilium-config-enable-l7-proxy")

    await feature.delete(_feature_ctx(runner, clock), identity)

    assert runner.commands[-1][:4] == ["cilium", "config", "delete", "enable-l7-proxy"]
    assert "--restart=true" in runner.commands[-1]


@pytest.mark.asyncio
async def test_uninstall_config_without_key_is_configuration_error():
    identity = FeatureIdentity(FeatureKind.CONFIG, "kube-system", "cilium-config-")
    runner = FakeRunner()

    with pytest.raises(ConfigurationError):
        await CiliumCliBackend(runner=runner).uninstall(BackendRequest(identity=identity))

    assert runner.commands == []


@pytest.mark.asyncio
async def test_connect_delete_by_identity_recovers_dashed_contexts(features, clock):
    runner = FakeRunner([("config get-contexts", CommandResult(0, stdout="kind\nkind-east\nkind-west\n"))])
    feature = features.require(FeatureKind.CLUSTERMESH_CONNECT)
    identity = FeatureIdentity(
        FeatureKind.CLUSTERMESH_CONNECT, "kube-system", "ciliumclustermeshconnect-kind-east-kind-west"
    )

    await feature.delete(_feature_ctx(runner, clock), identity)

    disconnect = runner.commands[-1]
    assert disconnect[:3] == ["cilium", "clustermesh", "disconnect"]
    assert _flag_values(disconnect, "--destination-context") == ["kind-east", "kind-west"]


@pytest.mark.asyncio
async def test_uninstall_connect_without_contexts_is_configuration_error():
    identity = FeatureIdentity(FeatureKind.CLUSTERMESH_CONNECT, "kube-system", "ciliumclustermeshconnect-")
    runner = FakeRunner()

    with pytest.raises(ConfigurationError):
        await CiliumCliBackend(runner=runner).uninstall(BackendRequest(identity=identity))

    assert runner.commands == []


CONNECT = FeatureIdentity(FeatureKind.CLUSTERMESH_CONNECT, "kube-system", "ciliumclustermeshconnect-east")


@pytest.mark.parametrize(
    "result, expected",
    [
        (CommandResult(0, stdout=""), ObservedStatus.CONVERGING),
        (CommandResult(0, stdout="   \n"), ObservedStatus.CONVERGING),
        (CommandResult(0, stdout="⌛ Waiting for clustermesh"), ObservedStatus.CONVERGING),
        (_ok({}), ObservedStatus.CONVERGING),
        (_ok({"connectivity": {"connected": 0, "total": 0}}), ObservedStatus.CONVERGING),
        (_ok({"connectivity": {"connected": 1, "total": 2}}), ObservedStatus.CONVERGING),
        (_ok({"connectivity": {"connected": 2, "total": 2}}), ObservedStatus.HEALTHY),
        (CommandResult(1, stderr="remote cluster east unreachable"), ObservedStatus.CONVERGING),
        (CommandResult(1, stderr='deployments "clustermesh-apiserver" not found'), ObservedStatus.ABSENT),
    ],
)
@pytest.mark.asyncio
async def test_connect_status(result, expected):
    runner = FakeRunner([("clustermesh status", result)])

    report = await CiliumCliBackend(runner=runner).status(CONNECT)

    assert report.status is expected


@pytest.mark.asyncio
async def test_connect_create_with_wait_does_not_accept_empty_status(features, clock):
    runner = FakeRunner([("clustermesh status", CommandResult(0, stdout=""))])
    feature = features.require(FeatureKind.CLUSTERMESH_CONNECT)
    desired = feature.desired_state(
        "kube-system", {"destination_contexts": ["east"]}, wait=True, wait_timeout=3
    )

    with pytest.raises(ConvergenceTimeoutError):
        await feature.create(_feature_ctx(runner, clock), desired)

    assert clock.now == 3


@pytest.mark.asyncio
async def test_rejected_install_is_fatal_not_not_found():
    runner = FakeRunner(
        [
            ("helm status", CommandResult(1, stderr="Error: release: not found")),
            ("cilium install", CommandResult(1, stderr='Error: chart "cilium" version "9.9.9" not found')),
        ]
    )

    with pytest.raises(FatalError) as excinfo:
        await CiliumCliBackend(runner=runner).install(BackendRequest(identity=INSTALL, version="9.9.9"))

    assert not isinstance(excinfo.value, NotFoundError)
    assert "9.9.9" in str(excinfo.value)


@pytest.mark.asyncio
async def test_rejected_apply_is_fatal_not_not_found():
    identity = FeatureIdentity(FeatureKind.HUBBLE, "kube-system", "cilium-hubble")
    runner = FakeRunner([("hubble enable", CommandResult(1, stderr='Error: context "west" not found'))])

    with pytest.raises(FatalError) as excinfo:
        await CiliumCliBackend(runner=runner).upgrade(BackendRequest(identity=identity))

    assert not isinstance(excinfo.value, NotFoundError)


@pytest.mark.asyncio
async def test_verbose_trace_carries_identity(caplog):
    identity = FeatureIdentity(FeatureKind.CONFIG, "kube-system", "cilium-config-debug")
    runner = FakeRunner([("config view", CommandResult(0, stdout="debug true\n"))])
    caplog.set_level(logging.DEBUG)
    debug.enable()
    try:
        await CiliumCliBackend(runner=runner).status(identity, {"key": "debug", "value": "true"})
        await CiliumCliBackend(runner=runner).uninstall(BackendRequest(identity=identity, options={"key": "debug"}))
    finally:
        debug.disable()

    requests = [json.loads(r.getMessage()) for r in caplog.records if r.name == "ciliumctl.request"]
    responses = [json.loads(r.getMessage()) for r in caplog.records if r.name == "ciliumctl.response"]
    assert requests[0]["operation"] == "config view"
    assert requests[-1]["identity"] == identity.to_dict()
    assert requests[-1]["command"].startswith("cilium config delete debug")
    assert responses[-1]["returncode"] == 0
    assert "duration_seconds" in responses[-1]


@pytest.mark.asyncio
async def test_trace_is_silent_when_not_verbose(caplog):
    caplog.set_level(logging.DEBUG)
    debug.disable()

    await CiliumCliBackend(runner=FakeRunner()).delete_namespace("cilium-test")

    assert not [r for r in caplog.records if r.name.startswith("ciliumctl.re")]
