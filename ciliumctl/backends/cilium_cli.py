"""Backend driving the ``cilium``, ``helm`` and ``kubectl`` command line tools."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from ciliumctl.backends.base import BackendRequest, StatusReport
from ciliumctl.shared import debug
from ciliumctl.shared.errors import ConfigurationError, FatalError, NotFoundError, TransientError
from ciliumctl.shared.models import FeatureIdentity, FeatureKind, ObservedStatus, UpgradeMode
from ciliumctl.shared.utils import CommandResult, run_subprocess_with_cancellation

logger = logging.getLogger(__name__)

# Patched into the kube-proxy pod template so no node matches it.
PARKING_SELECTOR_KEY = "non-existing"
PARKING_SELECTOR_VALUE = "true"
FIELD_MANAGER = "ciliumctl"

_NOT_FOUND_MARKERS = ("not found", "notfound", "no such release")
_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "unable to connect to the server",
    "the server is currently unable to handle the request",
    "etcdserver: request timed out",
    "too many requests",
)

_UPGRADE_FLAGS = {
    UpgradeMode.RESET: "--reset-values",
    UpgradeMode.REUSE: "--reuse-values",
    UpgradeMode.RESET_THEN_REUSE: "--reset-then-reuse-values",
}


def classify_failure(result: CommandResult, operation: str) -> Exception:
    """Map a failed command to the error taxonomy."""

    output = result.output
    lowered = output.lower()
    if result.returncode == 127:
        return FatalError(f"{operation}: {output}")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(f"{operation}: {output}")
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientError(f"{operation}: {output}")
    return FatalError(f"{operation}: {output or f'exit code {result.returncode}'}")


def _bool_flag(name: str, value: Any) -> str:
    return f"--{name}={'true' if value else 'false'}"


def _ready_fraction(status: Dict[str, Any], ready_key: str, want_key: str) -> tuple:
    return int(status.get(ready_key) or 0), int(status.get(want_key) or 0)


class CiliumCliBackend:
    """Implements :class:`~ciliumctl.backends.base.FeatureBackend` with subprocesses.

    The instance only holds immutable connection settings, so a single
    backend can be shared by controllers running concurrently.
    """

    def __init__(
        self,
        kubeconfig: str = "",
        context: str = "",
        runner: Callable[..., Awaitable[CommandResult]] = run_subprocess_with_cancellation,
    ) -> None:
        self.kubeconfig = kubeconfig
        self.context = context
        self._runner = runner

    def describe(self) -> str:
        target = self.context or "current context"
        return f"cilium/helm/kubectl command line tools ({target})"

    # ------------------------------------------------------------------ #
    # Command plumbing
    # ------------------------------------------------------------------ #

    def _env(self) -> Optional[Dict[str, str]]:
        return {"KUBECONFIG": self.kubeconfig} if self.kubeconfig else None

    async def _run(
        self, cmd: List[str], operation: str, identity: Optional[FeatureIdentity] = None
    ) -> CommandResult:
        with debug.trace_command(operation, cmd, identity) as response:
            result = await self._runner(cmd, env=self._env())
            response.update(returncode=result.returncode, stderr=result.stderr[-debug.STDERR_TAIL:])
        return result

    async def _check(
        self, cmd: List[str], operation: str, identity: Optional[FeatureIdentity] = None
    ) -> CommandResult:
        result = await self._run(cmd, operation, identity)
        if not result.ok:
            raise classify_failure(result, operation)
        return result

    async def _check_apply(self, cmd: List[str], operation: str, identity: FeatureIdentity) -> CommandResult:
        try:
            return await self._check(cmd, operation, identity)
        except NotFoundError as exc:
            # An apply never reports the feature absent: a missing chart,
            # version or context means the request was rejected.
            raise FatalError(str(exc)) from exc

    def _cilium(self, namespace: str, *args: str) -> List[str]:
        cmd = ["cilium", *args, "--namespace", namespace]
        if self.context:
            cmd += ["--context", self.context]
        return cmd

    def _helm(self, namespace: str, *args: str) -> List[str]:
        cmd = ["helm", *args, "--namespace", namespace]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--kube-context", self.context]
        return cmd

    def _kubectl(self, *args: str, namespace: Optional[str] = None) -> List[str]:
        cmd = ["kubectl", *args]
        if namespace:
            cmd += ["--namespace", namespace]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--context", self.context]
        return cmd

    async def _get_json(self, *args: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        cmd = self._kubectl("get", *args, "-o", "json", namespace=namespace)
        result = await self._check(cmd, f"get {' '.join(args)}")
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TransientError(f"unparseable kubectl output for {' '.join(args)}: {exc}") from exc

    @contextmanager
    def _values_file(self, values: str) -> Iterator[Optional[str]]:
        if not values:
            yield None
            return
        fd, path = tempfile.mkstemp(prefix=".values.", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(values)
            yield path
        finally:
            try:
                os.remove(path)
            except OSError:
                pass

    # ------------------------------------------------------------------ #
    # Install / upgrade / uninstall
    # ------------------------------------------------------------------ #

    async def install(self, request: BackendRequest) -> None:
        kind = request.identity.kind
        if kind is FeatureKind.INSTALL:
            if await self._release_exists(request.identity):
                logger.info("%s already installed, upgrading in place", request.identity)
                await self._apply_install(request, upgrade=True)
            else:
                await self._apply_install(request, upgrade=False)
            return
        await self._apply(request)

    async def upgrade(self, request: BackendRequest) -> None:
        if request.identity.kind is FeatureKind.INSTALL:
            await self._apply_install(request, upgrade=True)
            return
        await self._apply(request)

    async def uninstall(self, request: BackendRequest) -> None:
        identity, options = request.identity, request.options
        ns = identity.namespace
        kind = identity.kind
        if kind is FeatureKind.INSTALL:
            cmd = self._cilium(ns, "uninstall", "--wait=false")
            if identity.release != "cilium":
                cmd += ["--helm-release-name", identity.release]
        elif kind is FeatureKind.CLUSTERMESH_ENABLE:
            cmd = self._cilium(ns, "clustermesh", "disable")
        elif kind is FeatureKind.CLUSTERMESH_CONNECT:
            if not options.get("destination_contexts"):
                raise ConfigurationError(f"uninstall {identity}: no destination contexts given")
            cmd = self._cilium(ns, "clustermesh", "disconnect")
            for destination in options["destination_contexts"]:
                cmd += ["--destination-context", destination]
            if options.get("connection_mode"):
                cmd += ["--connection-mode", options["connection_mode"]]
        elif kind is FeatureKind.HUBBLE:
            cmd = self._cilium(ns, "hubble", "disable")
        elif kind is FeatureKind.CONFIG:
            if not options.get("key"):
                raise ConfigurationError(f"uninstall {identity}: no config key given")
            cmd = self._cilium(
                ns, "config", "delete", options["key"], _bool_flag("restart", options.get("restart", True))
            )
        elif kind is FeatureKind.KUBEPROXY_FREE:
            name = options.get("name", "kube-proxy")
            await self._get_json("daemonset", name, namespace=ns)
            patch = [{"op": "remove", "path": f"/spec/template/spec/nodeSelector/{PARKING_SELECTOR_KEY}"}]
            cmd = self._kubectl(
                "patch", "daemonset", name, "--type", "json", "-p", json.dumps(patch),
                f"--field-manager={FIELD_MANAGER}", namespace=ns,
            )
        else:  # pragma: no cover - exhaustive over FeatureKind
            raise FatalError(f"unsupported feature kind {kind}")
        await self._check(cmd, f"uninstall {identity}", identity)

    async def _release_exists(self, identity: FeatureIdentity) -> bool:
        result = await self._run(
            self._helm(identity.namespace, "status", identity.release, "-o", "json"),
            f"status {identity}",
            identity,
        )
        if result.ok:
            return True
        error = classify_failure(result, f"status {identity}")
        if isinstance(error, NotFoundError):
            return False
        raise error

    async def _apply_install(self, request: BackendRequest, upgrade: bool) -> None:
        identity = request.identity
        options = request.options
        verb = "upgrade" if upgrade else "install"
        cmd = self._cilium(identity.namespace, verb)
        if request.version:
            cmd += ["--version", request.version]
        if identity.release != "cilium":
            cmd += ["--helm-release-name", identity.release]
        if options.get("repository"):
            cmd += ["--repository", options["repository"]]
        if options.get("datapath_mode"):
            cmd += ["--datapath-mode", options["datapath_mode"]]
        for override in request.overrides:
            cmd += ["--set", override]
        if upgrade and request.upgrade_mode in _UPGRADE_FLAGS:
            cmd.append(_UPGRADE_FLAGS[request.upgrade_mode])
        with self._values_file(request.values) as values_path:
            if values_path:
                cmd += ["--values", values_path]
            await self._check_apply(cmd, f"{verb} {identity}", identity)

    async def _apply(self, request: BackendRequest) -> None:
        identity, options = request.identity, request.options
        ns = identity.namespace
        kind = identity.kind
        if kind is FeatureKind.CLUSTERMESH_ENABLE:
            cmd = self._cilium(ns, "clustermesh", "enable")
            if options.get("service_type"):
                cmd += ["--service-type", options["service_type"]]
            cmd.append(_bool_flag("enable-kvstoremesh", options.get("enable_kv_store_mesh")))
            if options.get("enable_external_workloads"):
                cmd.append("--enable-external-workloads")
        elif kind is FeatureKind.CLUSTERMESH_CONNECT:
            cmd = self._cilium(ns, "clustermesh", "connect")
            for destination in options.get("destination_contexts") or []:
                cmd += ["--destination-context", destination]
            cmd += [
                "--connection-mode", options.get("connection_mode", "bidirectional"),
                "--parallel", str(options.get("parallel", 1)),
            ]
        elif kind is FeatureKind.HUBBLE:
            cmd = self._cilium(
                ns, "hubble", "enable",
                _bool_flag("relay", options.get("relay", True)),
                _bool_flag("ui", options.get("ui", False)),
            )
        elif kind is FeatureKind.CONFIG:
            cmd = self._cilium(
                ns, "config", "set", options["key"], str(options["value"]),
                _bool_flag("restart", options.get("restart", True)),
            )
        elif kind is FeatureKind.KUBEPROXY_FREE:
            name = options.get("name", "kube-proxy")
            try:
                await self._get_json("daemonset", name, namespace=ns)
            except NotFoundError as exc:
                raise FatalError(f"daemonset {ns}/{name} is not available") from exc
            patch = {
                "spec": {"template": {"spec": {"nodeSelector": {PARKING_SELECTOR_KEY: PARKING_SELECTOR_VALUE}}}}
            }
            cmd = self._kubectl(
                "patch", "daemonset", name, "--type", "strategic", "-p", json.dumps(patch),
                f"--field-manager={FIELD_MANAGER}", namespace=ns,
            )
        else:  # pragma: no cover - exhaustive over FeatureKind
            raise FatalError(f"unsupported feature kind {kind}")
        await self._check_apply(cmd, f"apply {identity}", identity)

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    async def status(
        self, identity: FeatureIdentity, options: Optional[Dict[str, Any]] = None
    ) -> StatusReport:
        options = options or {}
        kind = identity.kind
        try:
            if kind is FeatureKind.INSTALL:
                return await self._install_status(identity)
            if kind is FeatureKind.CLUSTERMESH_ENABLE:
                return await self._deployment_status(identity.namespace, "clustermesh-apiserver")
            if kind is FeatureKind.CLUSTERMESH_CONNECT:
                return await self._connect_status(identity)
            if kind is FeatureKind.HUBBLE:
                if options.get("relay", True):
                    return await self._deployment_status(identity.namespace, "hubble-relay")
                return await self._config_status(identity.namespace, "enable-hubble", "true")
            if kind is FeatureKind.CONFIG:
                value = options.get("value")
                return await self._config_status(
                    identity.namespace, options.get("key", ""), None if value is None else str(value)
                )
            if kind is FeatureKind.KUBEPROXY_FREE:
                return await self._kube_proxy_status(identity.namespace, options.get("name", "kube-proxy"))
        except NotFoundError as exc:
            return StatusReport(ObservedStatus.ABSENT, str(exc))
        raise FatalError(f"unsupported feature kind {kind}")  # pragma: no cover

    async def _install_status(self, identity: FeatureIdentity) -> StatusReport:
        result = await self._check(
            self._helm(identity.namespace, "status", identity.release, "-o", "json"),
            f"status {identity}",
            identity,
        )
        try:
            release = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TransientError(f"unparseable helm status for {identity}: {exc}") from exc
        helm_status = (release.get("info") or {}).get("status", "")
        version = ((release.get("chart") or {}).get("metadata") or {}).get("appVersion", "")
        details = {"helm_status": helm_status, "version": version}
        if helm_status == "failed":
            return StatusReport(ObservedStatus.ERROR, f"helm release {identity.release} failed", details)
        if helm_status != "deployed":
            return StatusReport(ObservedStatus.CONVERGING, f"helm release is {helm_status}", details)

        agent = await self._get_json("daemonset", "cilium", namespace=identity.namespace)
        ready, desired = _ready_fraction(agent.get("status") or {}, "numberReady", "desiredNumberScheduled")
        details.update({"ready": ready, "desired": desired})
        if desired and ready >= desired:
            return StatusReport(ObservedStatus.HEALTHY, f"{ready}/{desired} agents ready", details)
        return StatusReport(ObservedStatus.CONVERGING, f"{ready}/{desired} agents ready", details)

    async def _deployment_status(self, namespace: str, name: str) -> StatusReport:
        deployment = await self._get_json("deployment", name, namespace=namespace)
        ready, desired = _ready_fraction(deployment.get("status") or {}, "readyReplicas", "replicas")
        details = {"ready": ready, "desired": desired}
        if desired and ready >= desired:
            return StatusReport(ObservedStatus.HEALTHY, f"{name} {ready}/{desired} ready", details)
        return StatusReport(ObservedStatus.CONVERGING, f"{name} {ready}/{desired} ready", details)

    async def _connect_status(self, identity: FeatureIdentity) -> StatusReport:
        cmd = self._cilium(identity.namespace, "clustermesh", "status", "--output", "json")
        result = await self._run(cmd, f"status {identity}", identity)
        if not result.ok:
            error = classify_failure(result, f"status {identity}")
            if isinstance(error, NotFoundError):
                raise error
            # A mesh that is still wiring up remote clusters reports errors here.
            return StatusReport(ObservedStatus.CONVERGING, result.output)
        if not result.stdout.strip():
            return StatusReport(ObservedStatus.CONVERGING, "clustermesh status is empty")
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            return StatusReport(ObservedStatus.CONVERGING, "clustermesh status is not readable yet")
        connectivity = (payload.get("connectivity") if isinstance(payload, dict) else None) or {}
        connected = int(connectivity.get("connected", 0) or 0)
        total = int(connectivity.get("total", 0) or 0)
        details = {"connected": connected, "total": total}
        message = f"{connected}/{total} clusters connected"
        if total and connected == total:
            return StatusReport(ObservedStatus.HEALTHY, message, details)
        return StatusReport(ObservedStatus.CONVERGING, message, details)

    async def _config_status(self, namespace: str, key: str, value: Optional[str]) -> StatusReport:
        """Compare one agent config entry; ``value=None`` only checks the key is set."""

        result = await self._check(self._cilium(namespace, "config", "view"), "config view")
        entries = {}
        for line in result.stdout.splitlines():
            parts = line.split(None, 1)
            if parts:
                entries[parts[0]] = parts[1].strip() if len(parts) > 1 else ""
        if key not in entries:
            return StatusReport(ObservedStatus.ABSENT, f"config key {key} not set")
        live = entries[key]
        if value is not None and live != value:
            return StatusReport(
                ObservedStatus.ABSENT,
                f"config key {key} is {live!r}, expected {value!r}",
                {"value": live},
            )
        return StatusReport(ObservedStatus.HEALTHY, f"{key}={live}", {"value": live})

    async def _kube_proxy_status(self, namespace: str, name: str) -> StatusReport:
        try:
            daemonset = await self._get_json("daemonset", name, namespace=namespace)
        except NotFoundError:
            return StatusReport(ObservedStatus.HEALTHY, f"daemonset {name} does not exist")
        ready = int((daemonset.get("status") or {}).get("numberReady") or 0)
        selector = (
            ((daemonset.get("spec") or {}).get("template") or {}).get("spec") or {}
        ).get("nodeSelector") or {}
        details = {"ready": ready, "parked": PARKING_SELECTOR_KEY in selector}
        if ready == 0:
            return StatusReport(ObservedStatus.HEALTHY, f"no {name} pods ready", details)
        if PARKING_SELECTOR_KEY in selector:
            return StatusReport(ObservedStatus.CONVERGING, f"{ready} {name} pods still ready", details)
        return StatusReport(ObservedStatus.ERROR, f"{name} is running and not parked", details)

    # ------------------------------------------------------------------ #
    # Read-back and teardown helpers
    # ------------------------------------------------------------------ #

    async def read_values(self, identity: FeatureIdentity) -> str:
        result = await self._check(
            self._helm(identity.namespace, "get", "values", identity.release, "-o", "yaml"),
            f"get values {identity}",
            identity,
        )
        return result.stdout

    async def read_metadata(self, identity: FeatureIdentity) -> str:
        result = await self._check(
            self._helm(identity.namespace, "get", "metadata", identity.release, "-o", "json"),
            f"get metadata {identity}",
            identity,
        )
        try:
            return json.loads(result.stdout or "{}").get("appVersion", "")
        except json.JSONDecodeError as exc:
            raise TransientError(f"unparseable helm metadata for {identity}: {exc}") from exc

    async def read_ca(self, identity: FeatureIdentity) -> Dict[str, str]:
        secret = await self._get_json("secret", "cilium-ca", namespace=identity.namespace)
        data = secret.get("data") or {}
        # Secret data is already base64 encoded in the API response.
        return {"crt": data.get("ca.crt", ""), "key": data.get("ca.key", "")}

    async def get_workload_readiness(self, namespace: str, selector: str) -> int:
        cmd = self._kubectl("get", "pods", "-l", selector, "-o", "json", namespace=namespace)
        result = await self._run(cmd, f"list pods {selector}")
        if not result.ok:
            error = classify_failure(result, f"list pods {selector}")
            if isinstance(error, NotFoundError):
                return 0
            raise error
        try:
            return len(json.loads(result.stdout or "{}").get("items") or [])
        except json.JSONDecodeError as exc:
            raise TransientError(f"unparseable pod list: {exc}") from exc

    async def get_namespace_phase(self, namespace: str) -> Optional[str]:
        try:
            data = await self._get_json("namespace", namespace)
        except NotFoundError:
            return None
        return (data.get("status") or {}).get("phase", "")

    async def list_contexts(self) -> List[str]:
        cmd = ["kubectl", "config", "get-contexts", "--output", "name"]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        result = await self._check(cmd, "list contexts")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def delete_namespace(self, namespace: str) -> None:
        cmd = self._kubectl("delete", "namespace", namespace, "--wait=false", "--ignore-not-found")
        await self._check(cmd, f"delete namespace {namespace}")
