"""Shared fixtures: in-memory backend and a clock that only moves when slept."""

import copy
import os
from typing import Any, Dict, List, Optional, Union

import pytest

from ciliumctl.backends.base import BackendRequest, StatusReport
from ciliumctl.config import DEFAULTS, reset_config_manager
from ciliumctl.features import feature_registry, initialize_features
from ciliumctl.features.base import FeatureContext
from ciliumctl.shared.convergence import ConvergenceWaiter
from ciliumctl.shared.errors import NotFoundError
from ciliumctl.shared.models import FeatureIdentity, FeatureKind, ObservedStatus

Scripted = Union[StatusReport, Exception]


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend:
    """Records every call and answers from scripted responses.

    ``status_script[kind]`` is consumed front to back; the last entry keeps
    being returned. Without a script, installed identities are healthy and
    everything else is absent.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.present: Dict[FeatureIdentity, BackendRequest] = {}
        self.status_script: Dict[FeatureKind, List[Scripted]] = {}
        self.readiness_script: List[Union[int, Exception]] = []
        self.namespace_script: List[Optional[str]] = []
        self.install_error: Optional[Exception] = None
        self.uninstall_errors: Dict[FeatureKind, Exception] = {}
        self.values: Dict[FeatureIdentity, str] = {}
        self.ca = {"crt": "Y2VydA==", "key": "a2V5"}
        self.read_error: Optional[Exception] = None
        self.contexts = ["kind-east", "kind-west"]

    def describe(self) -> str:
        return "fake backend"

    @staticmethod
    def _next(script: List[Any], default: Any) -> Any:
        if not script:
            return default
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def install(self, request: BackendRequest) -> None:
        self.calls.append(("install", request.identity, request.version, request.upgrade_mode))
        if self.install_error is not None:
            raise self.install_error
        self.present[request.identity] = request

    async def upgrade(self, request: BackendRequest) -> None:
        self.calls.append(("upgrade", request.identity, request.version, request.upgrade_mode))
        if self.install_error is not None:
            raise self.install_error
        self.present[request.identity] = request

    async def uninstall(self, request: BackendRequest) -> None:
        identity = request.identity
        self.calls.append(("uninstall", identity))
        if identity.kind in self.uninstall_errors:
            raise self.uninstall_errors[identity.kind]
        if identity not in self.present:
            raise NotFoundError(f"{identity} not found")
        del self.present[identity]

    async def status(self, identity: FeatureIdentity, options: Optional[Dict[str, Any]] = None) -> StatusReport:
        self.calls.append(("status", identity))
        default = StatusReport(
            ObservedStatus.HEALTHY if identity in self.present else ObservedStatus.ABSENT
        )
        return self._next(self.status_script.get(identity.kind, []), default)

    async def read_values(self, identity: FeatureIdentity) -> str:
        self.calls.append(("read_values", identity))
        if self.read_error is not None:
            raise self.read_error
        return self.values.get(identity, "")

    async def read_metadata(self, identity: FeatureIdentity) -> str:
        self.calls.append(("read_metadata", identity))
        request = self.present.get(identity)
        return request.version if request else ""

    async def read_ca(self, identity: FeatureIdentity) -> Dict[str, str]:
        self.calls.append(("read_ca", identity))
        return dict(self.ca)

    async def get_workload_readiness(self, namespace: str, selector: str) -> int:
        self.calls.append(("readiness", namespace, selector))
        return self._next(self.readiness_script, 0)

    async def get_namespace_phase(self, namespace: str) -> Optional[str]:
        self.calls.append(("namespace_phase", namespace))
        return self._next(self.namespace_script, None)

    async def list_contexts(self) -> List[str]:
        self.calls.append(("list_contexts",))
        return list(self.contexts)

    async def delete_namespace(self, namespace: str) -> None:
        self.calls.append(("delete_namespace", namespace))

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config manager at an empty temporary directory."""
    for name in list(os.environ):
        if name.startswith("CILIUMCTL_") or name == "KUBECONFIG":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CILIUMCTL_CONFIG_DIR", str(tmp_path / "config"))
    reset_config_manager()
    yield tmp_path / "config"
    reset_config_manager()


@pytest.fixture
def features():
    initialize_features()
    return feature_registry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def ctx(backend, clock, features):
    waiter = ConvergenceWaiter(interval=1.0, clock=clock, sleep=clock.sleep)
    return FeatureContext(backend=backend, waiter=waiter, settings=copy.deepcopy(DEFAULTS))
