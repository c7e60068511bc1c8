"""Backend facade interface consumed by the feature controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ciliumctl.shared.models import (
    DesiredState,
    FeatureIdentity,
    ObservedStatus,
    UpgradeMode,
)


@dataclass
class BackendRequest:
    """Parameters for one install, upgrade or uninstall call."""

    identity: FeatureIdentity
    version: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    overrides: list = field(default_factory=list)
    values: str = ""
    upgrade_mode: UpgradeMode = UpgradeMode.NONE

    @classmethod
    def from_desired(
        cls, desired: DesiredState, upgrade_mode: UpgradeMode = UpgradeMode.NONE
    ) -> "BackendRequest":
        return cls(
            identity=desired.identity,
            version=desired.version,
            options=dict(desired.options),
            overrides=list(desired.overrides),
            values=desired.values,
            upgrade_mode=upgrade_mode,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "version": self.version,
            "options": self.options,
            "overrides": self.overrides,
            "has_values": bool(self.values),
            "upgrade_mode": self.upgrade_mode.value,
        }


@dataclass
class StatusReport:
    """Point-in-time health snapshot.

    ``ABSENT`` is the not-found answer; query failures are raised as
    ``TransientError`` instead of being reported here.
    """

    status: ObservedStatus
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class FeatureBackend(Protocol):
    """Installer, status and value-query boundary.

    Implementations must be safe to share between controllers running
    concurrently for different identities.
    """

    def describe(self) -> str:
        """Human readable description of the backend."""

    async def install(self, request: BackendRequest) -> None:
        """Apply a feature for the first time (idempotent intent)."""

    async def upgrade(self, request: BackendRequest) -> None:
        """Re-apply a feature with new desired state."""

    async def uninstall(self, request: BackendRequest) -> None:
        """Remove or disable a feature."""

    async def status(
        self, identity: FeatureIdentity, options: Optional[Dict[str, Any]] = None
    ) -> StatusReport:
        """Report whether the feature is absent, converging, healthy or broken."""

    async def read_values(self, identity: FeatureIdentity) -> str:
        """Return the user supplied Helm values of the release as YAML."""

    async def read_metadata(self, identity: FeatureIdentity) -> str:
        """Return the deployed application version of the release."""

    async def read_ca(self, identity: FeatureIdentity) -> Dict[str, str]:
        """Return base64 ``crt`` and ``key`` of the cluster CA secret."""

    async def get_workload_readiness(self, namespace: str, selector: str) -> int:
        """Count pods matching ``selector`` that still exist in ``namespace``."""

    async def get_namespace_phase(self, namespace: str) -> Optional[str]:
        """Return the namespace phase, or ``None`` once it no longer exists."""

    async def delete_namespace(self, namespace: str) -> None:
        """Request deletion of a namespace without waiting for it."""

    async def list_contexts(self) -> List[str]:
        """Return the context names of the kubeconfig in use."""
