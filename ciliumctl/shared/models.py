"""Plain data records exchanged between the CLI, controllers and backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class FeatureKind(str, Enum):
    """Managed feature kinds."""

    INSTALL = "install"
    CLUSTERMESH_ENABLE = "clustermesh"
    CLUSTERMESH_CONNECT = "clustermesh-connect"
    HUBBLE = "hubble"
    CONFIG = "config"
    KUBEPROXY_FREE = "kubeproxy-free"

    @classmethod
    def from_string(cls, value: str) -> "FeatureKind":
        """Parse a CLI name, accepting underscores as well as dashes."""

        try:
            return cls(value.strip().lower().replace("_", "-"))
        except ValueError as exc:
            known = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown feature '{value}' (expected one of: {known})") from exc


class ObservedStatus(str, Enum):
    """Coarse status reported by the backend."""

    ABSENT = "absent"
    CONVERGING = "converging"
    HEALTHY = "healthy"
    ERROR = "error"


class LifecycleState(str, Enum):
    """Controller lifecycle across a sequence of calls."""

    ABSENT = "absent"
    APPLYING = "applying"
    CONVERGING = "converging"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    REMOVING = "removing"

    def can_transition_to(self, target: "LifecycleState") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    LifecycleState.ABSENT: frozenset({LifecycleState.APPLYING}),
    LifecycleState.APPLYING: frozenset(
        {LifecycleState.CONVERGING, LifecycleState.HEALTHY, LifecycleState.DEGRADED}
    ),
    LifecycleState.CONVERGING: frozenset(
        {LifecycleState.HEALTHY, LifecycleState.DEGRADED, LifecycleState.ABSENT}
    ),
    LifecycleState.HEALTHY: frozenset(
        {LifecycleState.APPLYING, LifecycleState.REMOVING, LifecycleState.ABSENT}
    ),
    LifecycleState.DEGRADED: frozenset(
        {LifecycleState.APPLYING, LifecycleState.REMOVING, LifecycleState.ABSENT}
    ),
    LifecycleState.REMOVING: frozenset({LifecycleState.ABSENT}),
}


class UpgradeMode(str, Enum):
    """How prior backend-held values are treated on upgrade."""

    NONE = "none"
    RESET = "reset"
    REUSE = "reuse"
    RESET_THEN_REUSE = "reset-then-reuse"


@dataclass(frozen=True)
class FeatureIdentity:
    """Uniquely identifies one managed feature on one cluster context."""

    kind: FeatureKind
    namespace: str
    release: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.release}"

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "namespace": self.namespace, "release": self.release}


@dataclass
class DesiredState:
    """Configuration a caller wants applied for one identity."""

    identity: FeatureIdentity
    version: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    overrides: List[str] = field(default_factory=list)
    values: str = ""
    wait: bool = False
    wait_timeout: Optional[float] = None
    # Only consulted by update.
    reuse_values: bool = False
    reset_values: bool = False
    reset_then_reuse_values: bool = False

    def upgrade_mode(self) -> UpgradeMode:
        """Resolve the values toggles; an explicit reset always wins."""

        if self.reset_values:
            return UpgradeMode.RESET
        if self.reuse_values:
            return UpgradeMode.REUSE
        if self.reset_then_reuse_values:
            return UpgradeMode.RESET_THEN_REUSE
        return UpgradeMode.NONE


@dataclass
class ObservedState:
    """What the backend reported for an identity right after a round trip."""

    identity: FeatureIdentity
    status: ObservedStatus
    lifecycle: LifecycleState
    version: str = ""
    values: str = ""
    ca: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def gone(self) -> bool:
        """True when the tracked resource should be dropped by the caller."""
        return self.lifecycle is LifecycleState.ABSENT

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "identity": self.identity.to_dict(),
            "status": self.status.value,
            "lifecycle": self.lifecycle.value,
            "version": self.version,
            "values": self.values,
            "details": self.details,
            "warnings": self.warnings,
        }
        if self.ca:
            data["ca"] = self.ca if include_secrets else {k: "(sensitive)" for k in self.ca}
        return data


@dataclass
class ConvergenceOutcome:
    """Result of one bounded wait."""

    healthy: bool
    last_error: Optional[BaseException] = None
    elapsed: float = 0.0
    polls: int = 0
    fatal: bool = False

    @property
    def timed_out(self) -> bool:
        return not self.healthy and not self.fatal
