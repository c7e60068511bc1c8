"""Resource controller base class, call context and registry."""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from ciliumctl.backends.base import BackendRequest, FeatureBackend, StatusReport
from ciliumctl.shared.convergence import ConvergenceWaiter
from ciliumctl.shared.errors import (
    ConfigurationError,
    ConvergenceFailedError,
    ConvergenceTimeoutError,
    FatalError,
    NotFoundError,
    TransientError,
)
from ciliumctl.shared.models import (
    DesiredState,
    FeatureIdentity,
    FeatureKind,
    LifecycleState,
    ObservedState,
    ObservedStatus,
    UpgradeMode,
)

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    "string": str,
    "boolean": bool,
    "integer": int,
    "number": (int, float),
    "array": list,
    "object": dict,
}


@dataclass
class FeatureContext:
    """Handle threaded through every controller call.

    Holds the backend connection, the shared poll loop and effective
    settings. Nothing here is mutated by controllers.
    """

    backend: FeatureBackend
    waiter: ConvergenceWaiter
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(
        cls, config: Dict[str, Any], backend: Optional[FeatureBackend] = None
    ) -> "FeatureContext":
        if backend is None:
            from ciliumctl.backends.cilium_cli import CiliumCliBackend

            backend = CiliumCliBackend(
                kubeconfig=config.get("kubeconfig", ""), context=config.get("context", "")
            )
        waiter = ConvergenceWaiter(interval=float(config.get("poll_interval", 2.0)))
        return cls(backend=backend, waiter=waiter, settings=dict(config))

    @property
    def namespace(self) -> str:
        return self.settings.get("namespace") or "kube-system"

    @property
    def read_timeout(self) -> float:
        return float(self.settings.get("read_timeout", 20.0))

    def wait_timeout(self, kind: FeatureKind, fallback: float = 60.0) -> float:
        timeouts = self.settings.get("wait_timeouts") or {}
        return float(timeouts.get(kind.value, fallback))


class BaseFeature(ABC):
    """Create/Read/Update/Delete for one feature kind.

    Subclasses describe their options through :meth:`get_schema` and override
    the hooks (``prepare``, ``observe``, ``read_back``) where the feature
    needs more than a status check. Controllers keep no per-identity state;
    everything observed is returned to the caller.
    """

    kind: FeatureKind
    default_release: str = ""
    default_version: str = ""
    # Overrides and raw values only mean something for Helm-backed features.
    accepts_values: bool = False
    # Upgrade default when the caller sets none of the values toggles.
    reset_then_reuse_by_default: bool = False

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description

    @abstractmethod
    def get_schema(self) -> Dict[str, Any]:
        """Return JSON schema for the feature's options."""

    # ------------------------------------------------------------------ #
    # Options and identity
    # ------------------------------------------------------------------ #

    def option_defaults(self) -> Dict[str, Any]:
        properties = self.get_schema().get("properties", {})
        return {
            name: list(spec["default"]) if isinstance(spec.get("default"), list) else spec["default"]
            for name, spec in properties.items()
            if "default" in spec
        }

    def with_defaults(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {**self.option_defaults(), **(options or {})}

    def validate_options(self, options: Dict[str, Any]) -> None:
        """Validate options against the declared schema.

        Rejects unknown fields, missing required fields, wrong JSON types and
        explicit ``None`` values unless the property declares ``nullable``.
        """

        schema = self.get_schema() or {}
        properties: Dict[str, Dict[str, Any]] = schema.get("properties", {}) or {}

        for name in schema.get("required", []):
            if name not in options or options[name] is None:
                raise ConfigurationError(f"{self.name}: option '{name}' is required and cannot be null")

        for name, value in options.items():
            spec = properties.get(name)
            if spec is None:
                raise ConfigurationError(f"{self.name}: unknown option '{name}'")
            if value is None:
                if spec.get("nullable") is True:
                    continue
                raise ConfigurationError(f"{self.name}: option '{name}' cannot be null")
            expected = _JSON_TYPES.get(spec.get("type", ""))
            # bool is an int subclass; keep booleans out of numeric fields.
            wrong_bool = isinstance(value, bool) and spec.get("type") in ("integer", "number")
            if expected and (wrong_bool or not isinstance(value, expected)):
                raise ConfigurationError(
                    f"{self.name}: option '{name}' must be of type {spec['type']}, got {type(value).__name__}"
                )
            if "enum" in spec and value not in spec["enum"]:
                raise ConfigurationError(
                    f"{self.name}: option '{name}' must be one of {', '.join(map(str, spec['enum']))}"
                )

    def release_name(self, options: Dict[str, Any]) -> str:
        """Derive the identifier used as the release part of the identity."""
        return self.default_release

    def identity_for(
        self, namespace: str, options: Optional[Dict[str, Any]] = None, release: str = ""
    ) -> FeatureIdentity:
        return FeatureIdentity(
            kind=self.kind,
            namespace=namespace,
            release=release or self.release_name(self.with_defaults(options)),
        )

    def desired_state(
        self,
        namespace: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        release: str = "",
        **fields: Any,
    ) -> DesiredState:
        """Build a DesiredState whose identity is derived from the options."""

        identity = self.identity_for(namespace, options, release)
        return DesiredState(identity=identity, options=dict(options or {}), **fields)

    def lookup_options(
        self, identity: FeatureIdentity, options: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Options for a read or delete addressed by identity.

        Kinds whose identity encodes part of their options (a config key, the
        connected contexts) recover it here when the caller did not pass it.
        """
        return self.with_defaults(options)

    # ------------------------------------------------------------------ #
    # CRUD
    # ------------------------------------------------------------------ #

    async def create(self, ctx: FeatureContext, desired: DesiredState) -> ObservedState:
        return await self._reconcile(ctx, desired, upgrade=False)

    async def update(self, ctx: FeatureContext, desired: DesiredState) -> ObservedState:
        return await self._reconcile(ctx, desired, upgrade=True)

    async def read(
        self,
        ctx: FeatureContext,
        identity: FeatureIdentity,
        options: Optional[Dict[str, Any]] = None,
    ) -> ObservedState:
        """Report the live state; a missing or degraded feature comes back ``gone``."""

        options = self.lookup_options(identity, options)
        report = await self.observe(ctx, identity, options)
        if report.status is ObservedStatus.ABSENT:
            logger.info("%s is absent: %s", identity, report.message or "not found")
            return ObservedState(
                identity=identity,
                status=ObservedStatus.ABSENT,
                lifecycle=LifecycleState.ABSENT,
                details=report.details,
            )
        if report.status is ObservedStatus.ERROR:
            logger.warning("%s is degraded, dropping it: %s", identity, report.message)
            return ObservedState(
                identity=identity,
                status=ObservedStatus.ERROR,
                lifecycle=LifecycleState.ABSENT,
                details=report.details,
                warnings=[report.message] if report.message else [],
            )
        lifecycle = (
            LifecycleState.HEALTHY
            if report.status is ObservedStatus.HEALTHY
            else LifecycleState.CONVERGING
        )
        return await self.read_back(ctx, identity, options, report, lifecycle)

    async def delete(
        self,
        ctx: FeatureContext,
        identity: FeatureIdentity,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Remove the feature. Already-absent features are not an error."""

        options = self.lookup_options(identity, options)
        self._transition(identity, LifecycleState.HEALTHY, LifecycleState.REMOVING)
        logger.info("removing %s", identity)
        try:
            await ctx.backend.uninstall(BackendRequest(identity=identity, options=options))
        except NotFoundError as exc:
            logger.info("%s already absent: %s", identity, exc)
        else:
            logger.info("%s removed", identity)
        self._transition(identity, LifecycleState.REMOVING, LifecycleState.ABSENT)

    # ------------------------------------------------------------------ #
    # Hooks
    # ------------------------------------------------------------------ #

    async def prepare(self, ctx: FeatureContext, desired: DesiredState) -> DesiredState:
        """Fill defaults and reject malformed desired state before any backend call.

        Returns a copy; the caller's DesiredState is left as it was passed.
        """

        options = self.with_defaults(desired.options)
        self.validate_options(options)
        if not self.accepts_values and (desired.overrides or desired.values):
            raise ConfigurationError(f"{self.name} does not accept Helm overrides or values")
        return replace(desired, options=options, version=desired.version or self.default_version)

    async def observe(
        self, ctx: FeatureContext, identity: FeatureIdentity, options: Dict[str, Any]
    ) -> StatusReport:
        """One point-in-time status query."""
        return await ctx.backend.status(identity, options)

    async def probe(self, ctx: FeatureContext, identity: FeatureIdentity, options: Dict[str, Any]) -> bool:
        """Status check used by the convergence loop."""

        report = await ctx.backend.status(identity, options)
        if report.status is ObservedStatus.ERROR:
            raise FatalError(f"{identity}: {report.message or 'backend reported an error'}")
        return report.status is ObservedStatus.HEALTHY

    async def read_back(
        self,
        ctx: FeatureContext,
        identity: FeatureIdentity,
        options: Dict[str, Any],
        report: StatusReport,
        lifecycle: LifecycleState,
    ) -> ObservedState:
        """Turn a status report into an ObservedState; subclasses add read-back values."""

        return ObservedState(
            identity=identity,
            status=report.status,
            lifecycle=lifecycle,
            version=str(report.details.get("version", "")),
            details=dict(report.details),
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _transition(self, identity: FeatureIdentity, current: LifecycleState, target: LifecycleState) -> None:
        if not current.can_transition_to(target):
            raise FatalError(f"{identity}: illegal transition {current.value} -> {target.value}")
        logger.debug("%s: %s -> %s", identity, current.value, target.value)

    async def _reconcile(self, ctx: FeatureContext, desired: DesiredState, upgrade: bool) -> ObservedState:
        desired = await self.prepare(ctx, desired)
        identity = desired.identity
        mode = desired.upgrade_mode() if upgrade else UpgradeMode.NONE
        request = BackendRequest.from_desired(desired, mode)

        self._transition(
            identity, LifecycleState.HEALTHY if upgrade else LifecycleState.ABSENT, LifecycleState.APPLYING
        )
        if upgrade:
            logger.info("upgrading %s (values mode: %s)", identity, mode.value)
            await ctx.backend.upgrade(request)
        else:
            logger.info("installing %s", identity)
            await ctx.backend.install(request)

        if desired.wait:
            self._transition(identity, LifecycleState.APPLYING, LifecycleState.CONVERGING)
            timeout = desired.wait_timeout
            if timeout is None:
                timeout = ctx.wait_timeout(self.kind)
            outcome = await ctx.waiter.wait(
                lambda: self.probe(ctx, identity, desired.options),
                timeout,
                description=f"{identity} convergence",
            )
            if outcome.fatal:
                raise ConvergenceFailedError(identity, outcome)
            if not outcome.healthy:
                raise ConvergenceTimeoutError(identity, outcome)
            self._transition(identity, LifecycleState.CONVERGING, LifecycleState.HEALTHY)
            report = StatusReport(ObservedStatus.HEALTHY, "converged")
            observed = await self.read_back(ctx, identity, desired.options, report, LifecycleState.HEALTHY)
            observed.details["convergence_seconds"] = round(outcome.elapsed, 3)
            return observed

        warnings: List[str] = []
        try:
            report = await ctx.backend.status(identity, desired.options)
        except TransientError as exc:
            warnings.append(f"status unavailable: {exc}")
            report = StatusReport(ObservedStatus.CONVERGING, str(exc))
        if report.status is ObservedStatus.HEALTHY:
            lifecycle = LifecycleState.HEALTHY
        elif report.status is ObservedStatus.ERROR:
            lifecycle = LifecycleState.DEGRADED
        else:
            lifecycle = LifecycleState.CONVERGING
        observed = await self.read_back(ctx, identity, desired.options, report, lifecycle)
        observed.warnings.extend(warnings)
        return observed

    async def _best_effort(self, observed: ObservedState, what: str, call: Callable[[], Any]) -> Any:
        """Run one read-back call, recording a warning instead of failing."""

        try:
            return await call()
        except (TransientError, NotFoundError) as exc:
            logger.warning("%s: could not read %s: %s", observed.identity, what, exc)
            observed.warnings.append(f"{what} unavailable: {exc}")
            return None


class FeatureRegistry:
    """Registry of controllers keyed by feature kind."""

    def __init__(self):
        self._features: Dict[FeatureKind, BaseFeature] = {}

    def register(self, feature: BaseFeature) -> None:
        self._features[feature.kind] = feature

    def get(self, kind: FeatureKind) -> Optional[BaseFeature]:
        return self._features.get(kind)

    def require(self, kind: FeatureKind) -> BaseFeature:
        feature = self.get(kind)
        if feature is None:
            raise LookupError(f"No controller registered for feature '{kind.value}'")
        return feature

    def list_all(self) -> List[BaseFeature]:
        return list(self._features.values())

    def get_schemas(self) -> Dict[str, Dict[str, Any]]:
        return {kind.value: feature.get_schema() for kind, feature in self._features.items()}

    def reset(self) -> None:
        self._features.clear()


def async_to_sync(func: Callable) -> Callable:
    """Convert async function to sync for CLI usage."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))

    return wrapper


feature_registry = FeatureRegistry()
