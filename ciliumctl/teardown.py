"""Ordered teardown of dependent features.

A :class:`TeardownPlan` is a validated sequence of steps. Each step disables
one thing and may carry a precondition that has to hold before the next step
starts, e.g. relay pods drained before the base release is removed. The whole
plan shares a single deadline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence

from ciliumctl.backends.base import FeatureBackend
from ciliumctl.features.base import BaseFeature, FeatureContext, FeatureRegistry, feature_registry
from ciliumctl.features.hubble import RELAY_SELECTOR
from ciliumctl.shared.errors import (
    NotFoundError,
    PlanOrderError,
    TeardownError,
    TeardownTimeoutError,
)
from ciliumctl.shared.models import FeatureIdentity, FeatureKind

logger = logging.getLogger(__name__)

# kind -> kinds it needs to still be present while it is being torn down
DEPENDENCIES: Dict[FeatureKind, FrozenSet[FeatureKind]] = {
    FeatureKind.INSTALL: frozenset(),
    FeatureKind.CLUSTERMESH_ENABLE: frozenset({FeatureKind.INSTALL}),
    FeatureKind.CLUSTERMESH_CONNECT: frozenset({FeatureKind.CLUSTERMESH_ENABLE, FeatureKind.INSTALL}),
    FeatureKind.HUBBLE: frozenset({FeatureKind.INSTALL}),
    FeatureKind.CONFIG: frozenset({FeatureKind.INSTALL}),
    FeatureKind.KUBEPROXY_FREE: frozenset({FeatureKind.INSTALL}),
}


@dataclass(frozen=True)
class Precondition:
    """Async check evaluated against the backend until it returns True."""

    description: str
    check: Callable[[FeatureBackend], Awaitable[bool]]


def workload_drained(namespace: str, selector: str) -> Precondition:
    async def check(backend: FeatureBackend) -> bool:
        remaining = await backend.get_workload_readiness(namespace, selector)
        logger.debug("%d pod(s) matching %s left in %s", remaining, selector, namespace)
        return remaining == 0

    return Precondition(f"pods matching {selector} in {namespace} drained", check)


def namespace_terminated(namespace: str) -> Precondition:
    async def check(backend: FeatureBackend) -> bool:
        return await backend.get_namespace_phase(namespace) is None

    return Precondition(f"namespace {namespace} terminated", check)


@dataclass(frozen=True)
class TeardownStep:
    name: str
    disable: Callable[[FeatureContext], Awaitable[None]]
    precondition: Optional[Precondition] = None
    identity: Optional[FeatureIdentity] = None


def feature_step(
    feature: BaseFeature,
    identity: FeatureIdentity,
    options: Optional[Dict[str, Any]] = None,
    precondition: Optional[Precondition] = None,
    name: str = "",
) -> TeardownStep:
    """Step that deletes one feature through its controller."""

    async def disable(ctx: FeatureContext) -> None:
        await feature.delete(ctx, identity, options)

    return TeardownStep(
        name=name or f"{identity.kind.value}-delete",
        disable=disable,
        precondition=precondition,
        identity=identity,
    )


def namespace_step(namespace: str) -> TeardownStep:
    async def disable(ctx: FeatureContext) -> None:
        await ctx.backend.delete_namespace(namespace)

    return TeardownStep(
        name=f"namespace-{namespace}-delete",
        disable=disable,
        precondition=namespace_terminated(namespace),
    )


class TeardownPlan:
    """Immutable, dependency-checked sequence of teardown steps."""

    def __init__(self, steps: Sequence[TeardownStep]):
        self.steps = tuple(steps)
        self._validate()

    def _validate(self) -> None:
        for index, earlier in enumerate(self.steps):
            if earlier.identity is None:
                continue
            for later in self.steps[index + 1:]:
                if later.identity is None:
                    continue
                if earlier.identity.kind in DEPENDENCIES[later.identity.kind]:
                    raise PlanOrderError(
                        f"step '{later.name}' ({later.identity}) depends on "
                        f"'{earlier.name}' ({earlier.identity}) and must come before it",
                        dependent=later.name,
                    )

    def __len__(self) -> int:
        return len(self.steps)

    def names(self) -> List[str]:
        return [step.name for step in self.steps]


class TeardownOrchestrator:
    """Run a :class:`TeardownPlan` step by step under one deadline."""

    def __init__(self, ctx: FeatureContext):
        self.ctx = ctx

    async def teardown(self, plan: TeardownPlan, deadline: float) -> List[str]:
        """Execute ``plan``; returns the names of the completed steps.

        Aborts on the first failing step. Nothing is retried or skipped.
        """

        waiter = self.ctx.waiter
        started = waiter.now()
        completed: List[str] = []

        for index, step in enumerate(plan.steps):
            remaining = deadline - (waiter.now() - started)
            if remaining <= 0:
                raise TeardownTimeoutError(step.name, index, "plan deadline elapsed before the step started")

            logger.info("teardown step %d/%d: %s", index + 1, len(plan), step.name)
            try:
                await step.disable(self.ctx)
            except NotFoundError as exc:
                logger.info("%s: already disabled (%s)", step.name, exc)
            except Exception as exc:
                raise TeardownError(step.name, index, str(exc)) from exc

            if step.precondition is not None:
                remaining = max(0.0, deadline - (waiter.now() - started))
                precondition = step.precondition
                outcome = await waiter.wait(
                    lambda: precondition.check(self.ctx.backend),
                    remaining,
                    description=precondition.description,
                )
                if outcome.fatal:
                    raise TeardownError(
                        step.name, index, f"{precondition.description}: {outcome.last_error}"
                    ) from outcome.last_error
                if not outcome.healthy:
                    raise TeardownTimeoutError(
                        step.name,
                        index,
                        f"{precondition.description} not reached after {outcome.elapsed:.1f}s",
                    )

            completed.append(step.name)

        logger.info("teardown finished: %s", ", ".join(completed) or "no steps")
        return completed


def uninstall_plan(
    ctx: FeatureContext,
    install_identity: FeatureIdentity,
    hubble_identity: Optional[FeatureIdentity] = None,
    test_namespace: Optional[str] = None,
    registry: FeatureRegistry = feature_registry,
) -> TeardownPlan:
    """Standard plan for removing Cilium from a cluster.

    The connectivity test namespace goes first, then Hubble (waiting for the
    relay pods to drain), then the base release.
    """

    namespace = test_namespace or ctx.settings.get("test_namespace") or "cilium-test"
    hubble_identity = hubble_identity or registry.require(FeatureKind.HUBBLE).identity_for(
        install_identity.namespace
    )

    return TeardownPlan(
        [
            namespace_step(namespace),
            feature_step(
                registry.require(FeatureKind.HUBBLE),
                hubble_identity,
                precondition=workload_drained(hubble_identity.namespace, RELAY_SELECTOR),
                name="hubble-relay-disable",
            ),
            feature_step(
                registry.require(FeatureKind.INSTALL),
                install_identity,
                name="base-uninstall",
            ),
        ]
    )
