"""Base Cilium installation (the Helm release)."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict

from ciliumctl.backends.base import StatusReport
from ciliumctl.shared.models import (
    DesiredState,
    FeatureIdentity,
    FeatureKind,
    LifecycleState,
    ObservedState,
)
from ciliumctl.shared.versions import resolve_version

from .base import BaseFeature, FeatureContext

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "1.17.3"
DEFAULT_REPOSITORY = "https://helm.cilium.io"
DEFAULT_RELEASE = "cilium"


class InstallFeature(BaseFeature):
    """Install, upgrade and uninstall the Cilium Helm release."""

    kind = FeatureKind.INSTALL
    default_release = DEFAULT_RELEASE
    default_version = DEFAULT_VERSION
    accepts_values = True
    reset_then_reuse_by_default = True

    def __init__(self) -> None:
        super().__init__(
            name="install",
            description="Install Cilium into the cluster and keep the Helm release in shape.",
        )

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "repository": {
                    "type": "string",
                    "default": DEFAULT_REPOSITORY,
                    "description": "Helm chart repository URL.",
                },
                "datapath_mode": {
                    "type": "string",
                    "default": "",
                    "description": "Datapath mode (empty keeps the chart default).",
                },
            },
        }

    async def prepare(self, ctx: FeatureContext, desired: DesiredState) -> DesiredState:
        desired = await super().prepare(ctx, desired)
        return replace(desired, version=await resolve_version(desired.version))

    async def read_back(
        self,
        ctx: FeatureContext,
        identity: FeatureIdentity,
        options: Dict[str, Any],
        report: StatusReport,
        lifecycle: LifecycleState,
    ) -> ObservedState:
        observed = await super().read_back(ctx, identity, options, report, lifecycle)

        values = await self._best_effort(observed, "values", lambda: ctx.backend.read_values(identity))
        if values is not None:
            observed.values = values

        version = await self._best_effort(observed, "version", lambda: ctx.backend.read_metadata(identity))
        if version:
            observed.version = version

        ca = await self._best_effort(observed, "cluster CA", lambda: ctx.backend.read_ca(identity))
        if ca:
            observed.ca = dict(ca)

        logger.debug("read back %s at version %s", identity, observed.version or "unknown")
        return observed
