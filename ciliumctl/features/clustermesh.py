"""Cluster mesh: enabling the apiserver and connecting clusters."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from ciliumctl.backends.base import StatusReport
from ciliumctl.shared.errors import ConfigurationError
from ciliumctl.shared.models import DesiredState, FeatureIdentity, FeatureKind, ObservedStatus

from .base import BaseFeature, FeatureContext

logger = logging.getLogger(__name__)

CONNECTION_MODES = ["bidirectional", "mesh", "unicast"]
RELEASE_PREFIX = "ciliumclustermeshconnect-"


class _MeshFeature(BaseFeature):
    """Reads of mesh features wait for a converging mesh instead of reporting it."""

    async def observe(
        self, ctx: FeatureContext, identity: FeatureIdentity, options: Dict[str, Any]
    ) -> StatusReport:
        report = await ctx.backend.status(identity, options)
        if report.status is not ObservedStatus.CONVERGING:
            return report

        outcome = await ctx.waiter.wait(
            lambda: self.probe(ctx, identity, options),
            ctx.read_timeout,
            description=f"{identity} read",
        )
        if outcome.healthy:
            return StatusReport(ObservedStatus.HEALTHY, "clustermesh healthy", report.details)
        reason = outcome.last_error or f"not healthy after {outcome.elapsed:.0f}s"
        return StatusReport(ObservedStatus.ERROR, str(reason), report.details)


class ClusterMeshEnableFeature(_MeshFeature):
    kind = FeatureKind.CLUSTERMESH_ENABLE
    default_release = "ciliumclustermeshenable"

    def __init__(self) -> None:
        super().__init__(
            name="clustermesh",
            description="Enable the clustermesh apiserver so other clusters can connect.",
        )

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "service_type": {
                    "type": "string",
                    "default": "",
                    "description": "Service type exposing the clustermesh apiserver (LoadBalancer, NodePort, ...).",
                },
                "enable_kv_store_mesh": {
                    "type": "boolean",
                    "default": False,
                    "description": "Run kvstoremesh alongside the apiserver.",
                },
                "enable_external_workloads": {
                    "type": "boolean",
                    "default": False,
                    "description": "Allow external workloads to join the mesh.",
                },
            },
        }


class ClusterMeshConnectFeature(_MeshFeature):
    kind = FeatureKind.CLUSTERMESH_CONNECT

    def __init__(self) -> None:
        super().__init__(
            name="clustermesh-connect",
            description="Connect this cluster to one or more destination contexts.",
        )

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "destination_contexts": {
                    "type": "array",
                    "default": [],
                    "description": "kubeconfig contexts of the clusters to connect to.",
                },
                "connection_mode": {
                    "type": "string",
                    "enum": CONNECTION_MODES,
                    "default": "bidirectional",
                    "description": "How the clusters are connected.",
                },
                "parallel": {
                    "type": "integer",
                    "default": 1,
                    "description": "Number of connections made in parallel.",
                },
            },
        }

    def release_name(self, options: Dict[str, Any]) -> str:
        contexts = options.get("destination_contexts") or []
        return RELEASE_PREFIX + "-".join(contexts)

    async def prepare(self, ctx: FeatureContext, desired: DesiredState) -> DesiredState:
        desired = await super().prepare(ctx, desired)
        if not desired.options["destination_contexts"]:
            raise ConfigurationError("clustermesh-connect needs at least one destination context")
        if desired.options["parallel"] < 1:
            raise ConfigurationError("clustermesh-connect: parallel must be at least 1")
        return desired

    async def delete(
        self,
        ctx: FeatureContext,
        identity: FeatureIdentity,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        options = self.with_defaults(options)
        if not options["destination_contexts"]:
            options["destination_contexts"] = await self._contexts_from_identity(ctx, identity)
        await super().delete(ctx, identity, options)

    async def _contexts_from_identity(self, ctx: FeatureContext, identity: FeatureIdentity) -> List[str]:
        if not identity.release.startswith(RELEASE_PREFIX):
            raise ConfigurationError(f"{identity}: release must look like {RELEASE_PREFIX}<contexts>")
        joined = identity.release[len(RELEASE_PREFIX):]
        contexts = split_contexts(joined, await ctx.backend.list_contexts())
        if not contexts:
            raise ConfigurationError(
                f"{identity}: '{joined}' does not match kubeconfig contexts, pass destination_contexts"
            )
        logger.debug("%s: destination contexts %s", identity, contexts)
        return contexts


def split_contexts(joined: str, known: Iterable[str]) -> List[str]:
    """Split a dash-joined release suffix back into known context names.

    Context names may contain dashes themselves, so the split follows the
    kubeconfig instead of the separator. Returns ``[]`` when no combination
    of known contexts spells ``joined``.
    """

    names = sorted(set(known), key=len, reverse=True)

    def walk(rest: str) -> List[str]:
        if rest in names:
            return [rest]
        for name in names:
            if rest.startswith(name + "-"):
                tail = walk(rest[len(name) + 1:])
                if tail:
                    return [name, *tail]
        return []

    return walk(joined) if joined else []
