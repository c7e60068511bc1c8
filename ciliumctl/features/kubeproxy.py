"""Kube-proxy replacement: park the kube-proxy daemonset on no nodes."""

from __future__ import annotations

from typing import Any, Dict

from ciliumctl.shared.models import FeatureKind

from .base import BaseFeature


class KubeProxyFreeFeature(BaseFeature):
    """Keep kube-proxy from running so Cilium takes over service handling.

    A cluster without a kube-proxy daemonset already satisfies the feature
    on read, but creating it there fails.
    """

    kind = FeatureKind.KUBEPROXY_FREE
    default_release = "cilium-kubeproxy-less"

    def __init__(self) -> None:
        super().__init__(
            name="kubeproxy-free",
            description="Disable kube-proxy by pinning its daemonset to a non-existent node label.",
        )

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "default": "kube-proxy",
                    "description": "Name of the kube-proxy daemonset.",
                },
            },
        }
