"""Hubble observability (agent flag, relay and UI)."""

from __future__ import annotations

from typing import Any, Dict

from ciliumctl.shared.models import FeatureKind

from .base import BaseFeature

RELAY_SELECTOR = "k8s-app=hubble-relay"


class HubbleFeature(BaseFeature):
    kind = FeatureKind.HUBBLE
    default_release = "cilium-hubble"

    def __init__(self) -> None:
        super().__init__(name="hubble", description="Enable Hubble, optionally with relay and UI.")

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "relay": {"type": "boolean", "default": True, "description": "Deploy hubble-relay."},
                "ui": {"type": "boolean", "default": False, "description": "Deploy the Hubble UI."},
            },
        }
