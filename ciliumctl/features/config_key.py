"""Single keys of the cilium-config ConfigMap."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ciliumctl.shared.errors import ConfigurationError
from ciliumctl.shared.models import FeatureIdentity, FeatureKind

from .base import BaseFeature

RELEASE_PREFIX = "cilium-config-"


class ConfigKeyFeature(BaseFeature):
    """Set one agent configuration key.

    Reading compares the live value against the requested one; any
    difference, including the key being unset, reports the feature gone.
    A read addressed only by identity checks that the key is set.
    """

    kind = FeatureKind.CONFIG

    def __init__(self) -> None:
        super().__init__(name="config", description="Set a key in the Cilium agent configuration.")

    def get_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Configuration key, e.g. enable-l7-proxy."},
                "value": {"type": "string", "description": "Value to set."},
                "restart": {
                    "type": "boolean",
                    "default": True,
                    "description": "Restart agent pods so the change takes effect.",
                },
            },
            "required": ["key", "value"],
        }

    def release_name(self, options: Dict[str, Any]) -> str:
        return f"{RELEASE_PREFIX}{options.get('key', '')}"

    def with_defaults(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        options = super().with_defaults(options)
        # CLI values arrive JSON-decoded; the agent only stores strings.
        value = options.get("value")
        if isinstance(value, bool):
            options["value"] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            options["value"] = str(value)
        return options

    def lookup_options(
        self, identity: FeatureIdentity, options: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        options = self.with_defaults(options)
        if options.get("key"):
            return options
        key = identity.release[len(RELEASE_PREFIX):] if identity.release.startswith(RELEASE_PREFIX) else ""
        if not key:
            raise ConfigurationError(
                f"{identity}: cannot recover the config key, release must look like {RELEASE_PREFIX}<key>"
            )
        options["key"] = key
        return options
