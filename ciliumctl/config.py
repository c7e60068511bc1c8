"""Configuration for ciliumctl.

Settings come from three layers, later layers winning: built-in defaults,
``~/.ciliumctl/config.yaml`` and ``CILIUMCTL_*`` environment variables.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ciliumctl.shared.errors import ConfigurationError
from ciliumctl.shared.models import FeatureKind

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "CILIUMCTL_CONFIG_DIR"

DEFAULTS: Dict[str, Any] = {
    "kubeconfig": "",
    "context": "",
    "namespace": "kube-system",
    "helm_release": "cilium",
    "poll_interval": 2.0,
    "read_timeout": 20.0,
    "teardown_timeout": 300.0,
    "test_namespace": "cilium-test",
    # Seconds, per feature kind.
    "wait_timeouts": {
        FeatureKind.INSTALL.value: 60.0,
        FeatureKind.CLUSTERMESH_ENABLE.value: 120.0,
        FeatureKind.CLUSTERMESH_CONNECT.value: 120.0,
        FeatureKind.HUBBLE.value: 20.0,
        FeatureKind.CONFIG.value: 20.0,
        FeatureKind.KUBEPROXY_FREE.value: 20.0,
    },
}

_ENV_OVERRIDES = {
    "CILIUMCTL_KUBECONFIG": ("kubeconfig", str),
    "KUBECONFIG": ("kubeconfig", str),
    "CILIUMCTL_CONTEXT": ("context", str),
    "CILIUMCTL_NAMESPACE": ("namespace", str),
    "CILIUMCTL_HELM_RELEASE": ("helm_release", str),
    "CILIUMCTL_POLL_INTERVAL": ("poll_interval", float),
    "CILIUMCTL_READ_TIMEOUT": ("read_timeout", float),
    "CILIUMCTL_TEARDOWN_TIMEOUT": ("teardown_timeout", float),
    "CILIUMCTL_TEST_NAMESPACE": ("test_namespace", str),
}

_FLOAT_KEYS = {"poll_interval", "read_timeout", "teardown_timeout"}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Load, query and persist ciliumctl settings."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        if config_dir is None:
            config_dir = Path(os.environ.get(CONFIG_DIR_ENV) or Path.home() / ".ciliumctl")
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.yaml"

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid config file {self.config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {self.config_file} must contain a mapping")
        return data

    def load_config(self) -> Dict[str, Any]:
        """Return the effective configuration (defaults < file < environment)."""

        config = _merge(DEFAULTS, self._load_file())
        for env_name, (key, cast) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if not raw:
                continue
            # CILIUMCTL_KUBECONFIG beats the generic KUBECONFIG.
            if env_name == "KUBECONFIG" and os.environ.get("CILIUMCTL_KUBECONFIG"):
                continue
            try:
                config[key] = cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{env_name}={raw!r} is not a valid {cast.__name__}") from exc
        for key in _FLOAT_KEYS:
            config[key] = float(config[key])
        return config

    def get(self, key: str, default: Any = None) -> Any:
        return self.load_config().get(key, default)

    def wait_timeout(self, kind: FeatureKind) -> float:
        """Default convergence timeout for a feature kind."""

        timeouts = self.load_config().get("wait_timeouts") or {}
        return float(timeouts.get(kind.value, DEFAULTS["wait_timeouts"][kind.value]))

    def set_value(self, key: str, value: Any) -> None:
        """Persist a single top-level or ``wait_timeouts.<kind>`` setting."""

        data = self._load_file()
        if key.startswith("wait_timeouts."):
            kind = FeatureKind.from_string(key.split(".", 1)[1])
            data.setdefault("wait_timeouts", {})[kind.value] = float(value)
        elif key in DEFAULTS and key != "wait_timeouts":
            data[key] = float(value) if key in _FLOAT_KEYS else value
        else:
            raise ConfigurationError(f"Unknown setting '{key}'")
        self.save(data)

    def save(self, data: Dict[str, Any]) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        logger.debug("wrote %s", self.config_file)


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Return the process-wide configuration manager."""

    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def reset_config_manager() -> None:
    global _config_manager
    _config_manager = None
