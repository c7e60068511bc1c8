"""Backends that talk to the cluster."""

from .base import BackendRequest, FeatureBackend, StatusReport
from .cilium_cli import CiliumCliBackend, classify_failure

__all__ = [
    "BackendRequest",
    "CiliumCliBackend",
    "FeatureBackend",
    "StatusReport",
    "classify_failure",
]
