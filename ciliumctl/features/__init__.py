"""Feature controllers."""

from typing import List, Type

from ciliumctl.features.base import BaseFeature, FeatureContext, feature_registry
from ciliumctl.features.clustermesh import ClusterMeshConnectFeature, ClusterMeshEnableFeature
from ciliumctl.features.config_key import ConfigKeyFeature
from ciliumctl.features.hubble import HubbleFeature
from ciliumctl.features.install import InstallFeature
from ciliumctl.features.kubeproxy import KubeProxyFreeFeature

FEATURES: List[Type[BaseFeature]] = [
    InstallFeature,
    ClusterMeshEnableFeature,
    ClusterMeshConnectFeature,
    HubbleFeature,
    ConfigKeyFeature,
    KubeProxyFreeFeature,
]


def initialize_features() -> None:
    """Register one controller per feature kind."""

    feature_registry.reset()
    for feature_cls in FEATURES:
        feature_registry.register(feature_cls())


__all__ = [
    "BaseFeature",
    "FeatureContext",
    "feature_registry",
    "initialize_features",
    "InstallFeature",
    "ClusterMeshEnableFeature",
    "ClusterMeshConnectFeature",
    "HubbleFeature",
    "ConfigKeyFeature",
    "KubeProxyFreeFeature",
]
