"""Reconcile Cilium features (install, cluster mesh, Hubble, config keys, kube-proxy replacement)."""

__version__ = "0.1.0"
