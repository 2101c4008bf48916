"""Talos Linux gateway."""

from talos_provisioner.talos.client import TalosClient, cluster_endpoint, wait_for_api_server
from talos_provisioner.talos.config import PLACEHOLDER_ENDPOINT, TalosConfigGenerator

__all__ = [
    "PLACEHOLDER_ENDPOINT",
    "TalosClient",
    "TalosConfigGenerator",
    "cluster_endpoint",
    "wait_for_api_server",
]
