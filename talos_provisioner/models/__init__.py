"""Data models for cluster configuration and provisioned resources."""

from talos_provisioner.models.cluster import (
    CiliumConfig,
    ClusterSpec,
    HetznerCloudConfig,
    NetworkConfig,
    NodePool,
    TalosConfig,
    write_example_config,
)
from talos_provisioner.models.node import NodeRecord, NodeRole

__all__ = [
    "ClusterSpec",
    "CiliumConfig",
    "HetznerCloudConfig",
    "NetworkConfig",
    "NodePool",
    "NodeRecord",
    "NodeRole",
    "TalosConfig",
    "write_example_config",
]
