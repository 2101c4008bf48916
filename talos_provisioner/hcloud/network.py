"""Private network management."""

from talos_provisioner.hcloud.client import HetznerCloudClient
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.cluster import NetworkConfig
from talos_provisioner.models.hcloud import Network
from talos_provisioner.models.node import LABEL_CLUSTER, LABEL_MANAGED_BY, MANAGED_BY

logger = get_logger(__name__)


def network_name(cluster_name: str) -> str:
    return f"{cluster_name}-network"


class NetworkManager:
    """Create, find and delete the cluster's private network."""

    def __init__(self, client: HetznerCloudClient, cluster_name: str):
        self.client = client
        self.cluster_name = cluster_name
        self.name = network_name(cluster_name)

    def find(self) -> Network | None:
        return next((n for n in self.client.list_networks() if n.name == self.name), None)

    def ensure(self, config: NetworkConfig) -> Network:
        """Return the existing cluster network or create it."""
        network = self.find()
        if network is not None:
            logger.info(f"Found existing network: {network.name} (ID: {network.id})")
            return network

        logger.info(f"Creating new private network: {self.name}")
        network = self.client.create_network(
            {
                "name": self.name,
                "ip_range": config.cidr,
                "subnets": [
                    {
                        "type": "cloud",
                        "ip_range": config.subnet_cidr,
                        "network_zone": config.zone,
                    }
                ],
                "labels": {LABEL_CLUSTER: self.cluster_name, LABEL_MANAGED_BY: MANAGED_BY},
            }
        )
        logger.info(f"Network created successfully: {network.name} (ID: {network.id})")
        return network

    def delete(self) -> bool:
        """Delete the cluster network if present.

        Returns:
            True if a network was deleted
        """
        network = self.find()
        if network is None:
            logger.info("Network not found, nothing to delete")
            return False

        logger.info(f"Deleting network: {network.name} (ID: {network.id})")
        self.client.delete_network(network.id)
        logger.info("Network deleted successfully")
        return True
