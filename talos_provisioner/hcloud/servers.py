"""Server lifecycle on Hetzner Cloud."""

from dataclasses import dataclass, field

from talos_provisioner.exceptions import ConfigurationError, HetznerAPIError
from talos_provisioner.hcloud.client import HetznerCloudClient
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.hcloud import Server
from talos_provisioner.models.node import LABEL_CLUSTER, NodeRecord, NodeRole, build_labels
from talos_provisioner.parallel import run_parallel

logger = get_logger(__name__)

SERVER_CREATE_TIMEOUT = 300


@dataclass
class NodeRequest:
    """Everything needed to create one cluster node."""

    name: str
    role: NodeRole
    pool: str
    server_type: str
    user_data: str
    labels: dict[str, str] = field(default_factory=dict)


class ServerManager:
    """Create, list and delete the servers of one cluster."""

    def __init__(
        self,
        client: HetznerCloudClient,
        cluster_name: str,
        location: str,
        talos_version: str,
        snapshot_id: str | None,
    ):
        self.client = client
        self.cluster_name = cluster_name
        self.location = location
        self.talos_version = talos_version
        self.snapshot_id = snapshot_id

    @property
    def label_selector(self) -> str:
        return f"{LABEL_CLUSTER}={self.cluster_name}"

    def require_snapshot(self) -> str:
        """Return the Talos image snapshot id.

        Raises:
            ConfigurationError: If no snapshot is configured
        """
        if not self.snapshot_id:
            raise ConfigurationError(
                "Talos snapshot ID not configured",
                "Set 'talos.hcloud_snapshot_id' in your cluster configuration. To create a "
                "snapshot, boot any server into rescue mode, write the Talos hcloud image "
                f"for {self.talos_version} to /dev/sda, reboot and snapshot the disk.",
            )
        return self.snapshot_id

    def create_node(self, request: NodeRequest, network_id: int, ssh_key_id: int) -> NodeRecord:
        """Create one server and wait until it is provisioned.

        Args:
            request: Node to create
            network_id: Private network to attach
            ssh_key_id: SSH key to install

        Returns:
            NodeRecord for the finished server
        """
        image = self.require_snapshot()
        logger.info(
            f"Creating {request.role} server: {request.name} (type: {request.server_type})"
        )

        labels = build_labels(
            self.cluster_name, request.role, request.pool, self.talos_version, request.labels
        )
        body = {
            "name": request.name,
            "server_type": request.server_type,
            "location": self.location,
            "image": image,
            "ssh_keys": [ssh_key_id],
            "user_data": request.user_data,
            "networks": [network_id],
            "labels": labels,
            "automount": False,
            "start_after_create": True,
        }

        server, action = self.client.create_server(body)
        logger.info(f"Server {request.name} created (ID: {server.id}), waiting for provisioning")

        self.client.wait_for_action(action.id, timeout=SERVER_CREATE_TIMEOUT)
        server = self.client.get_server(server.id)

        logger.info(f"Server {request.name} is ready")
        return NodeRecord.from_server(server, self.cluster_name)

    def create_nodes(
        self, requests: list[NodeRequest], network_id: int, ssh_key_id: int
    ) -> list[NodeRecord]:
        """Create servers concurrently, one task per server.

        Raises:
            The single task failure, or BatchError when several servers failed
        """
        return run_parallel(
            lambda request: self.create_node(request, network_id, ssh_key_id),
            requests,
            description="Server creation",
            name=lambda request: request.name,
        )

    def list_cluster_servers(self) -> list[Server]:
        """List raw servers carrying this cluster's label."""
        return self.client.list_servers(label_selector=self.label_selector)

    def list_cluster_nodes(self) -> list[NodeRecord]:
        """List this cluster's servers as validated node records."""
        return [
            NodeRecord.from_server(server, self.cluster_name)
            for server in self.list_cluster_servers()
        ]

    def delete_servers(self, server_ids: list[int]) -> list[int]:
        """Delete servers one by one, continuing past failures.

        Returns:
            Ids of servers that could not be deleted
        """
        if not server_ids:
            logger.info("No servers to delete")
            return []

        logger.info(f"Deleting {len(server_ids)} servers")
        failed = []
        for server_id in server_ids:
            try:
                self.client.delete_server(server_id)
                logger.info(f"Deleted server ID: {server_id}")
            except HetznerAPIError as e:
                if e.is_not_found:
                    logger.info(f"Server {server_id} already deleted")
                    continue
                logger.warning(f"Failed to delete server {server_id}: {e.message}")
                failed.append(server_id)
        return failed

    def delete_cluster_servers(self) -> list[int]:
        """Delete every server labelled with this cluster."""
        servers = self.list_cluster_servers()
        if not servers:
            logger.info(f"No servers found for cluster {self.cluster_name}")
            return []

        for server in servers:
            logger.info(f"Deleting server: {server.name} (ID: {server.id})")
        return self.delete_servers([server.id for server in servers])
