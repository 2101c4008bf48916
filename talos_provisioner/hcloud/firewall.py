"""Cluster firewall management and caller IP detection."""

import ipaddress

import requests

from talos_provisioner.exceptions import (
    ErrorCategory,
    HetznerAPIError,
    PollTimeoutError,
    ProvisionerError,
)
from talos_provisioner.hcloud.client import HetznerCloudClient
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.hcloud import Firewall
from talos_provisioner.models.node import LABEL_CLUSTER, LABEL_MANAGED_BY, MANAGED_BY
from talos_provisioner.polling import PollingConfig

logger = get_logger(__name__)

IP_LOOKUP_URL = "https://ipv4.icanhazip.com"
IP_LOOKUP_TIMEOUT = 10

TALOS_API_PORT = "50000"
KUBERNETES_API_PORT = "6443"
HTTP_PORT = "80"

DELETE_ATTEMPTS = 12
DELETE_RETRY_INTERVAL = 5
DELETE_TIMEOUT = 300


def firewall_name(cluster_name: str) -> str:
    return f"{cluster_name}-firewall"


def get_current_ip() -> str:
    """Detect the caller's public IPv4 address.

    Raises:
        ProvisionerError: If the lookup service is unreachable or answers garbage
    """
    try:
        response = requests.get(IP_LOOKUP_URL, timeout=IP_LOOKUP_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        raise ProvisionerError(
            "Failed to get current IP address",
            str(e),
            category=ErrorCategory.TRANSIENT_NETWORK,
        )

    ip = response.text.strip()
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        raise ProvisionerError("Failed to get current IP address", f"Unexpected response: {ip!r}")
    return ip


def build_rules(allowed_ip: str) -> list[dict]:
    """Inbound rules: Talos and Kubernetes APIs from ``allowed_ip`` only, HTTP from anywhere.

    Traffic inside the private network is not filtered by Hetzner firewalls.
    """
    allowed_cidr = allowed_ip if "/" in allowed_ip else f"{allowed_ip}/32"
    return [
        {
            "direction": "in",
            "protocol": "tcp",
            "port": TALOS_API_PORT,
            "source_ips": [allowed_cidr],
            "description": "Talos API",
        },
        {
            "direction": "in",
            "protocol": "tcp",
            "port": KUBERNETES_API_PORT,
            "source_ips": [allowed_cidr],
            "description": "Kubernetes API",
        },
        {
            "direction": "in",
            "protocol": "tcp",
            "port": HTTP_PORT,
            "source_ips": ["0.0.0.0/0", "::/0"],
            "description": "HTTP ingress",
        },
    ]


class FirewallManager:
    """Create, apply and delete the cluster firewall."""

    def __init__(self, client: HetznerCloudClient, cluster_name: str):
        self.client = client
        self.cluster_name = cluster_name
        self.name = firewall_name(cluster_name)

    def find(self) -> Firewall | None:
        return next((f for f in self.client.list_firewalls() if f.name == self.name), None)

    def ensure(self, allowed_ip: str) -> Firewall:
        """Return the existing cluster firewall or create it.

        Args:
            allowed_ip: Address (or CIDR) allowed to reach the admin APIs
        """
        firewall = self.find()
        if firewall is not None:
            logger.info(f"Found existing firewall: {firewall.name} (ID: {firewall.id})")
            return firewall

        logger.info(f"Creating firewall for cluster with allowed IP: {allowed_ip}")
        firewall = self.client.create_firewall(
            {
                "name": self.name,
                "rules": build_rules(allowed_ip),
                "labels": {LABEL_CLUSTER: self.cluster_name, LABEL_MANAGED_BY: MANAGED_BY},
            }
        )
        logger.info(f"Firewall created successfully: {firewall.name} (ID: {firewall.id})")
        return firewall

    def apply_to_servers(self, firewall_id: int, server_ids: list[int]) -> None:
        """Attach the firewall to servers in a single call.

        Raises:
            ActionFailedError: If an apply action ends in error
        """
        if not server_ids:
            return
        logger.info(f"Applying firewall to {len(server_ids)} servers")
        for action in self.client.apply_firewall(firewall_id, server_ids):
            self.client.wait_for_action(action.id)
        logger.info("Firewall applied successfully")

    def delete(self) -> bool:
        """Delete the firewall, waiting while servers still reference it.

        Server deletion is asynchronous, so the firewall may report
        ``resource_in_use`` for a while after its servers were deleted.

        Returns:
            True if a firewall was deleted

        Raises:
            HetznerAPIError: If the firewall stays in use or deletion fails
        """
        firewall = self.find()
        if firewall is None:
            logger.info("Firewall not found, nothing to delete")
            return False

        logger.info(f"Deleting firewall: {firewall.name} (ID: {firewall.id})")

        def try_delete() -> bool:
            try:
                self.client.delete_firewall(firewall.id)
            except HetznerAPIError as e:
                if e.is_not_found:
                    return True
                if e.category != ErrorCategory.RESOURCE_BUSY:
                    raise
                logger.info("Firewall still in use, waiting for servers to be deleted")
                return False
            return True

        config = PollingConfig(
            timeout=DELETE_TIMEOUT,
            interval=DELETE_RETRY_INTERVAL,
            description=f"Deleting firewall {firewall.name}",
            max_attempts=DELETE_ATTEMPTS,
        )
        try:
            config.poll_until(try_delete)
        except PollTimeoutError as e:
            raise HetznerAPIError(
                "Failed to delete firewall after waiting for servers",
                e.message,
                category=ErrorCategory.RESOURCE_BUSY,
            )
        return True
