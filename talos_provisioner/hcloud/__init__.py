"""Hetzner Cloud gateway."""

from talos_provisioner.hcloud.client import HetznerCloudClient
from talos_provisioner.hcloud.firewall import FirewallManager, get_current_ip
from talos_provisioner.hcloud.network import NetworkManager
from talos_provisioner.hcloud.servers import NodeRequest, ServerManager
from talos_provisioner.hcloud.ssh_keys import SSHKeyManager

__all__ = [
    "FirewallManager",
    "HetznerCloudClient",
    "NetworkManager",
    "NodeRequest",
    "SSHKeyManager",
    "ServerManager",
    "get_current_ip",
]
