"""SSH key pair generation and the cluster's key resource."""

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from talos_provisioner.hcloud.client import HetznerCloudClient
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.hcloud import SSHKey
from talos_provisioner.models.node import LABEL_CLUSTER, LABEL_MANAGED_BY, MANAGED_BY

logger = get_logger(__name__)


def ssh_key_name(cluster_name: str) -> str:
    return f"{cluster_name}-{MANAGED_BY}"


def generate_ed25519_keypair(comment: str | None = None) -> tuple[str, str]:
    """Generate an ED25519 key pair.

    Args:
        comment: Optional comment appended to the public key

    Returns:
        Tuple of (public key, private key), both in OpenSSH format
    """
    key = Ed25519PrivateKey.generate()
    private_key = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_key = (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        .decode()
    )
    if comment:
        public_key = f"{public_key} {comment}"
    return public_key, private_key


class SSHKeyManager:
    """Create, find and delete the cluster's SSH key."""

    def __init__(self, client: HetznerCloudClient, cluster_name: str):
        self.client = client
        self.cluster_name = cluster_name
        self.name = ssh_key_name(cluster_name)

    def find(self) -> SSHKey | None:
        return next((k for k in self.client.list_ssh_keys() if k.name == self.name), None)

    def ensure(self) -> tuple[SSHKey, str | None]:
        """Return the existing key, or generate and upload a new one.

        Returns:
            Tuple of (key resource, private key). The private key is only
            returned for a freshly generated pair and must be stored by the
            caller.
        """
        existing = self.find()
        if existing is not None:
            logger.info(f"Using existing SSH key: {existing.name} (ID: {existing.id})")
            return existing, None

        logger.info("Generating new ED25519 SSH key pair...")
        public_key, private_key = generate_ed25519_keypair(comment=self.name)

        logger.info("Uploading SSH key to Hetzner Cloud...")
        key = self.client.create_ssh_key(
            self.name,
            public_key,
            {LABEL_CLUSTER: self.cluster_name, LABEL_MANAGED_BY: MANAGED_BY},
        )
        logger.info(f"SSH key created successfully: {key.name} (ID: {key.id})")
        return key, private_key

    def delete(self) -> bool:
        """Delete the cluster key if present."""
        key = self.find()
        if key is None:
            logger.info(f"No SSH key found for cluster: {self.cluster_name}")
            return False

        logger.info(f"Deleting SSH key: {key.name} (ID: {key.id})")
        self.client.delete_ssh_key(key.id)
        logger.info("SSH key deleted successfully")
        return True
