"""Output directory holding generated cluster artifacts.

The output directory is the only local state the provisioner keeps. It holds:

* ``id_ed25519`` - SSH private key for the cluster key pair (mode 0600)
* ``controlplane.yaml`` / ``worker.yaml`` - Talos machine configs per role
* ``talosconfig`` - Talos API client configuration
* ``secrets.yaml`` - Talos cluster secrets, reused across ``create`` runs
* ``kubeconfig`` - Kubernetes admin credentials
"""

import os
from pathlib import Path

from talos_provisioner.exceptions import ArtifactError
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.node import NodeRole

logger = get_logger(__name__)

SSH_PRIVATE_KEY = "id_ed25519"
CONTROLPLANE_CONFIG = "controlplane.yaml"
WORKER_CONFIG = "worker.yaml"
TALOSCONFIG = "talosconfig"
SECRETS = "secrets.yaml"
KUBECONFIG = "kubeconfig"


class ArtifactStore:
    """Read and write named artifacts in the output directory."""

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)

    def path(self, name: str) -> Path:
        return self.output_dir / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def ensure_dir(self) -> Path:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactError(f"Failed to create output directory {self.output_dir}", str(e))
        return self.output_dir

    def require(self, name: str, hint: str | None = None) -> Path:
        """Return the path of an artifact that must already exist.

        Raises:
            ArtifactError: If the artifact is missing
        """
        path = self.path(name)
        if not path.exists():
            raise ArtifactError(
                f"{name} not found at {path}",
                hint or "This operation requires an existing cluster. Run 'talos-prov create'.",
            )
        return path

    def read_text(self, name: str) -> str:
        path = self.require(name)
        try:
            return path.read_text()
        except OSError as e:
            raise ArtifactError(f"Failed to read {path}", str(e))

    def write_text(self, name: str, content: str, private: bool = False) -> Path:
        """Write an artifact, restricting it to the owner when ``private``."""
        self.ensure_dir()
        path = self.path(name)
        try:
            path.write_text(content)
            if private and os.name == "posix":
                path.chmod(0o600)
        except OSError as e:
            raise ArtifactError(f"Failed to write {path}", str(e))
        logger.info(f"Saved {name} to {path}")
        return path

    def machine_config(self, role: NodeRole) -> str:
        return CONTROLPLANE_CONFIG if role == NodeRole.CONTROL_PLANE else WORKER_CONFIG

    def read_machine_config(self, role: NodeRole) -> str:
        """Read the generated Talos config used as server user data for ``role``."""
        name = self.machine_config(role)
        self.require(
            name,
            f"Talos configuration file not found: {self.path(name)}\n"
            "Scaling requires an existing cluster. Please run 'talos-prov create' first.",
        )
        return self.read_text(name)
