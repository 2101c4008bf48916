"""Talos machine configuration generation."""

from pathlib import Path

from talos_provisioner.artifacts import (
    CONTROLPLANE_CONFIG,
    SECRETS,
    TALOSCONFIG,
    WORKER_CONFIG,
    ArtifactStore,
)
from talos_provisioner.command import run_command
from talos_provisioner.exceptions import TalosError
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.cluster import TalosConfig

logger = get_logger(__name__)

PLACEHOLDER_ENDPOINT = "https://127.0.0.1:6443"

CONTROL_PLANE_PATCH = "control-plane.yaml"
WORKER_PATCH = "worker.yaml"


class TalosConfigGenerator:
    """Generate controlplane/worker configs and talosconfig with ``talosctl gen``."""

    def __init__(
        self,
        cluster_name: str,
        talos: TalosConfig,
        artifacts: ArtifactStore,
        patches_dir: Path = Path("patches"),
    ):
        self.cluster_name = cluster_name
        self.talos = talos
        self.artifacts = artifacts
        self.patches_dir = Path(patches_dir)

    def ensure_secrets(self) -> Path:
        """Return the secrets bundle, generating it on first use.

        Reusing one bundle keeps repeated ``create`` runs from rotating the
        cluster CA and tokens.
        """
        path = self.artifacts.path(SECRETS)
        if path.exists():
            logger.info("Using existing secrets file")
            return path

        logger.info("Generating Talos secrets...")
        result = run_command(["talosctl", "gen", "secrets", "--output-file", str(path)])
        if not result.success:
            raise TalosError("talosctl gen secrets failed", result.stderr.strip())
        if path.exists():
            path.chmod(0o600)
        return path

    def build_args(self, endpoint: str, secrets: Path) -> list[str]:
        args = [
            "talosctl",
            "gen",
            "config",
            self.cluster_name,
            endpoint,
            "--output-dir",
            str(self.artifacts.output_dir),
            "--kubernetes-version",
            self.talos.kubernetes_version,
            "--talos-version",
            self.talos.version,
            "--force",
            # Keeps machine configs under the 32KB user_data limit
            "--with-docs=false",
            "--with-examples=false",
            "--with-secrets",
            str(secrets),
        ]

        for patch in self.talos.config_patches:
            args.extend(["--config-patch", patch])

        control_plane_patch = self.patches_dir / CONTROL_PLANE_PATCH
        if control_plane_patch.exists():
            args.extend(["--config-patch-control-plane", f"@{control_plane_patch}"])

        worker_patch = self.patches_dir / WORKER_PATCH
        if worker_patch.exists():
            args.extend(["--config-patch-worker", f"@{worker_patch}"])

        return args

    def generate(self, endpoint: str = PLACEHOLDER_ENDPOINT) -> dict[str, Path]:
        """Generate Talos configuration files.

        Args:
            endpoint: Control plane endpoint baked into the configs

        Returns:
            Mapping of artifact name to generated path

        Raises:
            TalosError: If talosctl fails
        """
        logger.info("Generating Talos configuration files...")
        self.artifacts.ensure_dir()
        secrets = self.ensure_secrets()

        result = run_command(self.build_args(endpoint, secrets))
        if not result.success:
            raise TalosError("talosctl gen config failed", result.stderr.strip())

        logger.info("Talos configuration files generated successfully")
        return {
            name: self.artifacts.path(name)
            for name in (CONTROLPLANE_CONFIG, WORKER_CONFIG, TALOSCONFIG, SECRETS)
        }
