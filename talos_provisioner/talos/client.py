"""Talos API operations via talosctl."""

import json
from pathlib import Path

import requests
import urllib3

from talos_provisioner.command import CommandResult, run_command
from talos_provisioner.exceptions import ErrorCategory, ProvisionerError, TalosError
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.node import NodeRecord
from talos_provisioner.parallel import run_parallel
from talos_provisioner.polling import PollingConfig

logger = get_logger(__name__)

TALOSCTL_INSTALL_URL = "https://www.talos.dev/latest/talos-guides/install/talosctl/"

KUBERNETES_API_PORT = 6443
ENDPOINT_PATCH_PATH = "/cluster/controlPlane/endpoint"

API_WAIT_TIMEOUT = 300
API_WAIT_INTERVAL = 5
API_PROBE_TIMEOUT = 10

# stderr fragments meaning the node could not be reached
_TRANSIENT_MARKERS = (
    "connection refused",
    "i/o timeout",
    "deadline exceeded",
    "no route to host",
    "connection reset",
    "unavailable",
)


def classify_stderr(stderr: str) -> ErrorCategory:
    """Map talosctl error output onto an error category."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT_NETWORK
    if "not found" in lowered or "notfound" in lowered:
        return ErrorCategory.NOT_FOUND
    return ErrorCategory.OTHER


def cluster_endpoint(ip: str) -> str:
    return f"https://{ip}:{KUBERNETES_API_PORT}"


class TalosClient:
    """Run talosctl against the cluster described by a talosconfig file."""

    def __init__(self, talosconfig: Path):
        self.talosconfig = Path(talosconfig)

    def _run(self, args: list[str], action: str) -> CommandResult:
        """Run talosctl and raise a categorized TalosError on failure."""
        result = run_command(["talosctl", *args, "--talosconfig", str(self.talosconfig)])
        if not result.success:
            stderr = result.stderr.strip()
            raise TalosError(f"{action} failed", stderr, category=classify_stderr(stderr))
        return result

    def version(self, node_ip: str) -> str:
        """Query the Talos version on a node, proving its API answers."""
        return self._run(["version", "--nodes", node_ip], f"Talos API check on {node_ip}").stdout

    def is_api_ready(self, node_ip: str) -> bool:
        try:
            self.version(node_ip)
        except ProvisionerError as e:
            logger.debug(f"Talos API on {node_ip} not ready: {e.message}")
            return False
        return True

    def wait_for_api(self, node_ip: str, node_name: str, timeout: float = API_WAIT_TIMEOUT) -> None:
        PollingConfig(
            timeout=timeout,
            interval=API_WAIT_INTERVAL,
            description=f"Waiting for Talos API on {node_name} ({node_ip})",
        ).poll_until(lambda: self.is_api_ready(node_ip))

    def configure_endpoints(self, control_plane_ips: list[str]) -> None:
        """Point talosconfig at the control planes, first one as default node."""
        logger.info("Configuring talosconfig with control plane endpoints")
        self._run(["config", "endpoint", *control_plane_ips], "Setting talosconfig endpoints")
        if control_plane_ips:
            self._run(["config", "node", control_plane_ips[0]], "Setting talosconfig node")
        logger.info(f"Talosconfig configured with endpoints: {', '.join(control_plane_ips)}")

    def patch_endpoint(self, node: NodeRecord, endpoint: str) -> None:
        """Replace the control plane endpoint in a node's live machine config."""
        self.wait_for_api(node.public_ip, node.name)

        patch = json.dumps([{"op": "replace", "path": ENDPOINT_PATCH_PATH, "value": endpoint}])
        logger.info(f"Patching node: {node.name} ({node.public_ip})")
        self._run(
            ["patch", "mc", "--nodes", node.public_ip, "--patch", patch],
            f"Patching node {node.name}",
        )
        logger.info(f"Successfully patched {node.name} ({node.public_ip})")

    def patch_cluster_endpoint(self, control_planes: list[NodeRecord], endpoint: str) -> None:
        """Patch every control plane with the real endpoint concurrently.

        Workers reach the API over the private network and are not patched.
        """
        logger.info(f"Patching control plane nodes with actual cluster endpoint: {endpoint}")
        targets = []
        for node in control_planes:
            if node.public_ip:
                targets.append(node)
            else:
                logger.warning(f"Skipping endpoint patch for {node.name}: no public IP")

        run_parallel(
            lambda node: self.patch_endpoint(node, endpoint),
            targets,
            description="Endpoint patch",
            name=lambda node: node.name,
        )
        logger.info("All nodes patched successfully")

    def bootstrap(self, node_ip: str) -> None:
        """Bootstrap etcd and the Kubernetes control plane on one node."""
        logger.info(f"Bootstrapping Kubernetes cluster on {node_ip}")
        self._run(["bootstrap", "--nodes", node_ip], "Bootstrap")
        logger.info("Kubernetes cluster bootstrapped successfully")

    def generate_kubeconfig(self, node_ip: str, output_path: Path) -> Path:
        logger.info("Generating kubeconfig file...")
        self._run(
            ["kubeconfig", str(output_path), "--nodes", node_ip, "--force"],
            "Generating kubeconfig",
        )
        logger.info(f"Kubeconfig generated at: {output_path}")
        return Path(output_path)

    def reset_node(self, node_ip: str, node_name: str) -> None:
        """Gracefully reset a node.

        Talos cordons and drains the node, leaves etcd if it is a control
        plane, wipes its disks and powers it off.

        Raises:
            TalosError: Categorized failure; a TRANSIENT_NETWORK category usually
                means the node powered off before answering
        """
        logger.info(f"Resetting node {node_name} ({node_ip})")
        self._run(["--nodes", node_ip, "reset", "--graceful"], f"Reset of node {node_name}")
        logger.info(f"Node {node_name} reset successfully")


def api_server_responds(ip: str) -> bool:
    """Return True once the Kubernetes API answers with any non-5xx status.

    401 and 403 count: the server is up and only needs credentials.
    """
    url = f"{cluster_endpoint(ip)}/version"
    try:
        response = requests.get(url, verify=False, timeout=API_PROBE_TIMEOUT)
    except requests.RequestException as e:
        logger.debug(f"API server at {url} not reachable: {e}")
        return False
    return response.status_code < 500


def wait_for_api_server(ip: str, timeout: float = API_WAIT_TIMEOUT) -> None:
    """Wait for the Kubernetes API server on ``ip`` to become reachable."""
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    PollingConfig(
        timeout=timeout,
        interval=API_WAIT_INTERVAL,
        description="Waiting for Kubernetes API server to be ready",
    ).poll_until(lambda: api_server_responds(ip))
