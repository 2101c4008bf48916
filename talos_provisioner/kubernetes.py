"""Kubernetes node and pod state, read through the cluster API."""

from collections.abc import Callable
from pathlib import Path

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from talos_provisioner.command import run_command
from talos_provisioner.exceptions import ErrorCategory, KubernetesError, ProvisionerError
from talos_provisioner.logging_config import get_logger
from talos_provisioner.polling import PollingConfig

logger = get_logger(__name__)

CILIUM_NAMESPACE = "kube-system"
CILIUM_SELECTOR = "k8s-app=cilium"

NODE_READY_TIMEOUT = 300
NODE_READY_INTERVAL = 5
CORDON_TIMEOUT = 120
CORDON_INTERVAL = 2


def ready_status(obj) -> str | None:
    """Return the status string of the Ready condition of a node or pod."""
    conditions = (obj.status.conditions if obj.status else None) or []
    condition = next((c for c in conditions if c.type == "Ready"), None)
    return condition.status if condition else None


def tolerate_transient(check: Callable[[], bool]) -> Callable[[], bool]:
    """Wrap a check so transient API failures count as 'not met yet'."""

    def wrapped() -> bool:
        try:
            return check()
        except ProvisionerError as e:
            if not e.is_transient:
                raise
            logger.debug(f"Kubernetes API not reachable: {e.message}")
            return False

    return wrapped


def _api_error(action: str, e: Exception) -> KubernetesError:
    if isinstance(e, ApiException):
        category = ErrorCategory.NOT_FOUND if e.status == 404 else ErrorCategory.OTHER
        return KubernetesError(f"{action} failed", f"{e.status} {e.reason}", category=category)
    return KubernetesError(f"{action} failed", str(e), category=ErrorCategory.TRANSIENT_NETWORK)


class NodeStateReader:
    """Query and delete Kubernetes nodes using the generated kubeconfig."""

    def __init__(self, kubeconfig: Path, api: client.CoreV1Api | None = None):
        self.kubeconfig = Path(kubeconfig)
        self._api = api

    @property
    def api(self) -> client.CoreV1Api:
        if self._api is None:
            try:
                api_client = config.new_client_from_config(config_file=str(self.kubeconfig))
            except Exception as e:
                raise KubernetesError(f"Failed to load kubeconfig {self.kubeconfig}", str(e))
            self._api = client.CoreV1Api(api_client=api_client)
        return self._api

    def get_node(self, name: str):
        """Return the node object, or None if the node does not exist."""
        try:
            return self.api.read_node(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _api_error(f"Reading node {name}", e)
        except urllib3.exceptions.HTTPError as e:
            raise _api_error(f"Reading node {name}", e)

    def list_node_names(self) -> list[str]:
        try:
            nodes = self.api.list_node()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _api_error("Listing nodes", e)
        return sorted(node.metadata.name for node in nodes.items)

    def node_ready(self, name: str) -> bool:
        node = self.get_node(name)
        return node is not None and ready_status(node) == "True"

    def node_cordoned(self, name: str) -> bool:
        """True when the node is unschedulable and NotReady, or already gone."""
        node = self.get_node(name)
        if node is None:
            logger.info(f"Node {name} not found (may have been removed)")
            return True
        unschedulable = bool(node.spec and node.spec.unschedulable)
        return unschedulable and ready_status(node) == "False"

    def wait_for_node_ready(self, name: str, timeout: float = NODE_READY_TIMEOUT) -> None:
        PollingConfig(
            timeout=timeout,
            interval=NODE_READY_INTERVAL,
            description=f"Waiting for node {name} to become Ready",
        ).poll_until(tolerate_transient(lambda: self.node_ready(name)))

    def wait_for_node_cordoned(self, name: str, timeout: float = CORDON_TIMEOUT) -> None:
        PollingConfig(
            timeout=timeout,
            interval=CORDON_INTERVAL,
            description=f"Waiting for node {name} to be cordoned and NotReady",
        ).poll_until(tolerate_transient(lambda: self.node_cordoned(name)))

    def wait_for_all_nodes_ready(self, timeout: float = NODE_READY_TIMEOUT) -> None:
        """Wait for every node currently registered in the cluster.

        Raises:
            KubernetesError: If the cluster has no nodes
        """
        logger.info("Waiting for all nodes to be Ready...")
        names = self.list_node_names()
        if not names:
            raise KubernetesError("No nodes found in cluster")
        for name in names:
            self.wait_for_node_ready(name, timeout)
        logger.info("All nodes are Ready")

    def delete_node(self, name: str) -> None:
        """Delete a node object.

        Raises:
            KubernetesError: With category NOT_FOUND if the node is already gone
        """
        logger.info(f"Deleting Kubernetes node: {name}")
        try:
            self.api.delete_node(name)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _api_error(f"Deleting node {name}", e)
        logger.info(f"Kubernetes node {name} deleted successfully")

    def list_pods(self, namespace: str, label_selector: str) -> list:
        try:
            return self.api.list_namespaced_pod(namespace, label_selector=label_selector).items
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _api_error(f"Listing pods in {namespace}", e)

    def list_cilium_pods(self) -> list:
        return self.list_pods(CILIUM_NAMESPACE, CILIUM_SELECTOR)

    def cilium_pods_ready(self) -> bool:
        pods = self.list_cilium_pods()
        return bool(pods) and all(ready_status(pod) == "True" for pod in pods)


def apply_manifest(source: str | Path, kubeconfig: Path) -> str:
    """Apply a manifest file or URL with ``kubectl apply -f``.

    Raises:
        KubernetesError: If kubectl reports a failure
    """
    logger.info(f"Applying {source}")
    result = run_command(["kubectl", "apply", "-f", str(source)], kubeconfig=kubeconfig)
    if not result.success:
        raise KubernetesError(f"Failed to apply {source}", result.stderr.strip())
    return result.stdout
