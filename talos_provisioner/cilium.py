"""Cilium CNI installation via Helm."""

from pathlib import Path
from typing import Any

from talos_provisioner.command import run_command
from talos_provisioner.exceptions import CommandError
from talos_provisioner.kubernetes import (
    NodeStateReader,
    apply_manifest,
    ready_status,
    tolerate_transient,
)
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.cluster import CiliumConfig
from talos_provisioner.polling import PollingConfig

logger = get_logger(__name__)

HELM_INSTALL_URL = "https://helm.sh/docs/intro/install/"
HELM_REPO_NAME = "cilium"
HELM_REPO_URL = "https://helm.cilium.io/"
GATEWAY_API_CRDS = (
    "https://github.com/kubernetes-sigs/gateway-api/releases/download/"
    "v1.3.0/experimental-install.yaml"
)

READY_TIMEOUT = 300
READY_INTERVAL = 10

HUBBLE_METRICS = (
    "{dns,drop,tcp,flow,port-distribution,icmp,"
    "httpV2:exemplars=true;labelsContext=source_ip\\,source_namespace\\,source_workload"
    "\\,destination_ip\\,destination_namespace\\,destination_workload\\,traffic_direction}"
)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "{" + ",".join(_format_value(v) for v in value) + "}"
    return str(value)


def flatten_values(values: dict[str, Any], prefix: str = "") -> list[str]:
    """Render nested Helm values as ``key.path=value`` pairs for ``--set``."""
    pairs = []
    for key, value in values.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(flatten_values(value, path))
        else:
            pairs.append(f"{path}={_format_value(value)}")
    return pairs


class CiliumManager:
    """Install Cilium and report its readiness."""

    def __init__(
        self,
        config: CiliumConfig,
        kubeconfig: Path,
        control_plane_count: int,
        nodes: NodeStateReader | None = None,
    ):
        self.config = config
        self.kubeconfig = Path(kubeconfig)
        self.control_plane_count = control_plane_count
        self.nodes = nodes or NodeStateReader(self.kubeconfig)

    def helm_values(self) -> list[str]:
        """Build the ``--set`` values for the Cilium chart."""
        operator_replicas = 2 if self.control_plane_count > 1 else 1
        values = [
            "ipam.mode=kubernetes",
            "kubeProxyReplacement=true",
            "securityContext.capabilities.ciliumAgent={CHOWN,KILL,NET_ADMIN,NET_RAW,IPC_LOCK,"
            "SYS_ADMIN,SYS_RESOURCE,DAC_OVERRIDE,FOWNER,SETGID,SETUID}",
            "securityContext.capabilities.cleanCiliumState={NET_ADMIN,SYS_ADMIN,SYS_RESOURCE}",
            "cgroup.autoMount.enabled=false",
            "cgroup.hostRoot=/sys/fs/cgroup",
            f"operator.replicas={operator_replicas}",
        ]

        if self.config.enable_hubble:
            values += [
                "hubble.enabled=true",
                "hubble.relay.enabled=true",
                "hubble.ui.enabled=true",
                f"hubble.metrics.enabled={HUBBLE_METRICS}",
            ]
        else:
            values.append("hubble.enabled=false")

        values += ["prometheus.enabled=true", "operator.prometheus.enabled=true"]

        if self.config.enable_ipv6:
            values.append("ipv6.enabled=true")

        values += [
            "gatewayAPI.enabled=true",
            # KubePrism: Talos' local API server load balancer
            "k8sServiceHost=localhost",
            "k8sServicePort=7445",
            # Hetzner private networks route via a gateway, so pod traffic is tunnelled
            "nodeIPAM.enabled=true",
            "tunnelProtocol=vxlan",
            "autoDirectNodeRoutes=false",
            "bpf.masquerade=true",
            "loadBalancer.acceleration=native",
            "defaultLBServiceIPAM=nodeipam",
        ]

        values += flatten_values(self.config.helm_values)
        return values

    def _helm(self, args: list[str], action: str):
        result = run_command(["helm", *args], kubeconfig=self.kubeconfig)
        if not result.success:
            raise CommandError(f"{action} failed", result.stderr.strip())
        return result

    def add_helm_repo(self) -> None:
        logger.info("Adding Cilium Helm repository...")
        result = run_command(
            ["helm", "repo", "add", HELM_REPO_NAME, HELM_REPO_URL], kubeconfig=self.kubeconfig
        )
        if not result.success and "already exists" not in result.stderr:
            raise CommandError("Failed to add Cilium Helm repo", result.stderr.strip())
        self._helm(["repo", "update"], "Updating Helm repositories")

    def install(self) -> None:
        """Install Gateway API CRDs, then the Cilium chart."""
        logger.info(f"Installing Cilium CNI version {self.config.version}...")

        logger.info("Installing Gateway API CRDs...")
        apply_manifest(GATEWAY_API_CRDS, self.kubeconfig)

        self.add_helm_repo()

        logger.info("Installing Cilium Helm chart...")
        args = [
            "install",
            "cilium",
            f"{HELM_REPO_NAME}/cilium",
            "--version",
            self.config.version,
            "--namespace",
            "kube-system",
        ]
        for value in self.helm_values():
            args.extend(["--set", value])
        self._helm(args, "Cilium installation")

        logger.info("Cilium installed successfully")

    def wait_for_ready(self, timeout: float = READY_TIMEOUT) -> None:
        """Wait for all Cilium pods, then all cluster nodes, to be Ready."""
        PollingConfig(
            timeout=timeout,
            interval=READY_INTERVAL,
            description="Waiting for Cilium to be ready",
        ).poll_until(tolerate_transient(self.nodes.cilium_pods_ready))

        self.nodes.wait_for_all_nodes_ready(timeout)

    def get_status(self) -> list[tuple[str, str, str]]:
        """List Cilium pods as (name, node, ready) rows."""
        return [
            (
                pod.metadata.name,
                pod.spec.node_name or "-",
                "Ready" if ready_status(pod) == "True" else (pod.status.phase or "Unknown"),
            )
            for pod in self.nodes.list_cilium_pods()
        ]
