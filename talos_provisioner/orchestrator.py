"""Cluster lifecycle: create, destroy and status."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from talos_provisioner.artifacts import (
    KUBECONFIG,
    SSH_PRIVATE_KEY,
    TALOSCONFIG,
    ArtifactStore,
)
from talos_provisioner.cilium import HELM_INSTALL_URL, CiliumManager
from talos_provisioner.command import require_tool
from talos_provisioner.exceptions import ProvisionerError, StepFailedError
from talos_provisioner.hcloud import (
    FirewallManager,
    HetznerCloudClient,
    NetworkManager,
    NodeRequest,
    ServerManager,
    SSHKeyManager,
    get_current_ip,
)
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.cluster import ClusterSpec, NodePool
from talos_provisioner.models.node import NodeRecord, NodeRole, filter_nodes, node_name
from talos_provisioner.parallel import run_parallel
from talos_provisioner.talos import (
    PLACEHOLDER_ENDPOINT,
    TalosClient,
    TalosConfigGenerator,
    cluster_endpoint,
    wait_for_api_server,
)
from talos_provisioner.talos.client import TALOSCTL_INSTALL_URL

logger = get_logger(__name__)

KUBECTL_INSTALL_URL = "https://kubernetes.io/docs/tasks/tools/"


@dataclass
class ClusterSummary:
    """Outcome of a successful ``create``."""

    cluster_name: str
    endpoint: str
    control_planes: list[NodeRecord]
    workers: list[NodeRecord]
    kubeconfig: Path
    talosconfig: Path


@dataclass
class PoolStatus:
    role: NodeRole
    name: str
    configured: int
    nodes: list[NodeRecord] = field(default_factory=list)


@dataclass
class ClusterStatus:
    """Live view of a cluster, grouped by configured pool."""

    cluster_name: str
    pools: list[PoolStatus]
    unassigned: list[NodeRecord] = field(default_factory=list)
    cilium_pods: list[tuple[str, str, str]] | None = None
    cilium_error: str | None = None

    @property
    def node_count(self) -> int:
        return sum(len(p.nodes) for p in self.pools) + len(self.unassigned)


@contextmanager
def step(name: str) -> Iterator[None]:
    """Run one named orchestration step, wrapping any failure with the step name."""
    logger.info(f"==> {name}")
    try:
        yield
    except StepFailedError:
        raise
    except Exception as e:
        raise StepFailedError(name, e) from e


def node_requests(
    spec: ClusterSpec, role: NodeRole, read_user_data: Callable[[NodeRole], str]
) -> list[NodeRequest]:
    """Expand the role's pools into one request per node, ordinals from 1."""
    requests = []
    user_data = None
    for pool in spec.pools(role):
        if pool.count and user_data is None:
            user_data = read_user_data(role)
        requests.extend(
            pool_requests(spec.cluster_name, role, pool, user_data, range(1, pool.count + 1))
        )
    return requests


def pool_requests(
    cluster_name: str, role: NodeRole, pool: NodePool, user_data: str, ordinals
) -> list[NodeRequest]:
    return [
        NodeRequest(
            name=node_name(cluster_name, pool.name, ordinal),
            role=role,
            pool=pool.name,
            server_type=pool.server_type,
            user_data=user_data,
            labels=dict(pool.labels),
        )
        for ordinal in ordinals
    ]


class ClusterOrchestrator:
    """Drive the create, destroy and status flows for one cluster."""

    def __init__(
        self,
        spec: ClusterSpec,
        artifacts: ArtifactStore,
        client: HetznerCloudClient,
        talos_factory: Callable[[Path], TalosClient] = TalosClient,
        cilium_factory: Callable[..., CiliumManager] = CiliumManager,
        config_generator: TalosConfigGenerator | None = None,
        ip_lookup: Callable[[], str] = get_current_ip,
        api_waiter: Callable[[str], None] = wait_for_api_server,
    ):
        """Initialize the orchestrator.

        Args:
            spec: Validated cluster specification
            artifacts: Output directory repository
            client: Hetzner Cloud client carrying the resolved API token
            talos_factory: Builds a TalosClient for a talosconfig path
            cilium_factory: Builds a CiliumManager
            config_generator: Talos config generator (built from spec if omitted)
            ip_lookup: Returns the caller's public IP
            api_waiter: Blocks until the Kubernetes API on an IP responds
        """
        self.spec = spec
        self.artifacts = artifacts
        self.talos_factory = talos_factory
        self.cilium_factory = cilium_factory
        self.ip_lookup = ip_lookup
        self.api_waiter = api_waiter
        self.config_generator = config_generator or TalosConfigGenerator(
            spec.cluster_name, spec.talos, artifacts
        )

        name = spec.cluster_name
        self.servers = ServerManager(
            client, name, spec.hcloud.location, spec.talos.version, spec.talos.hcloud_snapshot_id
        )
        self.firewall = FirewallManager(client, name)
        self.network = NetworkManager(client, name)
        self.ssh_keys = SSHKeyManager(client, name)

    def check_prerequisites(self) -> None:
        """Fail before touching any resource if tools or the image are missing."""
        require_tool("talosctl", TALOSCTL_INSTALL_URL)
        require_tool("kubectl", KUBECTL_INSTALL_URL)
        require_tool("helm", HELM_INSTALL_URL)
        self.servers.require_snapshot()

    def ensure_ssh_key(self):
        """Ensure the SSH key and save a newly generated private key at once."""
        ssh_key, private_key = self.ssh_keys.ensure()
        if private_key is not None:
            self.artifacts.write_text(SSH_PRIVATE_KEY, private_key, private=True)
        elif not self.artifacts.exists(SSH_PRIVATE_KEY):
            logger.warning(
                f"SSH key {ssh_key.name} already exists but {self.artifacts.path(SSH_PRIVATE_KEY)} "
                "is missing; the private key cannot be recovered"
            )
        return ssh_key

    def ensure_shared_resources(self, allowed_ip: str):
        """Ensure firewall, network and SSH key concurrently.

        Returns:
            Tuple of (firewall, network, ssh_key)
        """
        tasks = [
            ("firewall", lambda: self.firewall.ensure(allowed_ip)),
            ("network", lambda: self.network.ensure(self.spec.hcloud.network)),
            ("ssh key", self.ensure_ssh_key),
        ]
        firewall, network, ssh_key = run_parallel(
            lambda task: task[1](),
            tasks,
            description="Shared resource setup",
            name=lambda task: task[0],
        )
        return firewall, network, ssh_key

    def create(self) -> ClusterSummary:
        """Create the cluster end to end.

        Raises:
            StepFailedError: Naming the step that failed; remaining steps are skipped
        """
        spec = self.spec
        logger.info(f"Creating cluster: {spec.cluster_name}")

        with step("Check prerequisites"):
            self.check_prerequisites()
            self.artifacts.ensure_dir()

        with step("Detect public IP"):
            allowed_ip = self.ip_lookup()
            logger.info(f"Current public IP: {allowed_ip}")

        with step("Create firewall, network and SSH key"):
            firewall, network, ssh_key = self.ensure_shared_resources(allowed_ip)

        config_endpoint = spec.talos.cluster_endpoint or PLACEHOLDER_ENDPOINT
        with step("Generate Talos configuration"):
            self.config_generator.generate(config_endpoint)

        with step("Create servers"):
            requests = node_requests(
                spec, NodeRole.CONTROL_PLANE, self.artifacts.read_machine_config
            ) + node_requests(spec, NodeRole.WORKER, self.artifacts.read_machine_config)
            nodes = self.servers.create_nodes(requests, network.id, ssh_key.id)
            control_planes = filter_nodes(nodes, NodeRole.CONTROL_PLANE)
            workers = filter_nodes(nodes, NodeRole.WORKER)

        with step("Apply firewall"):
            self.firewall.apply_to_servers(firewall.id, [node.id for node in nodes])

        talos = self.talos_factory(self.artifacts.path(TALOSCONFIG))
        first = control_planes[0]

        with step("Configure cluster endpoint"):
            if not first.public_ip:
                raise ProvisionerError(f"Control plane {first.name} does not have a public IP")
            endpoint = spec.talos.cluster_endpoint or cluster_endpoint(first.public_ip)
            talos.configure_endpoints([n.public_ip for n in control_planes if n.public_ip])
            if endpoint != config_endpoint:
                talos.patch_cluster_endpoint(control_planes, endpoint)

        with step("Bootstrap cluster"):
            talos.wait_for_api(first.public_ip, first.name)
            talos.bootstrap(first.public_ip)

        with step("Wait for Kubernetes API"):
            self.api_waiter(first.public_ip)

        kubeconfig = self.artifacts.path(KUBECONFIG)
        with step("Fetch kubeconfig"):
            talos.generate_kubeconfig(first.public_ip, kubeconfig)

        with step("Install Cilium"):
            cilium = self.cilium_factory(spec.cilium, kubeconfig, len(control_planes))
            cilium.install()
            cilium.wait_for_ready()

        logger.info(f"Cluster {spec.cluster_name} created successfully")
        return ClusterSummary(
            cluster_name=spec.cluster_name,
            endpoint=endpoint,
            control_planes=control_planes,
            workers=workers,
            kubeconfig=kubeconfig,
            talosconfig=self.artifacts.path(TALOSCONFIG),
        )

    def destroy(self) -> list[int]:
        """Tear down every resource of the cluster.

        Missing resources are skipped, so destroy can be repeated safely.

        Returns:
            Ids of servers that could not be deleted
        """
        logger.info(f"Destroying cluster: {self.spec.cluster_name}")
        failed = self.servers.delete_cluster_servers()
        self.firewall.delete()
        self.ssh_keys.delete()
        self.network.delete()
        logger.info(f"Cluster {self.spec.cluster_name} destroyed")
        return failed

    def status(self) -> ClusterStatus:
        """Collect node and Cilium state for display."""
        nodes = self.servers.list_cluster_nodes()

        pools = []
        assigned = set()
        for role in NodeRole:
            for pool in self.spec.pools(role):
                members = sorted(filter_nodes(nodes, role, pool.name), key=lambda n: n.ordinal)
                assigned.update(n.id for n in members)
                pools.append(PoolStatus(role, pool.name, pool.count, members))

        status = ClusterStatus(
            cluster_name=self.spec.cluster_name,
            pools=pools,
            unassigned=[n for n in nodes if n.id not in assigned],
        )

        if self.artifacts.exists(KUBECONFIG):
            cilium = self.cilium_factory(
                self.spec.cilium,
                self.artifacts.path(KUBECONFIG),
                self.spec.control_plane_count,
            )
            try:
                status.cilium_pods = cilium.get_status()
            except ProvisionerError as e:
                status.cilium_error = e.message
        return status
