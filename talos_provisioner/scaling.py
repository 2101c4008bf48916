"""Adding and removing nodes on a live cluster.

Scale-down is the dangerous direction: removing control planes shrinks the
etcd member set, so the quorum gate runs over the whole batch before any
node is touched, and nodes are then removed strictly one at a time.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from talos_provisioner.artifacts import KUBECONFIG, SSH_PRIVATE_KEY, TALOSCONFIG, ArtifactStore
from talos_provisioner.exceptions import (
    ConfigurationError,
    NodeUnreachableError,
    ProvisionerError,
    QuorumViolationError,
    ValidationError,
)
from talos_provisioner.hcloud import (
    FirewallManager,
    HetznerCloudClient,
    NetworkManager,
    ServerManager,
    SSHKeyManager,
)
from talos_provisioner.kubernetes import NodeStateReader
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.cluster import ClusterSpec, NodePool
from talos_provisioner.models.node import NodeRecord, NodeRole, filter_nodes
from talos_provisioner.orchestrator import pool_requests
from talos_provisioner.polling import PollingConfig
from talos_provisioner.talos import TalosClient

logger = get_logger(__name__)

REACHABILITY_ATTEMPTS = 3
REACHABILITY_INTERVAL = 5
REACHABILITY_TIMEOUT = 60

EXISTING_CLUSTER_HINT = "Scaling requires an existing cluster. Run 'talos-prov create' first."


class RemovalState(str, Enum):
    """Progress of a single node through scale-down."""

    RUNNING = "running"
    RESETTING = "resetting"
    DRAINING = "draining"
    REMOVED_FROM_CLUSTER = "removed-from-cluster"
    DELETED = "deleted"
    UNREACHABLE_ABORT = "unreachable-abort"
    RESET_FAILED = "reset-failed"


@dataclass(frozen=True)
class QuorumDecision:
    """Outcome of a quorum check that allows the removal."""

    current: int
    removing: int
    remaining: int
    quorum: int
    warning: str | None = None


def quorum_size(count: int) -> int:
    return count // 2 + 1


def check_quorum(current: int, removing: int) -> QuorumDecision:
    """Check that removing control planes keeps etcd quorum.

    Quorum is computed over the count before removal.

    Args:
        current: Control planes in the cluster now
        removing: Control planes selected for removal

    Returns:
        QuorumDecision, carrying a warning when the remaining count is even

    Raises:
        QuorumViolationError: If no control plane would remain, or fewer than
            a majority of the current members would
    """
    quorum = quorum_size(current)
    remaining = current - removing

    if removing == 0:
        return QuorumDecision(current, removing, remaining, quorum)

    max_removable = max(current - quorum, 0)

    if remaining <= 0:
        raise QuorumViolationError(
            "Cannot remove all control planes",
            f"The cluster has {current} control plane(s); at least one must remain",
            max_removable=max_removable,
        )

    if remaining < quorum:
        raise QuorumViolationError(
            f"Removing {removing} control plane(s) would break quorum",
            f"Current: {current}, remaining: {remaining}, quorum requires: {quorum}. "
            f"Maximum safely removable at once: {max_removable}",
            max_removable=max_removable,
        )

    warning = None
    if remaining % 2 == 0:
        warning = (
            f"Scaling to {remaining} control planes (even number). "
            "An odd count tolerates the same number of failures with one node less."
        )
    return QuorumDecision(current, removing, remaining, quorum, warning)


def select_nodes_for_removal(nodes: list[NodeRecord], count: int) -> list[NodeRecord]:
    """Pick the newest nodes: highest ordinal first, name as tiebreaker."""
    ordered = sorted(nodes, key=lambda n: (n.ordinal, n.name), reverse=True)
    return ordered[:count]


@dataclass
class ScaleResult:
    """What a scale operation changed."""

    role: NodeRole
    pool: str
    previous_count: int
    target_count: int
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    states: dict[str, RemovalState] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


class ScalingProtocol:
    """Scale a node pool of an existing cluster up or down."""

    def __init__(
        self,
        spec: ClusterSpec,
        artifacts: ArtifactStore,
        client: HetznerCloudClient,
        talos_factory: Callable[[Path], TalosClient] = TalosClient,
        node_reader_factory: Callable[[Path], NodeStateReader] = NodeStateReader,
    ):
        self.spec = spec
        self.artifacts = artifacts
        self.talos_factory = talos_factory
        self.node_reader_factory = node_reader_factory

        name = spec.cluster_name
        self.servers = ServerManager(
            client, name, spec.hcloud.location, spec.talos.version, spec.talos.hcloud_snapshot_id
        )
        self.firewall = FirewallManager(client, name)
        self.network = NetworkManager(client, name)
        self.ssh_keys = SSHKeyManager(client, name)

    def scale(self, role: NodeRole, target_count: int, pool_name: str | None = None) -> ScaleResult:
        """Bring a pool to ``target_count`` nodes.

        Args:
            role: Role of the pool
            target_count: Desired number of nodes in the pool
            pool_name: Pool to scale; the role's first pool if omitted

        Returns:
            ScaleResult describing the change

        Raises:
            ValidationError: If the target count is invalid for the role
            ConfigurationError: If the pool is not configured
            QuorumViolationError: If removing control planes would break quorum
        """
        if target_count < 0:
            raise ValidationError(f"Target count must be >= 0, got {target_count}")
        if role == NodeRole.CONTROL_PLANE and target_count < 1:
            raise ValidationError(
                "Control plane pool must keep at least one node",
                "Use 'talos-prov destroy' to remove the whole cluster",
            )

        pool = self.spec.find_pool(role, pool_name)
        nodes = self.servers.list_cluster_nodes()
        members = filter_nodes(nodes, role, pool.name)

        result = ScaleResult(
            role=role, pool=pool.name, previous_count=len(members), target_count=target_count
        )
        logger.info(f"Pool {role}/{pool.name}: {len(members)} -> {target_count} nodes")

        if target_count == len(members):
            logger.info("Pool already has the requested size, nothing to do")
        elif target_count > len(members):
            self.scale_up(pool, role, members, target_count - len(members), result)
        else:
            self.scale_down(role, members, nodes, len(members) - target_count, result)
        return result

    def scale_up(
        self,
        pool: NodePool,
        role: NodeRole,
        members: list[NodeRecord],
        count: int,
        result: ScaleResult,
    ) -> list[NodeRecord]:
        """Create ``count`` new nodes in the pool and wait for them to join."""
        user_data = self.artifacts.read_machine_config(role)
        kubeconfig = self.artifacts.require(KUBECONFIG, EXISTING_CLUSTER_HINT)

        network = self.network.find()
        if network is None:
            raise ConfigurationError(
                f"Network {self.network.name} not found", EXISTING_CLUSTER_HINT
            )

        ssh_key, private_key = self.ssh_keys.ensure()
        if private_key is not None:
            self.artifacts.write_text(SSH_PRIVATE_KEY, private_key, private=True)

        firewall = self.firewall.find()

        # Continue after the highest ordinal so names stay unique across gaps
        start = max((m.ordinal for m in members), default=0) + 1
        requests = pool_requests(
            self.spec.cluster_name, role, pool, user_data, range(start, start + count)
        )
        logger.info(f"Adding {count} {role} node(s): {', '.join(r.name for r in requests)}")

        new_nodes = self.servers.create_nodes(requests, network.id, ssh_key.id)

        reader = self.node_reader_factory(kubeconfig)
        for node in new_nodes:
            reader.wait_for_node_ready(node.name)

        if firewall is not None:
            self.firewall.apply_to_servers(firewall.id, [n.id for n in new_nodes])
        else:
            result.warn(f"Firewall {self.firewall.name} not found, new nodes are unprotected")

        result.added.extend(n.name for n in new_nodes)
        return new_nodes

    def scale_down(
        self,
        role: NodeRole,
        members: list[NodeRecord],
        cluster_nodes: list[NodeRecord],
        count: int,
        result: ScaleResult,
    ) -> None:
        """Remove the ``count`` newest nodes of the pool one at a time."""
        talosconfig = self.artifacts.require(TALOSCONFIG, EXISTING_CLUSTER_HINT)
        kubeconfig = self.artifacts.require(KUBECONFIG, EXISTING_CLUSTER_HINT)

        selected = select_nodes_for_removal(members, count)

        if role == NodeRole.CONTROL_PLANE:
            current = len(filter_nodes(cluster_nodes, NodeRole.CONTROL_PLANE))
            decision = check_quorum(current, len(selected))
            logger.info(
                f"Quorum check passed: {decision.current} -> {decision.remaining} control planes "
                f"(quorum {decision.quorum})"
            )
            if decision.warning:
                result.warn(decision.warning)

        names = ", ".join(n.name for n in selected)
        logger.info(f"Removing {len(selected)} {role} node(s): {names}")

        talos = self.talos_factory(talosconfig)
        reader = self.node_reader_factory(kubeconfig)

        removed = []
        try:
            for node in selected:
                self.remove_node(node, talos, reader, result)
                removed.append(node)
        finally:
            # Nodes already reset are gone from the cluster; their servers go too
            failed = set(self.servers.delete_servers([n.id for n in removed]))
            for node in removed:
                if node.id in failed:
                    result.warn(f"Server {node.name} (ID: {node.id}) could not be deleted")
                else:
                    result.states[node.name] = RemovalState.DELETED
                    result.removed.append(node.name)

    def ensure_reachable(self, node: NodeRecord, talos: TalosClient) -> None:
        """Verify the node's Talos API answers, retrying transient failures.

        Raises:
            NodeUnreachableError: If the node cannot be reached
        """

        def check() -> bool:
            try:
                talos.version(node.public_ip)
            except ProvisionerError as e:
                if not e.is_transient:
                    raise
                logger.debug(f"Talos API on {node.name} not reachable: {e.message}")
                return False
            return True

        config = PollingConfig(
            timeout=REACHABILITY_TIMEOUT,
            interval=REACHABILITY_INTERVAL,
            description=f"Checking Talos API on {node.name} ({node.public_ip})",
            max_attempts=REACHABILITY_ATTEMPTS,
        )
        try:
            config.poll_until(check)
        except ProvisionerError as e:
            raise NodeUnreachableError(
                f"Node {node.name} ({node.public_ip}) is not reachable via the Talos API",
                f"{e.message}. The node cannot be removed safely; check its health manually.",
                category=e.category,
            )

    def remove_node(
        self,
        node: NodeRecord,
        talos: TalosClient,
        reader: NodeStateReader,
        result: ScaleResult,
    ) -> None:
        """Take one node out of the cluster.

        Reset failures other than the node dropping its connection are fatal.
        Confirmation and Kubernetes cleanup failures only produce warnings, since
        deleting the server afterwards is what actually removes the node.
        """
        states = result.states
        states[node.name] = RemovalState.RUNNING

        if node.public_ip:
            try:
                self.ensure_reachable(node, talos)
            except NodeUnreachableError:
                states[node.name] = RemovalState.UNREACHABLE_ABORT
                raise

            states[node.name] = RemovalState.RESETTING
            try:
                talos.reset_node(node.public_ip, node.name)
            except ProvisionerError as e:
                if not e.is_transient:
                    states[node.name] = RemovalState.RESET_FAILED
                    raise
                logger.info(f"Node {node.name} dropped the connection during reset (powering off)")
        else:
            result.warn(f"Node {node.name} has no public IP, skipping Talos reset")

        states[node.name] = RemovalState.DRAINING
        try:
            reader.wait_for_node_cordoned(node.name)
        except ProvisionerError as e:
            result.warn(f"Could not confirm {node.name} was drained: {e.message}")

        try:
            reader.delete_node(node.name)
        except ProvisionerError as e:
            if e.is_not_found:
                logger.info(f"Node {node.name} not found in Kubernetes (already removed)")
            else:
                result.warn(f"Failed to delete Kubernetes node {node.name}: {e.message}")

        states[node.name] = RemovalState.REMOVED_FROM_CLUSTER
