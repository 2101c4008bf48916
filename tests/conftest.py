"""Pytest configuration and shared fixtures."""

import itertools
import threading
from unittest.mock import MagicMock

import pytest
from hypothesis import Verbosity, settings

from talos_provisioner.artifacts import (
    CONTROLPLANE_CONFIG,
    KUBECONFIG,
    TALOSCONFIG,
    WORKER_CONFIG,
    ArtifactStore,
)
from talos_provisioner.exceptions import ErrorCategory, HetznerAPIError
from talos_provisioner.kubernetes import NodeStateReader
from talos_provisioner.models.cluster import ClusterSpec
from talos_provisioner.models.hcloud import Action, Firewall, Network, Server, SSHKey
from talos_provisioner.talos import TalosClient

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


class FakeHetznerClient:
    """In-memory stand-in for HetznerCloudClient."""

    def __init__(self):
        self.servers: dict[int, Server] = {}
        self.networks: dict[int, Network] = {}
        self.ssh_keys: dict[int, SSHKey] = {}
        self.firewalls: dict[int, Firewall] = {}
        self.applied: list[tuple[int, list[int]]] = []
        self.waited_actions: list[int] = []
        self.apply_actions: list[int] = []
        self.server_delete_errors: dict[int, HetznerAPIError] = {}
        self.firewall_busy_responses = 0
        self.firewall_delete_attempts = 0
        self.create_failures: dict[str, HetznerAPIError] = {}
        self._ids = itertools.count(1)
        self._ips = itertools.count(10)
        self._lock = threading.Lock()

    def _not_found(self, what):
        return HetznerAPIError(f"{what} not found", category=ErrorCategory.NOT_FOUND)

    def add_server(self, name, role, pool, cluster="test-cluster", public_ip=True):
        with self._lock:
            server_id = next(self._ids)
            n = next(self._ips)
        server = Server(
            id=server_id,
            name=name,
            status="running",
            public_net={"ipv4": {"ip": f"203.0.113.{n}"}} if public_ip else {},
            private_net=[{"network": 1, "ip": f"10.0.1.{n}"}],
            labels={
                "cluster": cluster,
                "role": role,
                "pool": pool,
                "managed-by": "talos-provisioner",
            },
        )
        self.servers[server.id] = server
        return server

    def list_servers(self, label_selector=None):
        servers = sorted(self.servers.values(), key=lambda s: s.id)
        if label_selector:
            key, value = label_selector.split("=")
            servers = [s for s in servers if s.labels.get(key) == value]
        return servers

    def create_server(self, request):
        name = request["name"]
        if name in self.create_failures:
            raise self.create_failures[name]
        if any(s.name == name for s in self.servers.values()):
            raise HetznerAPIError(
                "server name already used",
                category=ErrorCategory.IDEMPOTENT_CONFLICT,
                code="uniqueness_error",
            )
        labels = request["labels"]
        server = self.add_server(name, labels["role"], labels["pool"], labels["cluster"])
        self.servers[server.id] = server.model_copy(update={"labels": dict(labels)})
        action = Action(id=next(self._ids), command="create_server", status="running")
        return self.servers[server.id], action

    def wait_for_action(self, action_id, timeout=300):
        self.waited_actions.append(action_id)
        return Action(id=action_id, command="create_server", status="success", progress=100)

    def get_server(self, server_id):
        if server_id not in self.servers:
            raise self._not_found("server")
        return self.servers[server_id]

    def delete_server(self, server_id):
        if server_id in self.server_delete_errors:
            raise self.server_delete_errors[server_id]
        if server_id not in self.servers:
            raise self._not_found("server")
        del self.servers[server_id]
        return Action(id=next(self._ids), command="delete_server", status="running")

    def list_networks(self):
        return list(self.networks.values())

    def create_network(self, request):
        network = Network(id=next(self._ids), name=request["name"], ip_range=request["ip_range"])
        self.networks[network.id] = network
        return network

    def delete_network(self, network_id):
        del self.networks[network_id]

    def list_ssh_keys(self):
        return list(self.ssh_keys.values())

    def create_ssh_key(self, name, public_key, labels):
        key = SSHKey(id=next(self._ids), name=name, public_key=public_key, labels=labels)
        self.ssh_keys[key.id] = key
        return key

    def delete_ssh_key(self, key_id):
        del self.ssh_keys[key_id]

    def list_firewalls(self):
        return list(self.firewalls.values())

    def create_firewall(self, request):
        firewall = Firewall(id=next(self._ids), name=request["name"], rules=request["rules"])
        self.firewalls[firewall.id] = firewall
        return firewall

    def apply_firewall(self, firewall_id, server_ids):
        self.applied.append((firewall_id, list(server_ids)))
        action = Action(id=next(self._ids), command="apply_firewall", status="running")
        self.apply_actions.append(action.id)
        return [action]

    def delete_firewall(self, firewall_id):
        self.firewall_delete_attempts += 1
        if self.firewall_busy_responses > 0:
            self.firewall_busy_responses -= 1
            raise HetznerAPIError(
                "firewall is still in use",
                category=ErrorCategory.RESOURCE_BUSY,
                code="resource_in_use",
            )
        del self.firewalls[firewall_id]


@pytest.fixture
def sample_spec_data():
    """Sample cluster configuration data for testing."""
    return {
        "cluster_name": "test-cluster",
        "hcloud": {
            "token": "test-token",
            "location": "nbg1",
            "network": {"cidr": "10.0.0.0/16", "subnet_cidr": "10.0.1.0/24", "zone": "eu-central"},
        },
        "talos": {
            "version": "v1.7.0",
            "kubernetes_version": "1.30.0",
            "hcloud_snapshot_id": "123456",
        },
        "cilium": {"version": "1.15.0"},
        "control_planes": [{"name": "control-plane", "server_type": "cpx21", "count": 3}],
        "workers": [{"name": "worker", "server_type": "cpx31", "count": 2}],
    }


@pytest.fixture
def cluster_spec(sample_spec_data):
    return ClusterSpec(**sample_spec_data)


@pytest.fixture
def fake_hcloud():
    return FakeHetznerClient()


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "output")


@pytest.fixture
def existing_cluster_artifacts(artifacts):
    """Output directory as left behind by a successful create."""
    artifacts.write_text(CONTROLPLANE_CONFIG, "machine:\n  type: controlplane\n")
    artifacts.write_text(WORKER_CONFIG, "machine:\n  type: worker\n")
    artifacts.write_text(TALOSCONFIG, "context: test-cluster\n")
    artifacts.write_text(KUBECONFIG, "apiVersion: v1\n")
    return artifacts


@pytest.fixture
def talos():
    return MagicMock(spec=TalosClient)


@pytest.fixture
def node_reader():
    return MagicMock(spec=NodeStateReader)


@pytest.fixture
def no_sleep(monkeypatch):
    """Make polling sleeps instant."""
    monkeypatch.setattr("talos_provisioner.polling.time.sleep", lambda seconds: None)
