"""Tests for the cluster create, destroy and status flows."""

from unittest.mock import MagicMock

import pytest

from talos_provisioner.artifacts import SSH_PRIVATE_KEY
from talos_provisioner.cilium import CiliumManager
from talos_provisioner.exceptions import (
    ErrorCategory,
    HetznerAPIError,
    KubernetesError,
    StepFailedError,
)
from talos_provisioner.models.cluster import ClusterSpec
from talos_provisioner.models.node import NodeRole
from talos_provisioner.orchestrator import ClusterOrchestrator, node_requests, step
from talos_provisioner.talos import TalosConfigGenerator

CALLER_IP = "198.51.100.7"


@pytest.fixture(autouse=True)
def tools_installed(monkeypatch):
    monkeypatch.setattr("talos_provisioner.orchestrator.require_tool", lambda name, url: None)


@pytest.fixture
def cilium():
    return MagicMock(spec=CiliumManager)


@pytest.fixture
def api_waiter():
    return MagicMock()


def make_orchestrator(spec, artifacts, fake_hcloud, talos, cilium, api_waiter):
    return ClusterOrchestrator(
        spec,
        artifacts,
        fake_hcloud,
        talos_factory=lambda path: talos,
        cilium_factory=lambda *args: cilium,
        config_generator=MagicMock(spec=TalosConfigGenerator),
        ip_lookup=lambda: CALLER_IP,
        api_waiter=api_waiter,
    )


@pytest.fixture
def orchestrator(cluster_spec, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter):
    return make_orchestrator(
        cluster_spec, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter
    )


def test_step_wraps_failure_with_name():
    """Test that a failing step is reported under its name."""
    with pytest.raises(StepFailedError) as exc_info:
        with step("Detect public IP"):
            raise HetznerAPIError("offline", category=ErrorCategory.TRANSIENT_NETWORK)

    assert exc_info.value.step == "Detect public IP"
    assert exc_info.value.is_transient


def test_node_requests_expand_pools(cluster_spec):
    """Test that pools expand to one request per node with ordinals from 1."""
    requests = node_requests(cluster_spec, NodeRole.CONTROL_PLANE, lambda role: "config")

    assert [r.name for r in requests] == [
        "test-cluster-control-plane-1",
        "test-cluster-control-plane-2",
        "test-cluster-control-plane-3",
    ]
    assert all(r.user_data == "config" for r in requests)
    assert all(r.server_type == "cpx21" for r in requests)


def test_create_provisions_every_node(orchestrator, fake_hcloud, existing_cluster_artifacts):
    """Test that create builds shared resources and all configured servers."""
    summary = orchestrator.create()

    names = sorted(s.name for s in fake_hcloud.servers.values())
    assert names == [
        "test-cluster-control-plane-1",
        "test-cluster-control-plane-2",
        "test-cluster-control-plane-3",
        "test-cluster-worker-1",
        "test-cluster-worker-2",
    ]
    assert len(summary.control_planes) == 3
    assert len(summary.workers) == 2
    assert len(fake_hcloud.firewalls) == 1
    assert len(fake_hcloud.networks) == 1
    assert len(fake_hcloud.ssh_keys) == 1
    assert existing_cluster_artifacts.exists(SSH_PRIVATE_KEY)

    firewall_id, server_ids = fake_hcloud.applied[0]
    assert sorted(server_ids) == sorted(fake_hcloud.servers)


def test_create_bootstraps_first_control_plane(orchestrator, talos, cilium, api_waiter):
    """Test the endpoint, bootstrap, kubeconfig and Cilium sequence."""
    summary = orchestrator.create()

    first_ip = summary.control_planes[0].public_ip
    assert summary.control_planes[0].name == "test-cluster-control-plane-1"
    assert summary.endpoint == f"https://{first_ip}:6443"

    calls = [name for name, _, _ in talos.mock_calls]
    assert calls == [
        "configure_endpoints",
        "patch_cluster_endpoint",
        "wait_for_api",
        "bootstrap",
        "generate_kubeconfig",
    ]
    talos.bootstrap.assert_called_once_with(first_ip)
    talos.patch_cluster_endpoint.assert_called_once_with(
        summary.control_planes, summary.endpoint
    )
    api_waiter.assert_called_once_with(first_ip)
    cilium.install.assert_called_once()
    cilium.wait_for_ready.assert_called_once()


def test_create_generates_config_with_placeholder(orchestrator):
    """Test that configs are generated before the real endpoint is known."""
    orchestrator.create()

    orchestrator.config_generator.generate.assert_called_once_with("https://127.0.0.1:6443")


def test_create_keeps_configured_endpoint(
    sample_spec_data, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter
):
    """Test that an explicit cluster endpoint is used as-is and never patched."""
    sample_spec_data["talos"]["cluster_endpoint"] = "https://k8s.example.com:6443"
    spec = ClusterSpec(**sample_spec_data)
    orchestrator = make_orchestrator(
        spec, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter
    )

    summary = orchestrator.create()

    assert summary.endpoint == "https://k8s.example.com:6443"
    orchestrator.config_generator.generate.assert_called_once_with("https://k8s.example.com:6443")
    talos.patch_cluster_endpoint.assert_not_called()


def test_create_stops_at_failed_step(orchestrator, fake_hcloud, talos):
    """Test that a failed server stops create before bootstrap."""
    fake_hcloud.create_failures["test-cluster-worker-2"] = HetznerAPIError(
        "server limit reached", category=ErrorCategory.RESOURCE_BUSY
    )

    with pytest.raises(StepFailedError) as exc_info:
        orchestrator.create()

    assert exc_info.value.step == "Create servers"
    assert exc_info.value.category == ErrorCategory.RESOURCE_BUSY
    talos.bootstrap.assert_not_called()


def test_private_key_saved_when_network_fails(orchestrator, fake_hcloud, monkeypatch):
    """Test that a new private key is kept even if another shared resource fails."""

    def fail(request):
        raise HetznerAPIError("network limit reached", category=ErrorCategory.RESOURCE_BUSY)

    monkeypatch.setattr(fake_hcloud, "create_network", fail)

    with pytest.raises(HetznerAPIError):
        orchestrator.ensure_shared_resources(CALLER_IP)

    assert len(fake_hcloud.ssh_keys) == 1
    assert orchestrator.artifacts.exists(SSH_PRIVATE_KEY)
    assert "PRIVATE KEY" in orchestrator.artifacts.read_text(SSH_PRIVATE_KEY)


def test_create_waits_for_firewall_apply(orchestrator, fake_hcloud):
    """Test that create waits for the firewall apply action to finish."""
    orchestrator.create()

    assert len(fake_hcloud.apply_actions) == 1
    assert fake_hcloud.apply_actions[0] in fake_hcloud.waited_actions


def test_create_fails_before_resources_without_snapshot(
    sample_spec_data, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter
):
    """Test that a missing snapshot is caught before anything is created."""
    sample_spec_data["talos"]["hcloud_snapshot_id"] = None
    spec = ClusterSpec(**sample_spec_data)
    orchestrator = make_orchestrator(
        spec, existing_cluster_artifacts, fake_hcloud, talos, cilium, api_waiter
    )

    with pytest.raises(StepFailedError) as exc_info:
        orchestrator.create()

    assert exc_info.value.step == "Check prerequisites"
    assert fake_hcloud.firewalls == {}
    assert fake_hcloud.servers == {}


def test_create_reports_cilium_failure(orchestrator, cilium):
    """Test that a CNI failure is reported as the Cilium step."""
    cilium.wait_for_ready.side_effect = KubernetesError("Cilium pods not ready")

    with pytest.raises(StepFailedError) as exc_info:
        orchestrator.create()

    assert exc_info.value.step == "Install Cilium"
    assert isinstance(exc_info.value.cause, KubernetesError)


def test_destroy_empty_cluster_succeeds(orchestrator):
    """Test that destroying a cluster with no resources is a no-op."""
    assert orchestrator.destroy() == []


def test_destroy_removes_everything(orchestrator, fake_hcloud):
    """Test that destroy deletes servers, firewall, SSH key and network."""
    orchestrator.create()
    fake_hcloud.add_server("other-worker-1", "worker", "worker", cluster="other")

    assert orchestrator.destroy() == []

    assert [s.name for s in fake_hcloud.servers.values()] == ["other-worker-1"]
    assert fake_hcloud.firewalls == {}
    assert fake_hcloud.ssh_keys == {}
    assert fake_hcloud.networks == {}


def test_destroy_twice_is_safe(orchestrator):
    """Test that a repeated destroy finds nothing left to delete."""
    orchestrator.create()
    orchestrator.destroy()

    assert orchestrator.destroy() == []


def test_destroy_returns_undeletable_servers(orchestrator, fake_hcloud):
    """Test that server deletion failures are reported, not raised."""
    stuck = fake_hcloud.add_server("test-cluster-worker-1", "worker", "worker")
    fake_hcloud.server_delete_errors[stuck.id] = HetznerAPIError("locked")

    assert orchestrator.destroy() == [stuck.id]


def test_status_groups_nodes_by_pool(
    cluster_spec, artifacts, fake_hcloud, talos, cilium, api_waiter
):
    """Test that status groups nodes by configured pool."""
    for i in (1, 2, 3):
        fake_hcloud.add_server(f"test-cluster-control-plane-{i}", "control-plane", "control-plane")
    fake_hcloud.add_server("test-cluster-worker-1", "worker", "worker")
    fake_hcloud.add_server("test-cluster-gpu-1", "worker", "gpu")
    orchestrator = make_orchestrator(
        cluster_spec, artifacts, fake_hcloud, talos, cilium, api_waiter
    )

    status = orchestrator.status()

    pools = {(p.role, p.name): p for p in status.pools}
    assert len(pools[(NodeRole.CONTROL_PLANE, "control-plane")].nodes) == 3
    assert pools[(NodeRole.WORKER, "worker")].configured == 2
    assert [n.name for n in pools[(NodeRole.WORKER, "worker")].nodes] == ["test-cluster-worker-1"]
    assert [n.name for n in status.unassigned] == ["test-cluster-gpu-1"]
    assert status.node_count == 5
    assert status.cilium_pods is None


def test_status_reads_cilium_pods(orchestrator, cilium):
    """Test that Cilium pods are listed when a kubeconfig exists."""
    cilium.get_status.return_value = [("cilium-abc", "test-cluster-worker-1", "Running")]

    status = orchestrator.status()

    assert status.cilium_pods == [("cilium-abc", "test-cluster-worker-1", "Running")]
    assert status.cilium_error is None


def test_status_survives_unreachable_cluster(orchestrator, cilium):
    """Test that an unreachable Kubernetes API is reported, not raised."""
    cilium.get_status.side_effect = KubernetesError(
        "Listing pods failed", category=ErrorCategory.TRANSIENT_NETWORK
    )

    status = orchestrator.status()

    assert status.cilium_error == "Listing pods failed"
