"""Property-based tests for node naming, labels and records."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from talos_provisioner.exceptions import ValidationError
from talos_provisioner.models.hcloud import Server
from talos_provisioner.models.node import (
    NodeRecord,
    NodeRole,
    build_labels,
    node_name,
    parse_ordinal,
    pool_from_name,
)


@st.composite
def dns_label(draw, max_size=12):
    """Generate lowercase DNS labels, possibly containing dashes."""
    alnum = "abcdefghijklmnopqrstuvwxyz0123456789"
    start = draw(st.sampled_from("abcdefghijklmnopqrstuvwxyz"))
    middle = draw(st.text(alphabet=alnum + "-", max_size=max_size - 2))
    end = draw(st.sampled_from(alnum))
    return start + middle + end


@given(cluster=dns_label(), pool=dns_label(), ordinal=st.integers(min_value=1, max_value=999))
def test_property_name_round_trip(cluster, pool, ordinal):
    """
    Property: node names are recoverable

    The ordinal and pool can be recovered from any generated node name, even
    for pool names containing dashes.
    """
    name = node_name(cluster, pool, ordinal)

    assert name == f"{cluster}-{pool}-{ordinal}"
    assert parse_ordinal(name) == ordinal
    assert pool_from_name(name, cluster) == pool


def test_parse_ordinal_without_suffix():
    """Test that a name without a numeric suffix has ordinal 0."""
    assert parse_ordinal("legacy-node") == 0


def test_pool_from_foreign_name_uses_second_to_last_segment():
    """Test the fallback for names without the cluster prefix."""
    assert pool_from_name("old-worker-3", "test-cluster") == "worker"
    assert pool_from_name("standalone", "test-cluster") is None


@given(
    role=st.sampled_from(list(NodeRole)),
    extra=st.dictionaries(dns_label(), dns_label(), max_size=3),
)
def test_property_identity_labels_win(role, extra):
    """
    Property: identity labels cannot be overridden

    User labels are kept, but cluster, role, pool and managed-by always carry
    the provisioner's values.
    """
    extra = dict(extra, cluster="spoofed", role="spoofed")

    labels = build_labels("test-cluster", role, "pool-a", "v1.7.0", extra)

    assert labels["cluster"] == "test-cluster"
    assert labels["role"] == role.value
    assert labels["pool"] == "pool-a"
    assert labels["managed-by"] == "talos-provisioner"
    for key, value in extra.items():
        if key not in ("cluster", "role", "pool", "managed-by", "talos-version"):
            assert labels[key] == value


def make_server(name, labels, ip="203.0.113.10"):
    return Server(
        id=1,
        name=name,
        status="running",
        public_net={"ipv4": {"ip": ip}},
        private_net=[{"network": 1, "ip": "10.0.1.10"}],
        labels=labels,
    )


def test_record_from_server():
    """Test that a labelled server becomes a node record."""
    server = make_server(
        "test-cluster-control-plane-2",
        {"cluster": "test-cluster", "role": "control-plane", "pool": "control-plane"},
    )

    node = NodeRecord.from_server(server, "test-cluster")

    assert node.role == NodeRole.CONTROL_PLANE
    assert node.pool == "control-plane"
    assert node.ordinal == 2
    assert node.public_ip == "203.0.113.10"
    assert node.private_ip == "10.0.1.10"


def test_record_pool_recovered_from_name():
    """Test that a server without a pool label gets its pool from the name."""
    labels = {"cluster": "test-cluster", "role": "worker"}
    server = make_server("test-cluster-big-workers-4", labels)

    assert NodeRecord.from_server(server, "test-cluster").pool == "big-workers"


def test_record_rejects_invalid_role():
    """Test that an unknown role label is rejected."""
    server = make_server("test-cluster-x-1", {"cluster": "test-cluster", "role": "etcd"})

    with pytest.raises(ValidationError, match="invalid role"):
        NodeRecord.from_server(server, "test-cluster")


def test_record_rejects_other_cluster():
    """Test that a server labelled for another cluster is rejected."""
    server = make_server("other-worker-1", {"cluster": "other", "role": "worker"})

    with pytest.raises(ValidationError):
        NodeRecord.from_server(server, "test-cluster")
