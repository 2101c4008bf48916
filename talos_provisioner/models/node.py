"""Node identity: roles, labels, naming and provisioned node records."""

import re
from enum import Enum

from pydantic import BaseModel, Field

from talos_provisioner.exceptions import ValidationError
from talos_provisioner.models.hcloud import Server

MANAGED_BY = "talos-provisioner"

LABEL_CLUSTER = "cluster"
LABEL_ROLE = "role"
LABEL_POOL = "pool"
LABEL_MANAGED_BY = "managed-by"
LABEL_TALOS_VERSION = "talos-version"

_ORDINAL_PATTERN = re.compile(r"-(\d+)$")


class NodeRole(str, Enum):
    """Node role in the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    def __str__(self) -> str:
        return self.value


def node_name(cluster_name: str, pool_name: str, ordinal: int) -> str:
    """Derive the server name for the ``ordinal``-th node of a pool (1-based)."""
    return f"{cluster_name}-{pool_name}-{ordinal}"


def parse_ordinal(name: str) -> int:
    """Return the trailing ordinal of a node name, or 0 if it has none."""
    match = _ORDINAL_PATTERN.search(name)
    return int(match.group(1)) if match else 0


def pool_from_name(name: str, cluster_name: str) -> str | None:
    """Recover the pool name from a server name.

    Only used for servers created without a ``pool`` label. Names carrying the
    cluster prefix are stripped of it and of the trailing ordinal, which keeps
    dashed pool names intact. Other names fall back to the second-to-last
    dash-separated segment, which is wrong for dashed pool names.
    """
    prefix = f"{cluster_name}-"
    if name.startswith(prefix):
        rest = _ORDINAL_PATTERN.sub("", name[len(prefix) :])
        return rest or None

    parts = name.split("-")
    if len(parts) >= 2:
        return parts[-2]
    return None


def build_labels(
    cluster_name: str,
    role: NodeRole,
    pool_name: str,
    talos_version: str,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build the provider label set for a new server."""
    labels = dict(extra or {})
    labels.update(
        {
            LABEL_CLUSTER: cluster_name,
            LABEL_ROLE: role.value,
            LABEL_POOL: pool_name,
            LABEL_MANAGED_BY: MANAGED_BY,
            LABEL_TALOS_VERSION: talos_version,
        }
    )
    return labels


class NodeRecord(BaseModel):
    """A provisioned cluster node."""

    id: int
    name: str
    role: NodeRole
    pool: str | None = None
    public_ip: str | None = None
    private_ip: str | None = None
    status: str = "unknown"
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def ordinal(self) -> int:
        return parse_ordinal(self.name)

    @classmethod
    def from_server(cls, server: Server, cluster_name: str) -> "NodeRecord":
        """Build a record from a provider server, validating its labels.

        Raises:
            ValidationError: If the server does not belong to the cluster or
                carries no recognizable role
        """
        labels = server.labels
        if labels.get(LABEL_CLUSTER) != cluster_name:
            raise ValidationError(
                f"Server '{server.name}' is not labelled for cluster '{cluster_name}'"
            )

        raw_role = labels.get(LABEL_ROLE)
        try:
            role = NodeRole(raw_role)
        except ValueError:
            raise ValidationError(
                f"Server '{server.name}' has invalid role label: {raw_role!r}",
                f"Expected one of: {', '.join(r.value for r in NodeRole)}",
            )

        pool = labels.get(LABEL_POOL) or pool_from_name(server.name, cluster_name)

        return cls(
            id=server.id,
            name=server.name,
            role=role,
            pool=pool,
            public_ip=server.public_ip,
            private_ip=server.private_ip,
            status=server.status,
            labels=dict(labels),
        )


def filter_nodes(
    nodes: list[NodeRecord], role: NodeRole, pool_name: str | None = None
) -> list[NodeRecord]:
    """Select nodes by role and, optionally, pool."""
    return [n for n in nodes if n.role == role and (pool_name is None or n.pool == pool_name)]
