"""Cluster specification loaded from the YAML configuration file."""

import ipaddress
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

from talos_provisioner.exceptions import ConfigurationError
from talos_provisioner.models.node import NodeRole

TOKEN_ENV_VAR = "HCLOUD_TOKEN"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class _SpecModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class NetworkConfig(_SpecModel):
    """Private network configuration."""

    cidr: str
    subnet_cidr: str
    zone: str

    @field_validator("cidr", "subnet_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        """Validate CIDR notation."""
        if "/" not in v:
            raise ValueError(f"'{v}' must be in CIDR notation (e.g., 10.0.0.0/16)")
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid CIDR: {e}")
        return v

    @model_validator(mode="after")
    def validate_subnet_inside_network(self) -> "NetworkConfig":
        network = ipaddress.ip_network(self.cidr, strict=False)
        subnet = ipaddress.ip_network(self.subnet_cidr, strict=False)
        if not subnet.subnet_of(network):
            raise ValueError(f"subnet_cidr {self.subnet_cidr} is not inside cidr {self.cidr}")
        return self


class HetznerCloudConfig(_SpecModel):
    """Hetzner Cloud API and network configuration."""

    token: str | None = None
    location: str
    network: NetworkConfig


class TalosConfig(_SpecModel):
    """Talos-specific configuration."""

    version: str
    kubernetes_version: str
    cluster_endpoint: str | None = None
    hcloud_snapshot_id: str | None = None
    config_patches: list[str] = Field(default_factory=list)


class CiliumConfig(_SpecModel):
    """Cilium CNI configuration."""

    version: str
    enable_hubble: bool = True
    enable_ipv6: bool = False
    helm_values: dict[str, Any] = Field(default_factory=dict)


class NodePool(_SpecModel):
    """A group of identically configured nodes."""

    name: str
    server_type: str
    count: int = Field(default=1, ge=0)
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate pool name is usable inside a server name."""
        if not _DNS_LABEL.match(v):
            raise ValueError(
                f"pool name '{v}' must contain only lowercase alphanumeric characters "
                "and hyphens, and cannot start or end with a hyphen"
            )
        return v


class ClusterSpec(_SpecModel):
    """Desired cluster topology and settings."""

    cluster_name: str
    hcloud: HetznerCloudConfig
    talos: TalosConfig
    cilium: CiliumConfig
    control_planes: list[NodePool]
    workers: list[NodePool] = Field(default_factory=list)

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is a DNS label."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        if not _DNS_LABEL.match(v):
            raise ValueError(
                f"cluster_name '{v}' must contain only lowercase alphanumeric characters "
                "and hyphens"
            )
        return v

    @field_validator("control_planes")
    @classmethod
    def validate_control_planes(cls, v: list[NodePool]) -> list[NodePool]:
        """A cluster needs at least one control plane pool with at least one node."""
        if not v:
            raise ValueError("at least one control plane pool is required")
        for pool in v:
            if pool.count < 1:
                raise ValueError(f"control plane pool '{pool.name}' must have count >= 1")
        return v

    @model_validator(mode="after")
    def validate_unique_pool_names(self) -> "ClusterSpec":
        for role in NodeRole:
            names = [p.name for p in self.pools(role)]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ValueError(f"duplicate {role} pool names: {', '.join(duplicates)}")
        return self

    @property
    def control_plane_count(self) -> int:
        return sum(pool.count for pool in self.control_planes)

    def pools(self, role: NodeRole) -> list[NodePool]:
        return self.control_planes if role == NodeRole.CONTROL_PLANE else self.workers

    def find_pool(self, role: NodeRole, name: str | None = None) -> NodePool:
        """Find a pool by name, or the first pool of the role.

        Raises:
            ConfigurationError: If no such pool exists
        """
        pools = self.pools(role)
        if name is None:
            if not pools:
                raise ConfigurationError(f"No {role} pools configured")
            return pools[0]
        for pool in pools:
            if pool.name == name:
                return pool
        raise ConfigurationError(
            f"{role} pool '{name}' not found",
            f"Configured {role} pools: {', '.join(p.name for p in pools) or 'none'}",
        )

    def resolve_token(self, environ: Mapping[str, str] | None = None) -> str:
        """Get the Hetzner Cloud API token from config or environment.

        Raises:
            ConfigurationError: If no token is available
        """
        environ = os.environ if environ is None else environ
        token = self.hcloud.token or environ.get(TOKEN_ENV_VAR)
        if not token:
            raise ConfigurationError(
                "Hetzner Cloud API token not found",
                f"Set the {TOKEN_ENV_VAR} environment variable or hcloud.token in the config",
            )
        return token

    def save(self, path: str | Path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(
                self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False
            )

    @classmethod
    def load(cls, path: str | Path) -> "ClusterSpec":
        """Load and validate configuration from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                "Run 'talos-prov init' to create an example configuration",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}", str(e))

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file is empty or not a mapping: {path}")

        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration in {path}", str(e))

    @classmethod
    def example(cls) -> "ClusterSpec":
        """Build the example configuration written by ``init``."""
        return cls(
            cluster_name="talos-cluster",
            hcloud=HetznerCloudConfig(
                location="nbg1",
                network=NetworkConfig(
                    cidr="10.0.0.0/16", subnet_cidr="10.0.1.0/24", zone="eu-central"
                ),
            ),
            talos=TalosConfig(version="v1.7.0", kubernetes_version="1.30.0"),
            cilium=CiliumConfig(version="1.15.0"),
            control_planes=[NodePool(name="control-plane", server_type="cpx21", count=3)],
            workers=[NodePool(name="worker", server_type="cpx31", count=3)],
        )


def _commented(value: Any) -> Any:
    if isinstance(value, dict):
        node = CommentedMap()
        for key, item in value.items():
            node[key] = _commented(item)
        return node
    if isinstance(value, list):
        return CommentedSeq(_commented(item) for item in value)
    return value


def write_example_config(path: str | Path) -> Path:
    """Write the example configuration with explanatory comments.

    Raises:
        ConfigurationError: If the file already exists or cannot be written
    """
    path = Path(path)
    if path.exists():
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            "Remove it or pass a different path with --config",
        )

    data = _commented(ClusterSpec.example().model_dump(exclude_none=True))
    data["talos"]["hcloud_snapshot_id"] = ""

    data.yaml_set_start_comment("talos-provisioner cluster configuration")
    data.yaml_set_comment_before_after_key(
        "hcloud",
        before=f"Hetzner Cloud settings. Set hcloud.token here or export {TOKEN_ENV_VAR}.",
    )
    data["talos"].yaml_add_eol_comment(
        "required: id of a snapshot holding the Talos hcloud image", "hcloud_snapshot_id"
    )
    data.yaml_set_comment_before_after_key(
        "control_planes",
        before="Use an odd number of control planes to keep etcd quorum.",
    )

    yaml_writer = YAML()
    yaml_writer.default_flow_style = False
    yaml_writer.indent(mapping=2, sequence=4, offset=2)

    try:
        with open(path, "w") as f:
            yaml_writer.dump(data, f)
    except OSError as e:
        raise ConfigurationError(f"Failed to write configuration file {path}", str(e))
    return path
