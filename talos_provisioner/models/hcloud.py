"""Hetzner Cloud API resource models.

Only the fields the provisioner reads are modelled; unknown fields in API
payloads are ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class IPv4(_ApiModel):
    ip: str
    blocked: bool = False


class IPv6(_ApiModel):
    ip: str
    blocked: bool = False


class PublicNetwork(_ApiModel):
    ipv4: IPv4 | None = None
    ipv6: IPv6 | None = None


class PrivateNetwork(_ApiModel):
    network: int
    ip: str


class Server(_ApiModel):
    """Hetzner Cloud server resource."""

    id: int
    name: str
    status: str = "initializing"
    public_net: PublicNetwork = Field(default_factory=PublicNetwork)
    private_net: list[PrivateNetwork] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    created: str | None = None

    @property
    def public_ip(self) -> str | None:
        return self.public_net.ipv4.ip if self.public_net.ipv4 else None

    @property
    def private_ip(self) -> str | None:
        return self.private_net[0].ip if self.private_net else None


class ActionError(_ApiModel):
    code: str
    message: str


class Action(_ApiModel):
    """An asynchronous provider operation."""

    id: int
    command: str = ""
    status: str  # running, success, error
    progress: int = 0
    error: ActionError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "error")


class Subnet(_ApiModel):
    ip_range: str
    network_zone: str
    type: str = "cloud"
    gateway: str | None = None


class Network(_ApiModel):
    id: int
    name: str
    ip_range: str
    subnets: list[Subnet] = Field(default_factory=list)
    servers: list[int] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)


class SSHKey(_ApiModel):
    id: int
    name: str
    fingerprint: str = ""
    public_key: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class FirewallRule(_ApiModel):
    direction: str
    protocol: str
    port: str | None = None
    source_ips: list[str] = Field(default_factory=list)
    destination_ips: list[str] = Field(default_factory=list)
    description: str | None = None


class Firewall(_ApiModel):
    id: int
    name: str
    rules: list[FirewallRule] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
