"""
Pydantic descriptors for every cloud resource in the stack.

Each descriptor is an immutable value describing desired state. It knows
its own identity (``key``), which other resources it references
(``depends_on``), and how to present itself without leaking sensitive
values (``redacted``). Converting a descriptor into an API request is the
provider's job; nothing here talks to the cloud.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import REDACTED

ANY_IPV4 = "0.0.0.0/0"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoutingMode(str, Enum):
    """Dynamic routing scope of a VPC network."""

    REGIONAL = "REGIONAL"
    GLOBAL = "GLOBAL"


class Direction(str, Enum):
    """Traffic direction a firewall rule applies to."""

    INGRESS = "INGRESS"
    EGRESS = "EGRESS"


class ResourceStatus(str, Enum):
    """Lifecycle state of one resource within a deployment."""

    PENDING = "pending"
    CREATING = "creating"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPED = "stopped"
    FAILED = "failed"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Resource(BaseModel):
    """Common shape of all resource descriptors."""

    model_config = ConfigDict(frozen=True)

    kind: ClassVar[str] = "resource"
    # Applied only at creation; later edits are not treated as changes.
    create_only_fields: ClassVar[FrozenSet[str]] = frozenset()

    name: str = Field(min_length=1, max_length=63)

    @property
    def key(self) -> str:
        """Stable identity used for ordering, diffs and saved state."""
        return f"{self.kind}/{self.name}"

    @property
    def depends_on(self) -> List[str]:
        """Keys of resources that must exist before this one."""
        return []

    def redacted(self) -> Dict[str, Any]:
        """JSON-safe dump suitable for display and saved state."""
        return self.model_dump(mode="json")


class Network(Resource):
    """A custom-mode VPC network (no automatic subnets)."""

    kind: ClassVar[str] = "network"

    routing_mode: RoutingMode = RoutingMode.REGIONAL
    auto_create_subnetworks: bool = False


class Subnet(Resource):
    """One IPv4 range bound to a network and a region."""

    kind: ClassVar[str] = "subnet"

    ip_cidr_range: str
    region: str
    network: str = Field(description="Name of the parent network")

    @property
    def depends_on(self) -> List[str]:
        return [f"{Network.kind}/{self.network}"]


class AllowRule(BaseModel):
    """Protocol (and optional ports) permitted by a firewall rule."""

    model_config = ConfigDict(frozen=True)

    protocol: str
    ports: List[str] = Field(default_factory=list)


class FirewallRule(Resource):
    """A declarative allow rule attached to a network.

    ``sensitive_ranges`` marks rules whose ranges came from a sensitive
    input; ``redacted`` masks them.
    """

    kind: ClassVar[str] = "firewall"

    network: str
    direction: Direction
    allowed: List[AllowRule]
    source_ranges: List[str] = Field(default_factory=list)
    destination_ranges: List[str] = Field(default_factory=list)
    target_tags: List[str] = Field(default_factory=list)
    priority: int = Field(default=1000, ge=0, le=65535)
    description: str = ""
    sensitive_ranges: bool = False

    @property
    def depends_on(self) -> List[str]:
        return [f"{Network.kind}/{self.network}"]

    def redacted(self) -> Dict[str, Any]:
        data = super().redacted()
        if self.sensitive_ranges:
            data["source_ranges"] = [REDACTED for _ in self.source_ranges]
            data["destination_ranges"] = [REDACTED for _ in self.destination_ranges]
        return data


class BootDisk(BaseModel):
    """Boot disk initialized from a public OS image."""

    model_config = ConfigDict(frozen=True)

    image: str
    size_gb: int = Field(ge=10)
    disk_type: str = "pd-ssd"
    auto_delete: bool = True


class NetworkAttachment(BaseModel):
    """Where the instance's NIC lives and whether it gets a public address."""

    model_config = ConfigDict(frozen=True)

    subnet: str
    region: str
    external_ip: bool = True


class Instance(Resource):
    """The VM running the inference workload."""

    kind: ClassVar[str] = "instance"
    # The guest runs the boot script once, on first boot.
    create_only_fields: ClassVar[FrozenSet[str]] = frozenset({"startup_script"})

    machine_type: str
    zone: str
    tags: List[str]
    boot_disk: BootDisk
    network_interface: NetworkAttachment
    scopes: List[str] = Field(default_factory=lambda: [CLOUD_PLATFORM_SCOPE])
    service_account: str = "default"
    startup_script: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def depends_on(self) -> List[str]:
        return [f"{Subnet.kind}/{self.network_interface.subnet}"]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class StackOutputs(BaseModel):
    """Values surfaced once provisioning completes."""

    instance_name: str
    instance_public_ip: str = ""

    @classmethod
    def from_instance(cls, name: str, instance: Optional[Any]) -> "StackOutputs":
        """Project a live Compute Engine instance onto the outputs.

        The public address stays empty until an access config carries a
        NAT IP.

        Args:
            name: Instance name.
            instance: ``compute_v1.Instance`` (or None if not fetched).

        Returns:
            StackOutputs.
        """
        host = ""
        if instance is not None:
            for iface in instance.network_interfaces:
                for ac in iface.access_configs:
                    if ac.nat_i_p:
                        host = ac.nat_i_p
                        break
                if host:
                    break
        return cls(instance_name=name, instance_public_ip=host)


RESOURCE_KINDS: Dict[str, type] = {
    cls.kind: cls for cls in (Network, Subnet, FirewallRule, Instance)
}


def resource_from_spec(kind: str, spec: Dict[str, Any]) -> Resource:
    """Rebuild a descriptor from a saved (possibly redacted) spec.

    Redacted fields keep their masked placeholder; the result is good for
    identity-based operations such as deletion, not for re-creation.

    Raises:
        ValueError: If the kind is unknown.
    """
    cls = RESOURCE_KINDS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown resource kind: {kind}")
    return cls.model_validate(spec)
