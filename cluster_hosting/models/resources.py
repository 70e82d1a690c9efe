"""Runtime records describing discovered provider resources."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class InstanceState(IntEnum):
    """EC2 instance state codes (low byte of the reported code)."""

    PENDING = 0
    RUNNING = 16
    SHUTTING_DOWN = 32
    TERMINATED = 48
    STOPPING = 64
    STOPPED = 80

    @classmethod
    def from_code(cls, code: int) -> "InstanceState":
        """Convert a reported state code; the high byte is internal to EC2 and ignored."""
        return cls(code & 0xFF)

    @property
    def is_stopped(self) -> bool:
        return self == InstanceState.STOPPED

    @property
    def is_running(self) -> bool:
        return self == InstanceState.RUNNING

    @property
    def is_pending(self) -> bool:
        return self == InstanceState.PENDING

    @property
    def is_unexpected(self) -> bool:
        """States the engine never drives an instance into while provisioning."""
        return self in (
            InstanceState.SHUTTING_DOWN,
            InstanceState.STOPPING,
            InstanceState.TERMINATED,
        )


@dataclass
class TaggedResource:
    """A provider resource handle with its tags.

    Attributes:
        id: Provider identifier (VPC id, ARN, allocation id...)
        name: Value of the name tag, or the provider name when the resource has one
        tags: Tag key to value mapping
        data: Raw provider description
    """

    id: str
    name: str
    tags: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    def tag(self, key: str, default: str | None = None) -> str | None:
        return self.tags.get(key, default)


@dataclass
class InstanceRecord:
    """A node's compute instance."""

    node_name: str
    instance_id: str | None = None
    state: InstanceState | None = None
    ssh_port: int | None = None
    instance_type: str | None = None
    volume_ids: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def exists(self) -> bool:
        return self.instance_id is not None


@dataclass
class TargetGroupBinding:
    """Ingress rule to target group to listener binding."""

    rule_name: str
    target_group_name: str
    external_port: int
    target_group_arn: str | None = None
    listener_arn: str | None = None


@dataclass
class ResourceSnapshot:
    """Current provider state for one cluster, rebuilt by discovery."""

    resource_group: TaggedResource | None = None
    node_image_id: str | None = None
    ingress_address: TaggedResource | None = None
    egress_address: TaggedResource | None = None
    vpc: TaggedResource | None = None
    security_group: TaggedResource | None = None
    public_subnet: TaggedResource | None = None
    node_subnet: TaggedResource | None = None
    public_route_table: TaggedResource | None = None
    node_route_table: TaggedResource | None = None
    internet_gateway: TaggedResource | None = None
    nat_gateway: TaggedResource | None = None
    network_acls: dict[str, TaggedResource] = field(default_factory=dict)
    control_plane_placement_group: TaggedResource | None = None
    worker_placement_group: TaggedResource | None = None
    load_balancer: TaggedResource | None = None
    target_groups: dict[str, TaggedResource] = field(default_factory=dict)
    instances: dict[str, InstanceRecord] = field(default_factory=dict)

    def instance(self, node_name: str) -> InstanceRecord:
        """Return the node's record, creating an absent one on first use."""
        record = self.instances.get(node_name)
        if record is None:
            record = InstanceRecord(node_name=node_name)
            self.instances[node_name] = record
        return record

    @property
    def ssh_ports(self) -> dict[str, int]:
        """Persisted SSH port allocations keyed by node name."""
        return {
            name: record.ssh_port
            for name, record in self.instances.items()
            if record.exists and record.ssh_port is not None
        }


@dataclass
class HostingResourceAvailability:
    """Whether a cluster can be deployed and the constraints that prevent it."""

    can_be_deployed: bool = True
    constraints: dict[str, list[str]] = field(default_factory=dict)

    def add_constraint(self, resource: str, message: str) -> None:
        self.can_be_deployed = False
        self.constraints.setdefault(resource, []).append(message)
