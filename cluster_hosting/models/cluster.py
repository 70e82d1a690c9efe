"""Data models for cluster definitions and hosting options."""

import re
from ipaddress import IPv4Network, ip_network

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cluster_hosting.exceptions import ValidationError
from cluster_hosting.models.network import NetworkOptions
from cluster_hosting.models.node import (
    MAX_PLACEMENT_PARTITIONS,
    VOLUME_TYPES,
    NodeDefinition,
)

AWS = "aws"
XENSERVER = "xenserver"
HOSTING_ENVIRONMENTS = [AWS, XENSERVER]


class AwsHostingOptions(BaseModel):
    """AWS hosting options."""

    region: str
    availability_zone: str
    access_key_id: str | None = None
    secret_access_key: str | None = None
    vpc_subnet: str = "10.100.0.0/16"
    public_subnet: str = "10.100.255.0/24"
    node_subnet: str = "10.100.0.0/24"
    control_plane_placement_partitions: int = Field(default=0, ge=0, le=MAX_PLACEMENT_PARTITIONS)
    worker_placement_partitions: int = Field(default=1, ge=1, le=MAX_PLACEMENT_PARTITIONS)
    default_instance_type: str = "c5.2xlarge"
    default_volume_type: str = "gp3"
    default_volume_size_gib: int = Field(default=128, gt=0)
    default_data_volume_size_gib: int = Field(default=64, gt=0)
    image_id: str | None = None
    image_os: str = "ubuntu-22.04"
    resource_group: str | None = None
    admin_username: str = "sysadmin"

    @field_validator("vpc_subnet", "public_subnet", "node_subnet")
    @classmethod
    def validate_subnet(cls, v: str) -> str:
        """Validate subnets are IPv4 CIDRs."""
        try:
            ip_network(v)
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid IPv4 CIDR: {e}")
        return v

    @field_validator("default_volume_type")
    @classmethod
    def validate_volume_type(cls, v: str) -> str:
        if v not in VOLUME_TYPES:
            raise ValueError(f"default_volume_type must be one of {VOLUME_TYPES}, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_subnet_layout(self) -> "AwsHostingOptions":
        """Public and node subnets must sit inside the VPC subnet without overlapping."""
        vpc = ip_network(self.vpc_subnet)
        public = ip_network(self.public_subnet)
        nodes = ip_network(self.node_subnet)
        for label, subnet in (("public_subnet", public), ("node_subnet", nodes)):
            if not subnet.subnet_of(vpc):
                raise ValueError(f"{label} {subnet} is not inside vpc_subnet {vpc}")
        if public.overlaps(nodes):
            raise ValueError(f"public_subnet {public} overlaps node_subnet {nodes}")
        return self

    @property
    def node_network(self) -> IPv4Network:
        return ip_network(self.node_subnet)


class XenServerHost(BaseModel):
    """A XenServer host that VMs may be placed on."""

    name: str
    address: str
    username: str = "root"
    password: str = ""
    storage_repository: str = "Local storage"


class XenServerHostingOptions(BaseModel):
    """XenServer hosting options."""

    hosts: list[XenServerHost] = Field(default_factory=list)
    template: str = "cluster-node-ubuntu-22.04"
    template_url: str | None = None
    node_subnet: str = "10.0.0.0/24"
    gateway: str | None = None

    def get_host(self, name: str) -> XenServerHost | None:
        return next((h for h in self.hosts if h.name == name), None)


class HostingOptions(BaseModel):
    """Hosting environment selection and provider options."""

    environment: str
    vm_name_prefix: str = ""
    aws: AwsHostingOptions | None = None
    xenserver: XenServerHostingOptions | None = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.lower()
        if v not in HOSTING_ENVIRONMENTS:
            raise ValueError(f"environment must be one of {HOSTING_ENVIRONMENTS}, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_provider_options(self) -> "HostingOptions":
        """The selected environment must carry its options block."""
        if getattr(self, self.environment) is None:
            raise ValueError(f"hosting.{self.environment} options are required")
        return self


class ClusterDefinition(BaseModel):
    """Declarative cluster definition."""

    name: str
    purpose: str = "development"
    nodes: list[NodeDefinition] = Field(default_factory=list)
    network: NetworkOptions = Field(default_factory=NetworkOptions)
    hosting: HostingOptions

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate cluster name."""
        if not v:
            raise ValueError("name cannot be empty")
        if not re.match(r"^[a-z0-9]([-a-z0-9._]*[a-z0-9])?$", v, re.IGNORECASE):
            raise ValueError(
                f"cluster name '{v}' may only contain letters, digits, '-', '.' and '_' "
                "and must start and end with a letter or digit"
            )
        return v

    @model_validator(mode="after")
    def validate_nodes(self) -> "ClusterDefinition":
        """Node names must be unique and at least one control-plane node must exist."""
        if not self.nodes:
            raise ValueError("cluster must define at least one node")
        names = [node.name for node in self.nodes]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate node names: {', '.join(duplicates)}")
        if not any(node.is_control_plane for node in self.nodes):
            raise ValueError("cluster must define at least one control-plane node")
        return self

    @property
    def control_plane_nodes(self) -> list[NodeDefinition]:
        """Control-plane nodes sorted by name."""
        return sorted((n for n in self.nodes if n.is_control_plane), key=lambda n: n.name)

    @property
    def worker_nodes(self) -> list[NodeDefinition]:
        """Worker nodes sorted by name."""
        return sorted((n for n in self.nodes if n.is_worker), key=lambda n: n.name)

    @property
    def sorted_nodes(self) -> list[NodeDefinition]:
        """Control-plane nodes then workers, each sorted by name."""
        return self.control_plane_nodes + self.worker_nodes

    @property
    def ingress_nodes(self) -> list[NodeDefinition]:
        return sorted((n for n in self.nodes if n.ingress), key=lambda n: n.name)

    def get_node(self, name: str) -> NodeDefinition | None:
        return next((n for n in self.nodes if n.name == name), None)

    def ensure_ingress_nodes(self) -> list[NodeDefinition]:
        """Mark default ingress nodes when none were chosen.

        Workers receive ingress traffic by default; clusters without workers
        route ingress to the control-plane.

        Returns:
            The ingress nodes
        """
        if not self.ingress_nodes:
            for node in self.worker_nodes or self.control_plane_nodes:
                node.ingress = True
        return self.ingress_nodes

    def assign_node_addresses(self, subnet: IPv4Network, first_offset: int = 10) -> None:
        """Give every node without an address the next free address in the subnet.

        Explicit addresses are checked first.  Free addresses are handed out
        from ``first_offset`` upward, control-plane nodes before workers.

        Raises:
            ValidationError: If an address is outside the subnet, reserved or
                duplicated, or the subnet runs out of addresses
        """
        reserved = {subnet.network_address + i for i in range(first_offset)}
        reserved.add(subnet.broadcast_address)
        used = {}

        for node in self.sorted_nodes:
            if node.address is None:
                continue
            if node.address not in subnet or node.address in reserved:
                raise ValidationError(
                    f"Node '{node.name}' address {node.address} is not usable in subnet {subnet}",
                    f"The first {first_offset} addresses and the broadcast address are reserved.",
                )
            if node.address in used:
                raise ValidationError(
                    f"Nodes '{used[node.address]}' and '{node.name}' share address {node.address}"
                )
            used[node.address] = node.name

        candidates = (
            address for address in subnet.hosts() if address not in reserved and address not in used
        )
        for node in self.sorted_nodes:
            if node.address is not None:
                continue
            node.address = next(candidates, None)
            if node.address is None:
                raise ValidationError(f"Subnet {subnet} has no free address for node '{node.name}'")

    def save(self, path: str) -> None:
        """Save the definition to a YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(
                self.model_dump(mode="json", exclude_none=True), f, default_flow_style=False
            )

    @classmethod
    def load(cls, path: str) -> "ClusterDefinition":
        """Load a definition from a YAML file.

        Raises:
            ValidationError: If the file is missing, unparsable or fails validation
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ValidationError(f"Cluster definition not found: {path}")
        except yaml.YAMLError as e:
            raise ValidationError(f"Cluster definition is not valid YAML: {path}", str(e))

        if not isinstance(data, dict):
            raise ValidationError(f"Cluster definition must be a mapping: {path}")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ValidationError(f"Cluster definition is invalid: {path}", str(e))
