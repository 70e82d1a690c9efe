"""Data models for cluster node definitions."""

import re
from ipaddress import IPv4Address

from pydantic import BaseModel, Field, field_validator

CONTROL_PLANE = "control-plane"
WORKER = "worker"

# AWS partition placement groups support at most seven partitions
MAX_PLACEMENT_PARTITIONS = 7

VOLUME_TYPES = ["gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"]


class AwsNodeOptions(BaseModel):
    """AWS specific node options.

    Values left as None fall back to the cluster wide defaults in AwsHostingOptions.
    """

    instance_type: str | None = None
    volume_type: str | None = None
    volume_size_gib: int | None = Field(default=None, gt=0)
    data_volume_size_gib: int | None = Field(default=None, gt=0)
    storage_volume_size_gib: int | None = Field(default=None, gt=0)
    placement_partition: int = Field(default=0, ge=0, le=MAX_PLACEMENT_PARTITIONS)

    @field_validator("volume_type")
    @classmethod
    def validate_volume_type(cls, v: str | None) -> str | None:
        """Validate the EBS volume type."""
        if v is not None and v not in VOLUME_TYPES:
            raise ValueError(f"volume_type must be one of {VOLUME_TYPES}, got '{v}'")
        return v


class VmNodeOptions(BaseModel):
    """Hypervisor virtual machine options."""

    host: str | None = None
    cores: int = Field(default=4, gt=0)
    memory_gib: int = Field(default=8, gt=0)
    disk_gib: int = Field(default=64, gt=0)


class NodeDefinition(BaseModel):
    """Node definition model."""

    name: str
    role: str
    address: IPv4Address | None = None
    ingress: bool = False
    labels: dict[str, str] = Field(default_factory=dict)
    aws: AwsNodeOptions = Field(default_factory=AwsNodeOptions)
    vm: VmNodeOptions = Field(default_factory=VmNodeOptions)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate node name is a single DNS label."""
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > 63:
            raise ValueError("name cannot exceed 63 characters")
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", v):
            raise ValueError(
                f"name '{v}' must contain only lowercase alphanumeric characters and hyphens, "
                "and cannot start or end with a hyphen"
            )
        return v

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either control-plane or worker."""
        allowed_roles = [CONTROL_PLANE, WORKER]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @property
    def is_control_plane(self) -> bool:
        return self.role == CONTROL_PLANE

    @property
    def is_worker(self) -> bool:
        return self.role == WORKER
