"""Data models for cluster hosting."""

from cluster_hosting.models.cluster import (
    AWS,
    XENSERVER,
    AwsHostingOptions,
    ClusterDefinition,
    HostingOptions,
    XenServerHost,
    XenServerHostingOptions,
)
from cluster_hosting.models.network import (
    AddressRule,
    HealthCheckOptions,
    IngressRule,
    NetworkOptions,
)
from cluster_hosting.models.node import (
    CONTROL_PLANE,
    WORKER,
    AwsNodeOptions,
    NodeDefinition,
    VmNodeOptions,
)
from cluster_hosting.models.resources import (
    HostingResourceAvailability,
    InstanceRecord,
    InstanceState,
    ResourceSnapshot,
    TaggedResource,
    TargetGroupBinding,
)

__all__ = [
    "AWS",
    "CONTROL_PLANE",
    "WORKER",
    "XENSERVER",
    "AddressRule",
    "AwsHostingOptions",
    "AwsNodeOptions",
    "ClusterDefinition",
    "HealthCheckOptions",
    "HostingOptions",
    "HostingResourceAvailability",
    "IngressRule",
    "InstanceRecord",
    "InstanceState",
    "NetworkOptions",
    "NodeDefinition",
    "ResourceSnapshot",
    "TaggedResource",
    "TargetGroupBinding",
    "VmNodeOptions",
    "XenServerHost",
    "XenServerHostingOptions",
]
