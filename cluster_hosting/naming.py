"""Resource naming and the tag-key namespace.

Every resource the hosting managers create is named deterministically from the
cluster name and carries the ``name``, ``cluster`` and ``environment`` tags.
Discovery filters on the cluster tag, so these keys must never change.
"""

import re
from dataclasses import dataclass

from cluster_hosting.exceptions import ConfigurationError

TAG_NAMESPACE = "cluster-hosting"

NAME_TAG = "Name"
CLUSTER_TAG = f"{TAG_NAMESPACE}:cluster"
ENVIRONMENT_TAG = f"{TAG_NAMESPACE}:environment"
NODE_NAME_TAG = f"{TAG_NAMESPACE}:node.name"
NODE_SSH_PORT_TAG = f"{TAG_NAMESPACE}:node.ssh-port"
SSH_ENABLED_TAG = f"{TAG_NAMESPACE}:vpc.ssh-enabled"
ACL_SLOT_TAG = f"{TAG_NAMESPACE}:acl.slot"

IMAGE_TAG = f"{TAG_NAMESPACE}:image"
IMAGE_TYPE_TAG = f"{TAG_NAMESPACE}:image.type"
IMAGE_OS_TAG = f"{TAG_NAMESPACE}:image.os"
IMAGE_ARCH_TAG = f"{TAG_NAMESPACE}:image.arch"

# Elastic load balancers and target groups share this name limit
LOAD_BALANCER_NAME_LIMIT = 32

# Target population codes embedded in target group names; these must not contain dashes
TARGET_CODES = {"control-plane": "cp", "ingress": "ing", "ssh": "ssh"}

_DISALLOWED_CHARS = re.compile(r"[._]")


def resource_name(cluster: str, base: str, max_length: int = LOAD_BALANCER_NAME_LIMIT) -> str:
    """Build a provider-safe resource name from a cluster name and base name.

    Periods and underscores are replaced with dashes, so ``my.cluster`` and
    ``my_cluster`` map to the same prefix.  The provider reserves names starting
    with ``internal-`` so those are prefixed with ``x-``.

    Args:
        cluster: Cluster name
        base: Resource base name such as ``elb``
        max_length: Provider name length limit

    Returns:
        The resource name

    Raises:
        ConfigurationError: If the name exceeds max_length
    """
    name = _DISALLOWED_CHARS.sub("-", f"{cluster}-{base}")

    if name.startswith("internal-"):
        name = f"x-{name}"

    if len(name) > max_length:
        raise ConfigurationError(
            f"Resource name '{name}' exceeds the {max_length} character limit",
            "Choose a shorter cluster name.",
        )
    return name


def qualified_name(cluster: str, base: str) -> str:
    """Name tag value for a cluster resource: ``{cluster}.{base}``."""
    return f"{cluster}.{base}"


def load_balancer_name(cluster: str) -> str:
    """Name of the cluster's network load balancer."""
    return resource_name(cluster, "elb")


def target_group_name(cluster: str, target: str, protocol: str, port: int) -> str:
    """Target group name for a target population, protocol and external port.

    HTTP and HTTPS are forwarded as plain TCP by the network load balancer.
    """
    protocol = protocol.lower()
    if protocol in ("http", "https"):
        protocol = "tcp"
    return resource_name(cluster, f"{TARGET_CODES[target]}-{protocol}-{port}")


@dataclass(frozen=True)
class ClusterResourceNames:
    """The names of every per-cluster resource."""

    cluster: str

    def _name(self, base: str) -> str:
        return qualified_name(self.cluster, base)

    @property
    def vpc(self) -> str:
        return self._name("vpc")

    @property
    def security_group(self) -> str:
        return self._name("sg")

    @property
    def public_subnet(self) -> str:
        return self._name("public-subnet")

    @property
    def node_subnet(self) -> str:
        return self._name("node-subnet")

    @property
    def public_route_table(self) -> str:
        return self._name("public-route-table")

    @property
    def node_route_table(self) -> str:
        return self._name("node-route-table")

    @property
    def internet_gateway(self) -> str:
        return self._name("internet-gateway")

    @property
    def nat_gateway(self) -> str:
        return self._name("nat-gateway")

    @property
    def ingress_address(self) -> str:
        return self._name("ingress-address")

    @property
    def egress_address(self) -> str:
        return self._name("egress-address")

    @property
    def control_plane_placement_group(self) -> str:
        return self._name("control-plane-placement")

    @property
    def worker_placement_group(self) -> str:
        return self._name("worker-placement")

    @property
    def load_balancer(self) -> str:
        return load_balancer_name(self.cluster)

    def network_acl(self, slot: str) -> str:
        return self._name(f"network-acl-{slot}")

    def node(self, node_name: str) -> str:
        return self._name(node_name)

    def volume(self, node_name: str, kind: str) -> str:
        return self._name(f"{node_name}.{kind}")


def build_tags(
    name: str, cluster: str, environment: str, extra: dict[str, str] | None = None
) -> dict[str, str]:
    """Build the standard tag set for a resource."""
    tags = {NAME_TAG: name, CLUSTER_TAG: cluster, ENVIRONMENT_TAG: environment}
    if extra:
        tags.update(extra)
    return tags


def ec2_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    """Convert a tag mapping into EC2 ``Tags`` entries."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def elb_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    """Convert a tag mapping into ELBv2 ``Tags`` entries."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def tag_specification(resource_type: str, tags: dict[str, str]) -> list[dict]:
    """EC2 ``TagSpecifications`` so a resource is tagged atomically with its creation."""
    return [{"ResourceType": resource_type, "Tags": ec2_tags(tags)}]


def tags_to_dict(tags: list[dict] | None) -> dict[str, str]:
    """Convert provider ``Tags`` entries back into a mapping."""
    return {tag["Key"]: tag["Value"] for tag in tags or []}
