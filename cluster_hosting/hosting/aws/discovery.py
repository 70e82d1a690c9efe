"""Tag-scoped discovery of a cluster's existing AWS resources."""

import json

from cluster_hosting.exceptions import ConflictError, ProviderError
from cluster_hosting.hosting.aws.client import AwsClient
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import AwsHostingOptions, ClusterDefinition
from cluster_hosting.models.resources import (
    InstanceRecord,
    InstanceState,
    ResourceSnapshot,
    TaggedResource,
)
from cluster_hosting.naming import (
    ACL_SLOT_TAG,
    CLUSTER_TAG,
    IMAGE_ARCH_TAG,
    IMAGE_OS_TAG,
    IMAGE_TAG,
    IMAGE_TYPE_TAG,
    NAME_TAG,
    NODE_NAME_TAG,
    NODE_SSH_PORT_TAG,
    ClusterResourceNames,
    tags_to_dict,
)

logger = get_logger(__name__)

ARCHITECTURE = "x86_64"

DEAD_NAT_GATEWAY_STATES = {"deleting", "deleted", "failed"}
DEAD_PLACEMENT_GROUP_STATES = {"deleting", "deleted"}


def tagged(data: dict, id_key: str, name: str | None = None) -> TaggedResource:
    """Wrap a provider description as a TaggedResource."""
    tags = tags_to_dict(data.get("Tags"))
    return TaggedResource(
        id=data[id_key], name=name or tags.get(NAME_TAG, ""), tags=tags, data=data
    )


def find_by_name(items: list[dict], id_key: str, name: str) -> TaggedResource | None:
    """Return the first item whose name tag matches."""
    for item in items:
        resource = tagged(item, id_key)
        if resource.name == name:
            return resource
    return None


def resource_group_query(cluster: str) -> dict:
    """Resource Groups tag query selecting every resource of the cluster."""
    return {
        "ResourceTypeFilters": ["AWS::AllSupported"],
        "TagFilters": [{"Key": CLUSTER_TAG, "Values": [cluster]}],
    }


def locate_node_image(client: AwsClient, options: AwsHostingOptions) -> str | None:
    """Find the node image, newest first.

    Returns:
        The image id, or None when no matching image exists
    """
    if options.image_id:
        return options.image_id

    images = client.ec2.paginate(
        "describe_images",
        "Images",
        Filters=[
            {"Name": f"tag:{IMAGE_TAG}", "Values": ["true"]},
            {"Name": f"tag:{IMAGE_TYPE_TAG}", "Values": ["node"]},
            {"Name": f"tag:{IMAGE_OS_TAG}", "Values": [options.image_os]},
            {"Name": f"tag:{IMAGE_ARCH_TAG}", "Values": [ARCHITECTURE]},
            {"Name": "state", "Values": ["available"]},
        ],
    )
    if not images:
        return None

    newest = max(images, key=lambda image: image.get("CreationDate", ""))
    logger.debug(f"Located node image {newest['ImageId']} ({newest.get('Name', '')})")
    return newest["ImageId"]


class ResourceDiscovery:
    """Builds a ResourceSnapshot from the resources tagged for one cluster."""

    def __init__(self, client: AwsClient, definition: ClusterDefinition):
        self.client = client
        self.definition = definition
        self.cluster = definition.name
        self.names = ClusterResourceNames(definition.name)
        self.options = definition.hosting.aws

    @property
    def cluster_filter(self) -> dict:
        return {"Name": f"tag:{CLUSTER_TAG}", "Values": [self.cluster]}

    def discover(self) -> ResourceSnapshot:
        """List every resource category and match the expected names.

        Raises:
            ConflictError: If a named resource exists that is not tagged for this cluster
            ProviderError: If AWS keeps failing
        """
        logger.info(f"Discovering AWS resources for cluster {self.cluster}")
        snapshot = ResourceSnapshot()

        snapshot.resource_group = self._discover_resource_group()
        snapshot.node_image_id = locate_node_image(self.client, self.options)

        addresses = self.client.ec2.describe_addresses(Filters=[self.cluster_filter])["Addresses"]
        snapshot.ingress_address = find_by_name(addresses, "AllocationId", self.names.ingress_address)
        snapshot.egress_address = find_by_name(addresses, "AllocationId", self.names.egress_address)

        vpcs = self.client.ec2.paginate("describe_vpcs", "Vpcs", Filters=[self.cluster_filter])
        snapshot.vpc = find_by_name(vpcs, "VpcId", self.names.vpc)

        if snapshot.vpc is not None:
            self._discover_network(snapshot)

        snapshot.control_plane_placement_group = self._discover_placement_group(
            self.names.control_plane_placement_group
        )
        snapshot.worker_placement_group = self._discover_placement_group(
            self.names.worker_placement_group
        )
        snapshot.load_balancer = self._discover_load_balancer()
        self._discover_instances(snapshot)

        logger.debug(
            f"Discovered vpc={snapshot.vpc is not None} "
            f"instances={sorted(n for n, r in snapshot.instances.items() if r.exists)} "
            f"target_groups={sorted(snapshot.target_groups)}"
        )
        return snapshot

    def _discover_network(self, snapshot: ResourceSnapshot) -> None:
        filters = [self.cluster_filter, {"Name": "vpc-id", "Values": [snapshot.vpc.id]}]
        ec2 = self.client.ec2

        groups = ec2.paginate("describe_security_groups", "SecurityGroups", Filters=filters)
        snapshot.security_group = find_by_name(groups, "GroupId", self.names.security_group)

        subnets = ec2.paginate("describe_subnets", "Subnets", Filters=filters)
        snapshot.public_subnet = find_by_name(subnets, "SubnetId", self.names.public_subnet)
        snapshot.node_subnet = find_by_name(subnets, "SubnetId", self.names.node_subnet)

        tables = ec2.paginate("describe_route_tables", "RouteTables", Filters=filters)
        snapshot.public_route_table = find_by_name(tables, "RouteTableId", self.names.public_route_table)
        snapshot.node_route_table = find_by_name(tables, "RouteTableId", self.names.node_route_table)

        # Detached gateways have no vpc-id, so only filter on the cluster tag
        gateways = ec2.paginate(
            "describe_internet_gateways", "InternetGateways", Filters=[self.cluster_filter]
        )
        snapshot.internet_gateway = find_by_name(
            gateways, "InternetGatewayId", self.names.internet_gateway
        )

        nat_gateways = [
            gateway
            for gateway in ec2.paginate("describe_nat_gateways", "NatGateways", Filter=filters)
            if gateway.get("State") not in DEAD_NAT_GATEWAY_STATES
        ]
        snapshot.nat_gateway = find_by_name(nat_gateways, "NatGatewayId", self.names.nat_gateway)

        for acl in ec2.paginate("describe_network_acls", "NetworkAcls", Filters=filters):
            resource = tagged(acl, "NetworkAclId")
            slot = resource.tag(ACL_SLOT_TAG)
            if slot and resource.name == self.names.network_acl(slot):
                snapshot.network_acls[slot] = resource

        # Target groups are scoped by our VPC, which only this cluster uses
        for group in self.client.elb.paginate("describe_target_groups", "TargetGroups"):
            if group.get("VpcId") == snapshot.vpc.id:
                name = group["TargetGroupName"]
                snapshot.target_groups[name] = tagged(group, "TargetGroupArn", name=name)

    def _discover_resource_group(self) -> TaggedResource | None:
        name = self.options.resource_group or self.cluster

        try:
            group = self.client.resource_groups.get_group(Group=name)["Group"]
        except ProviderError as e:
            if e.code in ("NotFoundException", "NotFound"):
                return None
            raise

        query = self.client.resource_groups.get_group_query(Group=name)["GroupQuery"]
        try:
            actual = json.loads(query["ResourceQuery"]["Query"])
        except (KeyError, ValueError):
            actual = None

        expected = resource_group_query(self.cluster)
        if actual is None or actual.get("TagFilters") != expected["TagFilters"]:
            raise ConflictError(
                f"Resource group '{name}' exists but does not select cluster '{self.cluster}'",
                "Use a different resource_group name or remove the existing group.",
            )
        return TaggedResource(id=group["GroupArn"], name=name, data=group)

    def _discover_placement_group(self, name: str) -> TaggedResource | None:
        groups = self.client.ec2.describe_placement_groups(Filters=[self.cluster_filter])[
            "PlacementGroups"
        ]
        live = [g for g in groups if g.get("State") not in DEAD_PLACEMENT_GROUP_STATES]
        for group in live:
            if group["GroupName"] == name:
                return tagged(group, "GroupName", name=name)

        # Placement group names are unique per account; an untagged one is not ours
        try:
            existing = self.client.ec2.describe_placement_groups(GroupNames=[name])["PlacementGroups"]
        except ProviderError as e:
            if e.code and e.code.startswith("InvalidPlacementGroup"):
                return None
            raise

        if any(g.get("State") not in DEAD_PLACEMENT_GROUP_STATES for g in existing):
            raise ConflictError(
                f"Placement group '{name}' exists but is not tagged for cluster '{self.cluster}'"
            )
        return None

    def _discover_load_balancer(self) -> TaggedResource | None:
        name = self.names.load_balancer

        try:
            balancers = self.client.elb.describe_load_balancers(Names=[name])["LoadBalancers"]
        except ProviderError as e:
            if e.code == "LoadBalancerNotFound":
                return None
            raise
        if not balancers:
            return None

        balancer = balancers[0]
        arn = balancer["LoadBalancerArn"]
        descriptions = self.client.elb.describe_tags(ResourceArns=[arn])["TagDescriptions"]
        tags = tags_to_dict(descriptions[0]["Tags"]) if descriptions else {}

        if tags.get(CLUSTER_TAG) != self.cluster:
            raise ConflictError(
                f"Load balancer '{name}' exists but belongs to cluster '{tags.get(CLUSTER_TAG)}'",
                "Cluster names that differ only by '.', '_' or '-' produce the same AWS names.",
            )
        return TaggedResource(id=arn, name=name, tags=tags, data=balancer)

    def _discover_instances(self, snapshot: ResourceSnapshot) -> None:
        reservations = self.client.ec2.paginate(
            "describe_instances", "Reservations", Filters=[self.cluster_filter]
        )

        for reservation in reservations:
            for instance in reservation.get("Instances", []):
                state = InstanceState.from_code(instance["State"]["Code"])
                if state == InstanceState.TERMINATED:
                    continue

                tags = tags_to_dict(instance.get("Tags"))
                node_name = tags.get(NODE_NAME_TAG)
                if node_name is None or self.definition.get_node(node_name) is None:
                    logger.warning(
                        f"Ignoring instance {instance['InstanceId']} with unknown node name '{node_name}'"
                    )
                    continue

                existing = snapshot.instances.get(node_name)
                if existing is not None and existing.exists:
                    logger.warning(
                        f"Node {node_name} has multiple instances; using {existing.instance_id}"
                    )
                    continue

                snapshot.instances[node_name] = InstanceRecord(
                    node_name=node_name,
                    instance_id=instance["InstanceId"],
                    state=state,
                    ssh_port=_parse_port(tags.get(NODE_SSH_PORT_TAG)),
                    instance_type=instance.get("InstanceType"),
                    volume_ids={
                        mapping["DeviceName"]: mapping["Ebs"]["VolumeId"]
                        for mapping in instance.get("BlockDeviceMappings", [])
                        if "Ebs" in mapping
                    },
                    data=instance,
                )


def _parse_port(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        port = int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid SSH port tag value '{value}'")
        return None
    return port if 0 < port <= 65535 else None
