"""Network topology reconciliation for AWS.

Each ``ensure_*`` method creates only what the snapshot lacks, tags it in the
same call that creates it and records it in the snapshot, so an interrupted
run is picked up by the next discovery.
"""

import json
import threading

from cluster_hosting.acl import DEFAULT_DENY_RULE, SLOTS, AclRule, AclRotator, compute_acl_rules
from cluster_hosting.exceptions import ProviderError
from cluster_hosting.hosting.aws.client import AwsClient
from cluster_hosting.hosting.aws.discovery import resource_group_query, tagged
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import ClusterDefinition
from cluster_hosting.models.node import MAX_PLACEMENT_PARTITIONS
from cluster_hosting.models.resources import ResourceSnapshot, TaggedResource
from cluster_hosting.naming import (
    ACL_SLOT_TAG,
    CLUSTER_TAG,
    ENVIRONMENT_TAG,
    SSH_ENABLED_TAG,
    ClusterResourceNames,
    build_tags,
    ec2_tags,
    tag_specification,
)
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL, wait_for

logger = get_logger(__name__)

DEFAULT_ROUTE = "0.0.0.0/0"


class AwsAclBackend:
    """Reads and writes the node subnet's pair of network ACLs."""

    def __init__(self, client: AwsClient, snapshot: ResourceSnapshot):
        self.client = client
        self.snapshot = snapshot

    @property
    def subnet_id(self) -> str:
        return self.snapshot.node_subnet.id

    def _subnet_association(self) -> tuple[str, str]:
        """Return (acl id, association id) currently associated with the node subnet."""
        acls = self.client.ec2.describe_network_acls(
            Filters=[{"Name": "association.subnet-id", "Values": [self.subnet_id]}]
        )["NetworkAcls"]

        for acl in acls:
            for association in acl.get("Associations", []):
                if association["SubnetId"] == self.subnet_id:
                    return acl["NetworkAclId"], association["NetworkAclAssociationId"]

        raise ProviderError(f"Subnet {self.subnet_id} has no network ACL association")

    def active_slot(self) -> str | None:
        acl_id, _ = self._subnet_association()
        for slot, acl in self.snapshot.network_acls.items():
            if acl.id == acl_id:
                return slot
        return None

    def write_rules(self, slot: str, rules: list[AclRule]) -> None:
        acl_id = self.snapshot.network_acls[slot].id
        current = self.client.ec2.describe_network_acls(NetworkAclIds=[acl_id])["NetworkAcls"][0]

        for entry in current.get("Entries", []):
            if entry["RuleNumber"] == DEFAULT_DENY_RULE:
                continue
            self.client.ec2.delete_network_acl_entry(
                NetworkAclId=acl_id, RuleNumber=entry["RuleNumber"], Egress=entry["Egress"]
            )

        for rule in rules:
            self.client.ec2.create_network_acl_entry(**rule.to_entry(acl_id))

    def activate(self, slot: str) -> None:
        _, association_id = self._subnet_association()
        self.client.ec2.replace_network_acl_association(
            AssociationId=association_id, NetworkAclId=self.snapshot.network_acls[slot].id
        )


class NetworkReconciler:
    """Creates the VPC, subnets, routing, gateways and ACLs a cluster needs."""

    def __init__(
        self,
        client: AwsClient,
        definition: ClusterDefinition,
        operation_timeout: float = OPERATION_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        cancel_event: threading.Event | None = None,
    ):
        self.client = client
        self.definition = definition
        self.options = definition.hosting.aws
        self.names = ClusterResourceNames(definition.name)
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event

    def _tags(self, name: str, extra: dict[str, str] | None = None) -> dict[str, str]:
        return build_tags(name, self.definition.name, self.definition.purpose, extra)

    def ensure_resource_group(self, snapshot: ResourceSnapshot) -> TaggedResource:
        """Create the resource group that lists every cluster resource."""
        if snapshot.resource_group is not None:
            return snapshot.resource_group

        name = self.options.resource_group or self.definition.name
        response = self.client.resource_groups.create_group(
            Name=name,
            Description=f"Resources for cluster {self.definition.name}",
            ResourceQuery={
                "Type": "TAG_FILTERS_1_0",
                "Query": json.dumps(resource_group_query(self.definition.name)),
            },
            Tags={CLUSTER_TAG: self.definition.name, ENVIRONMENT_TAG: self.definition.purpose},
        )
        group = response["Group"]
        snapshot.resource_group = TaggedResource(id=group["GroupArn"], name=name, data=group)
        logger.info(f"Created resource group {name}")
        return snapshot.resource_group

    def ensure_addresses(self, snapshot: ResourceSnapshot) -> None:
        """Allocate the ingress (load balancer) and egress (NAT) elastic addresses."""
        if snapshot.ingress_address is None:
            snapshot.ingress_address = self._allocate_address(self.names.ingress_address)
        if snapshot.egress_address is None:
            snapshot.egress_address = self._allocate_address(self.names.egress_address)

    def _allocate_address(self, name: str) -> TaggedResource:
        response = self.client.ec2.allocate_address(
            Domain="vpc", TagSpecifications=tag_specification("elastic-ip", self._tags(name))
        )
        logger.info(f"Allocated elastic address {name}: {response['PublicIp']}")
        return TaggedResource(
            id=response["AllocationId"], name=name, tags=self._tags(name), data=response
        )

    def ensure_placement_groups(self, snapshot: ResourceSnapshot) -> None:
        """Create the partition placement groups for control-plane and worker nodes."""
        control_plane_partitions = self.control_plane_partitions
        if snapshot.control_plane_placement_group is None:
            snapshot.control_plane_placement_group = self._create_placement_group(
                self.names.control_plane_placement_group, control_plane_partitions
            )
        if snapshot.worker_placement_group is None:
            snapshot.worker_placement_group = self._create_placement_group(
                self.names.worker_placement_group, self.options.worker_placement_partitions
            )

    @property
    def control_plane_partitions(self) -> int:
        """Configured partition count, defaulting to one per control-plane node."""
        if self.options.control_plane_placement_partitions > 0:
            return self.options.control_plane_placement_partitions
        return min(len(self.definition.control_plane_nodes), MAX_PLACEMENT_PARTITIONS)

    def _create_placement_group(self, name: str, partitions: int) -> TaggedResource:
        response = self.client.ec2.create_placement_group(
            GroupName=name,
            Strategy="partition",
            PartitionCount=partitions,
            TagSpecifications=tag_specification("placement-group", self._tags(name)),
        )
        logger.info(f"Created placement group {name} with {partitions} partition(s)")
        group = response.get("PlacementGroup", {"GroupName": name})
        return TaggedResource(id=name, name=name, tags=self._tags(name), data=group)

    def reconcile(self, snapshot: ResourceSnapshot) -> bool:
        """Create whatever part of the network topology is missing.

        The egress address must already exist.

        Returns:
            True once the topology is complete, False when cancelled while
            waiting for the NAT gateway
        """
        ec2 = self.client.ec2

        if snapshot.vpc is None:
            response = ec2.create_vpc(
                CidrBlock=self.options.vpc_subnet,
                TagSpecifications=tag_specification(
                    "vpc", self._tags(self.names.vpc, {SSH_ENABLED_TAG: "false"})
                ),
            )
            snapshot.vpc = tagged(response["Vpc"], "VpcId", name=self.names.vpc)
            snapshot.vpc.tags.update(self._tags(self.names.vpc, {SSH_ENABLED_TAG: "false"}))
            logger.info(f"Created VPC {snapshot.vpc.id} ({self.options.vpc_subnet})")

        vpc_id = snapshot.vpc.id

        if snapshot.security_group is None:
            name = self.names.security_group
            response = ec2.create_security_group(
                GroupName=name,
                Description="Allows all traffic; filtering is done by the network ACLs",
                VpcId=vpc_id,
                TagSpecifications=tag_specification("security-group", self._tags(name)),
            )
            snapshot.security_group = TaggedResource(
                id=response["GroupId"], name=name, tags=self._tags(name), data={"IpPermissions": []}
            )
            logger.info(f"Created security group {snapshot.security_group.id}")

        if not snapshot.security_group.data.get("IpPermissions"):
            permissions = [{"IpProtocol": "-1", "IpRanges": [{"CidrIp": DEFAULT_ROUTE}]}]
            ec2.authorize_security_group_ingress(
                GroupId=snapshot.security_group.id, IpPermissions=permissions
            )
            snapshot.security_group.data["IpPermissions"] = permissions

        if snapshot.public_subnet is None:
            snapshot.public_subnet = self._create_subnet(
                vpc_id, self.names.public_subnet, self.options.public_subnet
            )
        if snapshot.node_subnet is None:
            snapshot.node_subnet = self._create_subnet(
                vpc_id, self.names.node_subnet, self.options.node_subnet
            )

        if snapshot.public_route_table is None:
            snapshot.public_route_table = self._create_route_table(vpc_id, self.names.public_route_table)
        if snapshot.node_route_table is None:
            snapshot.node_route_table = self._create_route_table(vpc_id, self.names.node_route_table)

        self._associate(snapshot.public_route_table, snapshot.public_subnet)
        self._associate(snapshot.node_route_table, snapshot.node_subnet)

        for slot in SLOTS:
            if slot not in snapshot.network_acls:
                name = self.names.network_acl(slot)
                tags = self._tags(name, {ACL_SLOT_TAG: slot})
                response = ec2.create_network_acl(
                    VpcId=vpc_id, TagSpecifications=tag_specification("network-acl", tags)
                )
                snapshot.network_acls[slot] = tagged(response["NetworkAcl"], "NetworkAclId", name=name)
                snapshot.network_acls[slot].tags.update(tags)
                logger.info(f"Created network ACL {name}")

        self._ensure_internet_gateway(snapshot)
        self._ensure_route(snapshot.public_route_table, GatewayId=snapshot.internet_gateway.id)
        if not self._ensure_nat_gateway(snapshot):
            return False
        self._ensure_route(snapshot.node_route_table, NatGatewayId=snapshot.nat_gateway.id)
        return True

    def _create_subnet(self, vpc_id: str, name: str, cidr: str) -> TaggedResource:
        response = self.client.ec2.create_subnet(
            VpcId=vpc_id,
            CidrBlock=cidr,
            AvailabilityZone=self.options.availability_zone,
            TagSpecifications=tag_specification("subnet", self._tags(name)),
        )
        logger.info(f"Created subnet {name} ({cidr})")
        return tagged(response["Subnet"], "SubnetId", name=name)

    def _create_route_table(self, vpc_id: str, name: str) -> TaggedResource:
        response = self.client.ec2.create_route_table(
            VpcId=vpc_id, TagSpecifications=tag_specification("route-table", self._tags(name))
        )
        logger.info(f"Created route table {name}")
        return tagged(response["RouteTable"], "RouteTableId", name=name)

    def _associate(self, route_table: TaggedResource, subnet: TaggedResource) -> None:
        associations = route_table.data.setdefault("Associations", [])
        if any(a.get("SubnetId") == subnet.id for a in associations):
            return

        response = self.client.ec2.associate_route_table(
            RouteTableId=route_table.id, SubnetId=subnet.id
        )
        associations.append(
            {"SubnetId": subnet.id, "RouteTableAssociationId": response["AssociationId"]}
        )
        logger.info(f"Associated route table {route_table.name} with subnet {subnet.name}")

    def _ensure_route(self, route_table: TaggedResource, **target: str) -> None:
        routes = route_table.data.setdefault("Routes", [])
        if any(r.get("DestinationCidrBlock") == DEFAULT_ROUTE for r in routes):
            return

        self.client.ec2.create_route(
            RouteTableId=route_table.id, DestinationCidrBlock=DEFAULT_ROUTE, **target
        )
        routes.append({"DestinationCidrBlock": DEFAULT_ROUTE, **target})
        logger.info(f"Added default route to {route_table.name} via {next(iter(target.values()))}")

    def _ensure_internet_gateway(self, snapshot: ResourceSnapshot) -> None:
        if snapshot.internet_gateway is None:
            name = self.names.internet_gateway
            response = self.client.ec2.create_internet_gateway(
                TagSpecifications=tag_specification("internet-gateway", self._tags(name))
            )
            snapshot.internet_gateway = tagged(
                response["InternetGateway"], "InternetGatewayId", name=name
            )
            logger.info(f"Created internet gateway {snapshot.internet_gateway.id}")

        gateway = snapshot.internet_gateway
        attachments = gateway.data.setdefault("Attachments", [])
        if not any(a.get("VpcId") == snapshot.vpc.id for a in attachments):
            self.client.ec2.attach_internet_gateway(
                InternetGatewayId=gateway.id, VpcId=snapshot.vpc.id
            )
            attachments.append({"VpcId": snapshot.vpc.id, "State": "available"})
            logger.info(f"Attached internet gateway {gateway.id} to VPC {snapshot.vpc.id}")

    def _ensure_nat_gateway(self, snapshot: ResourceSnapshot) -> bool:
        if snapshot.nat_gateway is None:
            name = self.names.nat_gateway
            response = self.client.ec2.create_nat_gateway(
                SubnetId=snapshot.public_subnet.id,
                AllocationId=snapshot.egress_address.id,
                TagSpecifications=tag_specification("natgateway", self._tags(name)),
            )
            snapshot.nat_gateway = tagged(response["NatGateway"], "NatGatewayId", name=name)
            logger.info(f"Created NAT gateway {snapshot.nat_gateway.id}")

        gateway_id = snapshot.nat_gateway.id

        def available() -> bool:
            gateways = self.client.ec2.describe_nat_gateways(NatGatewayIds=[gateway_id])["NatGateways"]
            state = gateways[0]["State"] if gateways else "pending"
            if state == "available":
                return True
            if state == "pending":
                return False
            raise ProviderError(f"NAT gateway {gateway_id} entered unexpected state '{state}'")

        return wait_for(
            available,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"NAT gateway {gateway_id}",
        )

    def ssh_enabled(self, snapshot: ResourceSnapshot) -> bool:
        """Read the persisted external SSH flag from the VPC."""
        return snapshot.vpc is not None and snapshot.vpc.tag(SSH_ENABLED_TAG) == "true"

    def set_ssh_enabled(self, snapshot: ResourceSnapshot, enabled: bool) -> None:
        """Persist the external SSH flag on the VPC."""
        value = "true" if enabled else "false"
        self.client.ec2.create_tags(
            Resources=[snapshot.vpc.id], Tags=ec2_tags({SSH_ENABLED_TAG: value})
        )
        snapshot.vpc.tags[SSH_ENABLED_TAG] = value

    def update_acls(self, snapshot: ResourceSnapshot) -> str:
        """Rewrite the node subnet rules for the current definition and SSH flag.

        Returns:
            The newly active ACL slot
        """
        rules = compute_acl_rules(
            self.definition.network, self.options.vpc_subnet, self.ssh_enabled(snapshot)
        )
        return AclRotator(AwsAclBackend(self.client, snapshot)).update_ingress_egress(rules)
