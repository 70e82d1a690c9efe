"""AWS hosting manager."""

import threading
from enum import Flag, auto
from typing import Callable

from cluster_hosting.exceptions import (
    CapacityError,
    ConfigurationError,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from cluster_hosting.hosting.aws.client import AwsClient
from cluster_hosting.hosting.aws.discovery import ARCHITECTURE, ResourceDiscovery, locate_node_image
from cluster_hosting.hosting.aws.instances import InstanceController
from cluster_hosting.hosting.aws.load_balancer import LoadBalancerReconciler
from cluster_hosting.hosting.aws.network import NetworkReconciler
from cluster_hosting.hosting.base import HostingManager
from cluster_hosting.logging_config import get_logger
from cluster_hosting.login import LoginStore
from cluster_hosting.models.cluster import AWS, AwsHostingOptions, ClusterDefinition
from cluster_hosting.models.node import CONTROL_PLANE, WORKER, NodeDefinition
from cluster_hosting.models.resources import (
    HostingResourceAvailability,
    InstanceState,
    ResourceSnapshot,
)
from cluster_hosting.naming import ClusterResourceNames, target_group_name
from cluster_hosting.placement import assign_partitions
from cluster_hosting.ports import assign_ports
from cluster_hosting.setup import SetupController
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL, wait_for

logger = get_logger(__name__)

ADMIN_PASSWORD_KEY = "admin_password"

# Minimum (vCPUs, memory GiB) per node role
ROLE_MINIMUMS = {CONTROL_PLANE: (2, 4), WORKER: (2, 4)}


class NetworkOperations(Flag):
    """Changes applied by ``AwsHostingManager.update_network``."""

    INTERNET_ROUTING = auto()
    ENABLE_SSH = auto()
    DISABLE_SSH = auto()


class AwsHostingManager(HostingManager):
    """Provisions clusters into a dedicated VPC behind a network load balancer."""

    environment = AWS
    can_manage_router = True

    def __init__(
        self,
        definition: ClusterDefinition,
        operation_timeout: float = OPERATION_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        cancel_event: threading.Event | None = None,
        client_factory: Callable[[AwsHostingOptions], AwsClient] | None = None,
        admin_password: str | None = None,
        login_store: LoginStore | None = None,
    ):
        super().__init__(definition, operation_timeout, poll_interval, cancel_event, login_store)
        self.client_factory = client_factory or AwsClient.connect
        self.admin_password = admin_password
        self.names = ClusterResourceNames(definition.name)
        self.client: AwsClient | None = None
        self.snapshot: ResourceSnapshot | None = None

    @property
    def options(self) -> AwsHostingOptions:
        return self.definition.hosting.aws

    def _wait_args(self) -> dict:
        return {
            "operation_timeout": self.operation_timeout,
            "poll_interval": self.poll_interval,
            "cancel_event": self.cancel_event,
        }

    @property
    def network(self) -> NetworkReconciler:
        return NetworkReconciler(self.client, self.definition, **self._wait_args())

    @property
    def instances(self) -> InstanceController:
        return InstanceController(self.client, self.definition, **self._wait_args())

    @property
    def load_balancer(self) -> LoadBalancerReconciler:
        return LoadBalancerReconciler(self.client, self.definition, **self._wait_args())

    def validate(self) -> None:
        """Validate the definition and assign node addresses.

        Raises:
            ValidationError: If the definition cannot be deployed to AWS
            ConfigurationError: If generated resource names exceed AWS limits
        """
        if self.options is None:
            raise ValidationError("hosting.aws options are required for the AWS environment")

        network = self.definition.network
        if network.ssh_port_count < len(self.definition.nodes):
            raise ValidationError(
                f"External SSH port range {network.first_external_ssh_port}-"
                f"{network.last_external_ssh_port} is too small for {len(self.definition.nodes)} nodes"
            )

        partitions = {
            CONTROL_PLANE: self.placement_partitions(CONTROL_PLANE),
            WORKER: self.placement_partitions(WORKER),
        }
        for node in self.definition.nodes:
            if node.aws.placement_partition > partitions[node.role]:
                raise ValidationError(
                    f"Node '{node.name}' placement partition {node.aws.placement_partition} "
                    f"exceeds the {partitions[node.role]} {node.role} partition(s)"
                )

        self.definition.assign_node_addresses(self.options.node_network)
        self.definition.ensure_ingress_nodes()

        # Fail now rather than mid-provisioning on names AWS would reject
        self.names.load_balancer
        for rule in network.cluster_ingress_rules():
            target_group_name(self.definition.name, rule.target, rule.protocol, rule.external_port)
        target_group_name(self.definition.name, "ssh", "tcp", network.last_external_ssh_port)

    def placement_partitions(self, role: str) -> int:
        """Partition count of the placement group for a node role."""
        if role == WORKER:
            return self.options.worker_placement_partitions
        return self.network.control_plane_partitions

    def add_provisioning_steps(self, controller: SetupController) -> None:
        self.attach_cancel_event(controller)

        controller.add_global_step("AWS connect", self._connect_step)
        controller.add_global_step("verify capacity", self._verify_capacity_step)
        controller.add_global_step("discover resources", self._discover_step)
        controller.add_global_step("resource group", self._resource_group_step)
        controller.add_global_step("network", self._network_step)
        controller.add_global_step("placement groups", self._placement_step)
        controller.add_node_step("node instances", self._instance_step)
        controller.add_global_step("external SSH ports", self._ssh_ports_step)
        controller.add_global_step("load balancer", self._load_balancer_step)
        controller.add_node_step("load balancer targets", self._ssh_target_step)
        controller.add_global_step(
            "internet routing",
            lambda c: self.update_network(
                NetworkOperations.INTERNET_ROUTING | NetworkOperations.ENABLE_SSH
            ),
        )

    def add_post_provisioning_steps(self, controller: SetupController) -> None:
        self.attach_cancel_event(controller)

        if not any(node.aws.storage_volume_size_gib for node in self.definition.nodes):
            return

        controller.add_global_step("AWS connect", self._connect_step, quiet=True)
        controller.add_global_step("discover resources", self._discover_step, quiet=True)
        controller.add_node_step(
            "storage volumes",
            self._storage_volume_step,
            predicate=lambda node: bool(node.aws.storage_volume_size_gib),
        )

    def connect(self) -> None:
        """Connect to AWS and discover the cluster's resources if not already done."""
        if self.client is None:
            self.client = self.client_factory(self.options)
        if self.snapshot is None:
            self.discover()

    def discover(self) -> ResourceSnapshot:
        """Rebuild the resource snapshot from AWS."""
        self.snapshot = ResourceDiscovery(self.client, self.definition).discover()
        for node in self.definition.nodes:
            self.snapshot.instance(node.name)
        return self.snapshot

    def _connect_step(self, controller: SetupController) -> None:
        controller.set_operation_status(f"connecting to AWS region {self.options.region}")
        if self.client is None:
            self.client = self.client_factory(self.options)

        if controller.get(ADMIN_PASSWORD_KEY) is None:
            login = self.login_store.ensure(
                self.definition.name, self.options.admin_username, self.admin_password
            )
            controller.set(ADMIN_PASSWORD_KEY, login.admin_password)

    def _verify_capacity_step(self, controller: SetupController) -> None:
        """Check the region, zone, instance types and node image before creating anything."""
        ec2 = self.client.ec2

        regions = {r["RegionName"] for r in ec2.describe_regions()["Regions"]}
        if self.options.region not in regions:
            raise CapacityError(f"AWS region '{self.options.region}' is not available to this account")

        zones = {
            zone["ZoneName"]
            for zone in ec2.describe_availability_zones(
                Filters=[{"Name": "region-name", "Values": [self.options.region]}]
            )["AvailabilityZones"]
        }
        if self.options.availability_zone not in zones:
            raise CapacityError(
                f"Availability zone '{self.options.availability_zone}' is not in region "
                f"'{self.options.region}'",
                f"Available zones: {', '.join(sorted(zones))}",
            )

        controller_instances = self.instances
        requested = sorted({controller_instances.instance_type(n) for n in self.definition.nodes})

        offered = {
            offering["InstanceType"]
            for offering in ec2.paginate(
                "describe_instance_type_offerings",
                "InstanceTypeOfferings",
                LocationType="availability-zone",
                Filters=[
                    {"Name": "location", "Values": [self.options.availability_zone]},
                    {"Name": "instance-type", "Values": requested},
                ],
            )
        }
        missing = [t for t in requested if t not in offered]
        if missing:
            raise CapacityError(
                f"Instance type(s) {', '.join(missing)} are not offered in "
                f"{self.options.availability_zone}"
            )

        types = {
            info["InstanceType"]: info
            for info in ec2.paginate("describe_instance_types", "InstanceTypes", InstanceTypes=requested)
        }
        for node in self.definition.sorted_nodes:
            self._check_instance_type(node, types[controller_instances.instance_type(node)])

        if locate_node_image(self.client, self.options) is None:
            raise ConfigurationError(
                f"No {self.options.image_os} node image was found in {self.options.region}",
                "Publish a tagged node image or set hosting.aws.image_id.",
            )

    def _check_instance_type(self, node: NodeDefinition, info: dict) -> None:
        instance_type = info["InstanceType"]
        architectures = info.get("ProcessorInfo", {}).get("SupportedArchitectures", [])
        if ARCHITECTURE not in architectures:
            raise CapacityError(
                f"Node '{node.name}' instance type {instance_type} does not support {ARCHITECTURE}"
            )

        vcpus = info.get("VCpuInfo", {}).get("DefaultVCpus", 0)
        memory_gib = info.get("MemoryInfo", {}).get("SizeInMiB", 0) / 1024
        min_vcpus, min_memory_gib = ROLE_MINIMUMS[node.role]
        if vcpus < min_vcpus or memory_gib < min_memory_gib:
            raise CapacityError(
                f"Node '{node.name}' instance type {instance_type} is too small for a {node.role} node",
                f"{node.role} nodes need at least {min_vcpus} vCPUs and {min_memory_gib} GiB; "
                f"{instance_type} has {vcpus} vCPUs and {memory_gib:g} GiB.",
            )

    def _discover_step(self, controller: SetupController) -> None:
        controller.set_operation_status("discovering existing resources")
        self.discover()

    def _resource_group_step(self, controller: SetupController) -> None:
        self.network.ensure_resource_group(self.snapshot)

    def _network_step(self, controller: SetupController) -> None:
        controller.set_operation_status("configuring network")
        network = self.network
        network.ensure_addresses(self.snapshot)
        if network.reconcile(self.snapshot):
            network.update_acls(self.snapshot)

    def _placement_step(self, controller: SetupController) -> None:
        self.network.ensure_placement_groups(self.snapshot)

    def partition_for(self, node: NodeDefinition) -> int:
        """The placement partition for a node, computed over its role's nodes."""
        nodes = self.definition.control_plane_nodes if node.is_control_plane else self.definition.worker_nodes
        return assign_partitions(nodes, self.placement_partitions(node.role))[node.name]

    def _instance_step(self, controller: SetupController, node: NodeDefinition) -> None:
        controller.set_node_status(node.name, "instance: checking")
        record = self.instances.ensure(
            node, self.snapshot, self.partition_for(node), controller.get(ADMIN_PASSWORD_KEY)
        )
        state = record.state.name.lower() if record.state is not None else "unknown"
        controller.set_node_status(node.name, f"instance: {state}")

    def assign_ssh_ports(self) -> dict[str, int]:
        """Allocate and persist external SSH ports for nodes that lack one."""
        network = self.definition.network
        ports = assign_ports(
            self.definition.nodes,
            self.snapshot.ssh_ports,
            network.first_external_ssh_port,
            network.last_external_ssh_port,
        )

        instances = self.instances
        for node in self.definition.sorted_nodes:
            record = self.snapshot.instances.get(node.name)
            if record is not None and record.exists and record.ssh_port != ports[node.name]:
                instances.set_ssh_port(record, ports[node.name])
        return ports

    def _ssh_ports_step(self, controller: SetupController) -> None:
        self.assign_ssh_ports()

    def _load_balancer_step(self, controller: SetupController) -> None:
        controller.set_operation_status("configuring load balancer")
        self.load_balancer.ensure_load_balancer(self.snapshot)
        self.update_network(NetworkOperations.INTERNET_ROUTING | NetworkOperations.ENABLE_SSH)

    def _ssh_target_step(self, controller: SetupController, node: NodeDefinition) -> None:
        controller.set_node_status(node.name, "waiting for SSH target")
        self.load_balancer.wait_for_ssh_target(self.snapshot, node.name)

    def _storage_volume_step(self, controller: SetupController, node: NodeDefinition) -> None:
        controller.set_node_status(node.name, "storage volume")
        self.instances.ensure_storage_volume(node, self.snapshot.instances[node.name])

    def update_network(self, operations: NetworkOperations) -> None:
        """Apply routing and SSH access changes.

        The SSH flag is persisted on the VPC first so an interrupted update
        converges on the requested state when repeated.
        """
        network = self.network
        load_balancer = self.load_balancer

        if NetworkOperations.ENABLE_SSH in operations:
            network.set_ssh_enabled(self.snapshot, True)
        if NetworkOperations.DISABLE_SSH in operations:
            network.set_ssh_enabled(self.snapshot, False)
            load_balancer.remove_ssh_listeners(self.snapshot)

        if NetworkOperations.INTERNET_ROUTING in operations or NetworkOperations.ENABLE_SSH in operations:
            load_balancer.reconcile(self.snapshot)

        network.update_acls(self.snapshot)

        if NetworkOperations.ENABLE_SSH in operations:
            load_balancer.add_ssh_listeners(self.snapshot)

    def update_internet_routing(self) -> None:
        """Reconcile load balancer routing and ACLs with the current definition."""
        self.connect()
        operations = NetworkOperations.INTERNET_ROUTING
        if self.network.ssh_enabled(self.snapshot):
            operations |= NetworkOperations.ENABLE_SSH
        self.update_network(operations)

    def enable_internet_ssh(self) -> None:
        self.connect()
        self.update_network(NetworkOperations.ENABLE_SSH)

    def disable_internet_ssh(self) -> None:
        self.connect()
        self.update_network(NetworkOperations.DISABLE_SSH)

    def get_ssh_endpoint(self, node_name: str) -> tuple[str, int]:
        self.connect()
        record = self.snapshot.instances.get(node_name)
        if record is None or not record.exists or record.ssh_port is None:
            raise ValidationError(f"Node '{node_name}' does not have an external SSH port")
        return self._ingress_ip(), record.ssh_port

    def get_cluster_address(self) -> str | None:
        self.connect()
        return self._ingress_ip()

    def _ingress_ip(self) -> str | None:
        address = self.snapshot.ingress_address
        return address.data.get("PublicIp") if address is not None else None

    def get_resource_availability(
        self, reserve_memory_gib: int = 0, reserve_disk_gib: int = 0
    ) -> HostingResourceAvailability:
        # Capacity is checked by the verify capacity step instead
        return HostingResourceAvailability(can_be_deployed=True)

    def _live_instances(self) -> list:
        return [
            record
            for record in self.snapshot.instances.values()
            if record.exists and record.state != InstanceState.TERMINATED
        ]

    def stop(self) -> None:
        """Stop every cluster instance and wait until they are stopped."""
        self.connect()
        records = self._live_instances()
        if not records:
            return

        self.client.ec2.stop_instances(InstanceIds=[r.instance_id for r in records])
        instances = self.instances
        for record in records:
            instances.wait_for_state(record, InstanceState.STOPPED)
        logger.info(f"Stopped {len(records)} instance(s) for cluster {self.definition.name}")

    def start(self) -> None:
        """Start every cluster instance and wait until they are ready."""
        self.connect()
        records = self._live_instances()
        if not records:
            return

        self.client.ec2.start_instances(InstanceIds=[r.instance_id for r in records])
        instances = self.instances
        for record in records:
            instances.wait_until_ready(self.definition.get_node(record.node_name), record)
        logger.info(f"Started {len(records)} instance(s) for cluster {self.definition.name}")

    def remove(self) -> None:
        """Delete every resource tagged for the cluster, dependents first.

        Cancellation stops removal before the next deletion; running it again
        picks up with whatever is left.
        """
        self.connect()
        snapshot = self.snapshot
        ec2 = self.client.ec2
        elb = self.client.elb

        if snapshot.load_balancer is not None:
            arn = snapshot.load_balancer.id
            if not self._delete("load balancer", elb.delete_load_balancer, LoadBalancerArn=arn):
                return
            if not self._wait_deleted("load balancer", lambda: self._load_balancer_gone(arn)):
                return

        for group in snapshot.target_groups.values():
            deleted = self._delete(
                f"target group {group.name}", elb.delete_target_group, TargetGroupArn=group.id
            )
            if not deleted:
                return

        records = self._live_instances()
        if records:
            ec2.terminate_instances(InstanceIds=[r.instance_id for r in records])
            instances = self.instances
            for record in records:
                if not instances.wait_for_state(record, InstanceState.TERMINATED):
                    return

        if snapshot.nat_gateway is not None:
            gateway_id = snapshot.nat_gateway.id
            if not self._delete("NAT gateway", ec2.delete_nat_gateway, NatGatewayId=gateway_id):
                return
            if not self._wait_deleted("NAT gateway", lambda: self._nat_gateway_gone(gateway_id)):
                return

        deletions = []
        for address in (snapshot.ingress_address, snapshot.egress_address):
            if address is not None:
                deletions.append(
                    (f"address {address.name}", ec2.release_address, {"AllocationId": address.id})
                )

        if snapshot.internet_gateway is not None and snapshot.vpc is not None:
            deletions.append(
                (
                    "internet gateway attachment",
                    ec2.detach_internet_gateway,
                    {"InternetGatewayId": snapshot.internet_gateway.id, "VpcId": snapshot.vpc.id},
                )
            )
        if snapshot.internet_gateway is not None:
            deletions.append(
                (
                    "internet gateway",
                    ec2.delete_internet_gateway,
                    {"InternetGatewayId": snapshot.internet_gateway.id},
                )
            )

        for subnet in (snapshot.public_subnet, snapshot.node_subnet):
            if subnet is not None:
                deletions.append((f"subnet {subnet.name}", ec2.delete_subnet, {"SubnetId": subnet.id}))
        for table in (snapshot.public_route_table, snapshot.node_route_table):
            if table is not None:
                deletions.append(
                    (f"route table {table.name}", ec2.delete_route_table, {"RouteTableId": table.id})
                )
        for acl in snapshot.network_acls.values():
            deletions.append((f"network ACL {acl.name}", ec2.delete_network_acl, {"NetworkAclId": acl.id}))
        if snapshot.security_group is not None:
            deletions.append(
                ("security group", ec2.delete_security_group, {"GroupId": snapshot.security_group.id})
            )
        if snapshot.vpc is not None:
            deletions.append(("VPC", ec2.delete_vpc, {"VpcId": snapshot.vpc.id}))

        for group in (snapshot.control_plane_placement_group, snapshot.worker_placement_group):
            if group is not None:
                deletions.append(
                    (f"placement group {group.name}", ec2.delete_placement_group, {"GroupName": group.name})
                )

        if snapshot.resource_group is not None:
            deletions.append(
                (
                    "resource group",
                    self.client.resource_groups.delete_group,
                    {"Group": snapshot.resource_group.name},
                )
            )

        for description, operation, kwargs in deletions:
            if not self._delete(description, operation, **kwargs):
                return

        self.login_store.remove(self.definition.name)
        logger.info(f"Removed cluster {self.definition.name}")
        self.snapshot = None

    def _delete(self, description: str, operation: Callable, **kwargs) -> bool:
        """Run a delete call, retrying while dependents are still going away.

        Returns:
            True once deleted, False when cancelled first
        """

        def deleted() -> bool:
            try:
                operation(**kwargs)
            except TransientProviderError as e:
                logger.debug(f"Deleting {description} deferred: {e.message}")
                return False
            except ProviderError as e:
                if e.code and ("NotFound" in e.code or e.code.endswith(".Unknown")):
                    return True
                raise
            return True

        if not wait_for(
            deleted,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"deletion of {description}",
        ):
            logger.warning(f"Deletion of {description} cancelled")
            return False
        logger.info(f"Deleted {description}")
        return True

    def _wait_deleted(self, description: str, gone: Callable[[], bool]) -> bool:
        return wait_for(
            gone,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"{description} to be deleted",
        )

    def _load_balancer_gone(self, arn: str) -> bool:
        try:
            return not self.client.elb.describe_load_balancers(LoadBalancerArns=[arn])["LoadBalancers"]
        except ProviderError as e:
            if e.code == "LoadBalancerNotFound":
                return True
            raise

    def _nat_gateway_gone(self, gateway_id: str) -> bool:
        gateways = self.client.ec2.describe_nat_gateways(NatGatewayIds=[gateway_id])["NatGateways"]
        return not gateways or gateways[0]["State"] == "deleted"
