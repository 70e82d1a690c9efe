"""Instance lifecycle for cluster nodes on AWS.

Instances move through Pending -> Running and, when stopped, Stopping ->
Stopped and back to Pending on restart.  ``InstanceController.ensure`` drives
a node's instance to Running with healthy system status from whatever state a
previous, possibly interrupted, run left it in.
"""

import threading
from ipaddress import ip_network

from cluster_hosting.exceptions import ConfigurationError, InstanceStateError
from cluster_hosting.hosting.aws.client import AwsClient
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import ClusterDefinition
from cluster_hosting.models.node import NodeDefinition
from cluster_hosting.models.resources import InstanceRecord, InstanceState, ResourceSnapshot
from cluster_hosting.naming import (
    CLUSTER_TAG,
    NAME_TAG,
    NODE_NAME_TAG,
    NODE_SSH_PORT_TAG,
    ClusterResourceNames,
    build_tags,
    ec2_tags,
    tag_specification,
)
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL, wait_for

logger = get_logger(__name__)

OS_DEVICE = "/dev/sda1"
DATA_DEVICE = "/dev/sdb"
STORAGE_DEVICE = "/dev/sdf"

AWS_NAMESERVER = "169.254.169.253"
BOOT_SENTINEL_DIR = "/etc/cluster-hosting/boot"


def build_boot_script(
    node: NodeDefinition, definition: ClusterDefinition, admin_username: str, admin_password: str
) -> str:
    """Build the first-boot user data for a node.

    The script sets the administrator password, writes a static netplan
    configuration and stops cloud-init from managing the network.  It runs on
    every boot as a boothook, so a sentinel file limits it to the first one.
    """
    subnet = ip_network(definition.hosting.aws.node_subnet)
    gateway = subnet.network_address + 1
    nameservers = ", ".join(definition.network.nameservers or [AWS_NAMESERVER])

    return f"""#cloud-boothook
#!/bin/bash

mkdir -p {BOOT_SENTINEL_DIR}

if [ -f {BOOT_SENTINEL_DIR}/configured ]; then
    exit 0
fi

touch {BOOT_SENTINEL_DIR}/configured
chmod 644 {BOOT_SENTINEL_DIR}/configured

echo '{admin_username}:{admin_password}' | chpasswd

interface=$(ls /sys/class/net | grep -v '^lo$' | head -n 1)

rm -f /etc/netplan/*.yaml

cat <<EOF > /etc/netplan/50-static.yaml
network:
  version: 2
  ethernets:
    $interface:
      dhcp4: false
      dhcp6: false
      addresses: [{node.address}/{subnet.prefixlen}]
      routes:
        - to: default
          via: {gateway}
      nameservers:
        addresses: [{nameservers}]
EOF
chmod 600 /etc/netplan/50-static.yaml

cat <<EOF > /etc/cloud/cloud.cfg.d/99-disable-network-config.cfg
network: {{config: disabled}}
EOF

netplan apply
"""


class InstanceController:
    """Creates, starts, resizes and waits for node instances."""

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

    def instance_type(self, node: NodeDefinition) -> str:
        return node.aws.instance_type or self.options.default_instance_type

    def ensure(
        self,
        node: NodeDefinition,
        snapshot: ResourceSnapshot,
        partition: int,
        admin_password: str,
    ) -> InstanceRecord:
        """Bring a node's instance to Running with healthy system status.

        Args:
            node: Node definition
            snapshot: Current resources; only this node's record is modified
            partition: Placement partition for a new instance
            admin_password: Administrator password set by the first-boot script

        Returns:
            The node's instance record

        Raises:
            InstanceStateError: If the instance is shutting down, stopping or terminated
            OperationTimeoutError: If the instance does not become ready in time
        """
        record = snapshot.instance(node.name)

        if not record.exists:
            self._create(node, record, snapshot, partition, admin_password)
        elif record.instance_type and record.instance_type != self.instance_type(node):
            self._resize(node, record)

        if not self.wait_until_ready(node, record):
            return record

        self.tag_volumes(node, record)
        return record

    def _create(
        self,
        node: NodeDefinition,
        record: InstanceRecord,
        snapshot: ResourceSnapshot,
        partition: int,
        admin_password: str,
    ) -> None:
        if snapshot.node_image_id is None:
            raise ConfigurationError(
                "No node image is available",
                f"Publish a node image tagged for {self.options.image_os} or set hosting.aws.image_id.",
            )

        placement_group = (
            snapshot.control_plane_placement_group
            if node.is_control_plane
            else snapshot.worker_placement_group
        )
        name = self.names.node(node.name)
        tags = build_tags(name, self.definition.name, self.definition.purpose, {NODE_NAME_TAG: node.name})
        volume_type = node.aws.volume_type or self.options.default_volume_type

        response = self.client.ec2.run_instances(
            ImageId=snapshot.node_image_id,
            InstanceType=self.instance_type(node),
            MinCount=1,
            MaxCount=1,
            SubnetId=snapshot.node_subnet.id,
            PrivateIpAddress=str(node.address),
            SecurityGroupIds=[snapshot.security_group.id],
            Placement={
                "AvailabilityZone": self.options.availability_zone,
                "GroupName": placement_group.name,
                "PartitionNumber": partition,
            },
            BlockDeviceMappings=[
                {
                    "DeviceName": OS_DEVICE,
                    "Ebs": {
                        "VolumeType": volume_type,
                        "VolumeSize": node.aws.volume_size_gib or self.options.default_volume_size_gib,
                        "DeleteOnTermination": True,
                    },
                },
                {
                    "DeviceName": DATA_DEVICE,
                    "Ebs": {
                        "VolumeType": volume_type,
                        "VolumeSize": node.aws.data_volume_size_gib
                        or self.options.default_data_volume_size_gib,
                        "DeleteOnTermination": True,
                    },
                },
            ],
            UserData=build_boot_script(node, self.definition, self.options.admin_username, admin_password),
            TagSpecifications=tag_specification("instance", tags),
        )

        instance = response["Instances"][0]
        record.instance_id = instance["InstanceId"]
        record.state = InstanceState.from_code(instance["State"]["Code"])
        record.instance_type = instance.get("InstanceType", self.instance_type(node))
        record.data = instance
        logger.info(
            f"Created instance {record.instance_id} for node {node.name} "
            f"({record.instance_type}, partition {partition})"
        )

    def _describe_status(self, instance_id: str) -> dict | None:
        statuses = self.client.ec2.describe_instance_status(
            InstanceIds=[instance_id], IncludeAllInstances=True
        )["InstanceStatuses"]
        return statuses[0] if statuses else None

    def wait_until_ready(self, node: NodeDefinition, record: InstanceRecord) -> bool:
        """Poll until the instance runs with healthy system status.

        A stopped instance is started rather than treated as an error.

        Returns:
            True when ready, False when cancelled
        """

        def ready() -> bool:
            status = self._describe_status(record.instance_id)
            if status is None:
                # Newly created instances can take a moment to show up
                return False

            state = InstanceState.from_code(status["InstanceState"]["Code"])
            record.state = state

            if state.is_unexpected:
                raise InstanceStateError(
                    f"Instance {record.instance_id} for node {node.name} is {state.name.lower()}",
                    "The instance was changed outside of provisioning; remove or restore it and retry.",
                )
            if state.is_stopped:
                logger.info(f"Starting stopped instance {record.instance_id} for node {node.name}")
                self.client.ec2.start_instances(InstanceIds=[record.instance_id])
                return False
            if state.is_running:
                return status.get("SystemStatus", {}).get("Status") == "ok"
            return False

        return wait_for(
            ready,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"instance for node {node.name}",
        )

    def wait_for_state(self, record: InstanceRecord, target: InstanceState) -> bool:
        """Poll until the instance reports the target state."""

        def reached() -> bool:
            status = self._describe_status(record.instance_id)
            if status is None:
                return False
            record.state = InstanceState.from_code(status["InstanceState"]["Code"])
            return record.state == target

        return wait_for(
            reached,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"instance {record.instance_id} to be {target.name.lower()}",
        )

    def _resize(self, node: NodeDefinition, record: InstanceRecord) -> None:
        """Stop the instance, change its type and start it again."""
        instance_type = self.instance_type(node)
        logger.info(
            f"Resizing instance {record.instance_id} for node {node.name} "
            f"from {record.instance_type} to {instance_type}"
        )

        status = self._describe_status(record.instance_id)
        state = InstanceState.from_code(status["InstanceState"]["Code"]) if status else record.state

        if state is not None and not state.is_stopped:
            if state.is_unexpected and state != InstanceState.STOPPING:
                raise InstanceStateError(
                    f"Cannot resize instance {record.instance_id} for node {node.name} "
                    f"while it is {state.name.lower()}"
                )
            if state != InstanceState.STOPPING:
                self.client.ec2.stop_instances(InstanceIds=[record.instance_id])
            if not self.wait_for_state(record, InstanceState.STOPPED):
                return

        self.client.ec2.modify_instance_attribute(
            InstanceId=record.instance_id, InstanceType={"Value": instance_type}
        )
        record.instance_type = instance_type
        self.client.ec2.start_instances(InstanceIds=[record.instance_id])

    def tag_volumes(self, node: NodeDefinition, record: InstanceRecord) -> None:
        """Name the OS and data volumes after the node."""
        reservations = self.client.ec2.describe_instances(InstanceIds=[record.instance_id])[
            "Reservations"
        ]
        instance = reservations[0]["Instances"][0]
        record.data = instance
        record.volume_ids = {
            mapping["DeviceName"]: mapping["Ebs"]["VolumeId"]
            for mapping in instance.get("BlockDeviceMappings", [])
            if "Ebs" in mapping
        }

        for device, kind in ((OS_DEVICE, "os"), (DATA_DEVICE, "data")):
            volume_id = record.volume_ids.get(device)
            if volume_id is None:
                continue
            tags = build_tags(
                self.names.volume(node.name, kind),
                self.definition.name,
                self.definition.purpose,
                {NODE_NAME_TAG: node.name},
            )
            self.client.ec2.create_tags(Resources=[volume_id], Tags=ec2_tags(tags))

    def ensure_storage_volume(self, node: NodeDefinition, record: InstanceRecord) -> str | None:
        """Create and attach the node's extra storage volume when it asks for one.

        The volume is added after the node has been prepared so the data disk
        is already partitioned and the storage disk is the only raw one.

        Returns:
            The volume id, or None when the node has no storage volume
        """
        size = node.aws.storage_volume_size_gib
        if not size:
            return None

        name = self.names.volume(node.name, "storage")
        volumes = self.client.ec2.paginate(
            "describe_volumes",
            "Volumes",
            Filters=[
                {"Name": f"tag:{CLUSTER_TAG}", "Values": [self.definition.name]},
                {"Name": f"tag:{NAME_TAG}", "Values": [name]},
            ],
        )
        live = [v for v in volumes if v.get("State") not in ("deleting", "deleted")]

        if live:
            volume_id = live[0]["VolumeId"]
            attachments = live[0].get("Attachments", [])
        else:
            tags = build_tags(name, self.definition.name, self.definition.purpose, {NODE_NAME_TAG: node.name})
            response = self.client.ec2.create_volume(
                AvailabilityZone=self.options.availability_zone,
                Size=size,
                VolumeType=node.aws.volume_type or self.options.default_volume_type,
                TagSpecifications=tag_specification("volume", tags),
            )
            volume_id = response["VolumeId"]
            attachments = []
            logger.info(f"Created storage volume {volume_id} for node {node.name}")

        if not self._wait_for_volume(volume_id, ("available", "in-use")):
            return volume_id

        if not any(a.get("InstanceId") == record.instance_id for a in attachments):
            self.client.ec2.attach_volume(
                Device=STORAGE_DEVICE, InstanceId=record.instance_id, VolumeId=volume_id
            )
            logger.info(f"Attached storage volume {volume_id} to node {node.name}")
            if not self._wait_for_volume(volume_id, ("in-use",)):
                return volume_id

        self.client.ec2.modify_instance_attribute(
            InstanceId=record.instance_id,
            BlockDeviceMappings=[{"DeviceName": STORAGE_DEVICE, "Ebs": {"DeleteOnTermination": True}}],
        )
        record.volume_ids[STORAGE_DEVICE] = volume_id
        return volume_id

    def _wait_for_volume(self, volume_id: str, states: tuple[str, ...]) -> bool:
        def ready() -> bool:
            volumes = self.client.ec2.describe_volumes(VolumeIds=[volume_id])["Volumes"]
            return bool(volumes) and volumes[0]["State"] in states

        return wait_for(
            ready,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"volume {volume_id}",
        )

    def set_ssh_port(self, record: InstanceRecord, port: int) -> None:
        """Persist a node's external SSH port on its instance."""
        self.client.ec2.create_tags(
            Resources=[record.instance_id], Tags=ec2_tags({NODE_SSH_PORT_TAG: str(port)})
        )
        record.ssh_port = port
        logger.info(f"Node {record.node_name} external SSH port is {port}")
