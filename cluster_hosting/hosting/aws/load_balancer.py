"""Network load balancer, target group and listener reconciliation."""

import threading

from cluster_hosting.exceptions import ConflictError, ProviderError
from cluster_hosting.hosting.aws.client import AwsClient
from cluster_hosting.hosting.aws.discovery import tagged
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import ClusterDefinition
from cluster_hosting.models.network import TARGET_CONTROL_PLANE, HealthCheckOptions
from cluster_hosting.models.resources import ResourceSnapshot, TaggedResource, TargetGroupBinding
from cluster_hosting.naming import (
    ClusterResourceNames,
    build_tags,
    elb_tags,
    qualified_name,
    target_group_name,
)
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL, wait_for

logger = get_logger(__name__)

SSH_PORT = 22
SSH_TARGET = "ssh"


class LoadBalancerReconciler:
    """Keeps the load balancer's target groups and listeners in line with the definition."""

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
        self.network = definition.network
        self.names = ClusterResourceNames(definition.name)
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event

    def _tags(self, name: str) -> dict[str, str]:
        return build_tags(name, self.definition.name, self.definition.purpose)

    def ensure_load_balancer(self, snapshot: ResourceSnapshot) -> TaggedResource:
        """Create the internet-facing network load balancer on the ingress address."""
        if snapshot.load_balancer is None:
            name = self.names.load_balancer
            response = self.client.elb.create_load_balancer(
                Name=name,
                Type="network",
                Scheme="internet-facing",
                IpAddressType="ipv4",
                SubnetMappings=[
                    {
                        "SubnetId": snapshot.public_subnet.id,
                        "AllocationId": snapshot.ingress_address.id,
                    }
                ],
                Tags=elb_tags(self._tags(qualified_name(self.definition.name, "elb"))),
            )
            balancer = response["LoadBalancers"][0]
            snapshot.load_balancer = TaggedResource(
                id=balancer["LoadBalancerArn"], name=name, data=balancer
            )
            logger.info(f"Created load balancer {name}")

        arn = snapshot.load_balancer.id

        def active() -> bool:
            balancers = self.client.elb.describe_load_balancers(LoadBalancerArns=[arn])["LoadBalancers"]
            state = balancers[0]["State"]["Code"] if balancers else "provisioning"
            if state == "active":
                return True
            if state == "provisioning":
                return False
            raise ProviderError(f"Load balancer {snapshot.load_balancer.name} is {state}")

        wait_for(
            active,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"load balancer {snapshot.load_balancer.name}",
        )
        return snapshot.load_balancer

    def _ensure_target_group(
        self,
        snapshot: ResourceSnapshot,
        name: str,
        port: int,
        health_check: HealthCheckOptions,
    ) -> TaggedResource:
        group = snapshot.target_groups.get(name)
        if group is not None:
            return group

        # Target group names are unique per account, not per VPC
        try:
            existing = self.client.elb.describe_target_groups(Names=[name])["TargetGroups"]
        except ProviderError as e:
            if e.code != "TargetGroupNotFound":
                raise
            existing = []
        if existing:
            raise ConflictError(
                f"Target group '{name}' already exists in VPC {existing[0].get('VpcId')}",
                "Cluster names that differ only by '.', '_' or '-' produce the same AWS names.",
            )

        response = self.client.elb.create_target_group(
            Name=name,
            Protocol="TCP",
            Port=port,
            VpcId=snapshot.vpc.id,
            TargetType="instance",
            HealthCheckEnabled=True,
            HealthCheckProtocol="TCP",
            HealthCheckIntervalSeconds=health_check.interval_seconds,
            HealthyThresholdCount=health_check.threshold_count,
            UnhealthyThresholdCount=health_check.threshold_count,
            Tags=elb_tags(self._tags(qualified_name(self.definition.name, name))),
        )
        group = tagged(response["TargetGroups"][0], "TargetGroupArn", name=name)
        snapshot.target_groups[name] = group
        logger.info(f"Created target group {name} forwarding to port {port}")
        return group

    def _register(self, group: TaggedResource, instance_ids: list[str]) -> None:
        """Make the given instances the group's only targets."""
        descriptions = self.client.elb.describe_target_health(TargetGroupArn=group.id)[
            "TargetHealthDescriptions"
        ]
        current = {
            d["Target"]["Id"] for d in descriptions if d["TargetHealth"].get("State") != "draining"
        }

        stale = sorted(current - set(instance_ids))
        if stale:
            self.client.elb.deregister_targets(
                TargetGroupArn=group.id, Targets=[{"Id": instance_id} for instance_id in stale]
            )
            logger.info(f"Deregistered {', '.join(stale)} from {group.name}")

        missing = [instance_id for instance_id in instance_ids if instance_id not in current]
        if missing:
            self.client.elb.register_targets(
                TargetGroupArn=group.id, Targets=[{"Id": instance_id} for instance_id in missing]
            )

    def _listeners(self, snapshot: ResourceSnapshot) -> dict[int, dict]:
        listeners = self.client.elb.paginate(
            "describe_listeners", "Listeners", LoadBalancerArn=snapshot.load_balancer.id
        )
        return {listener["Port"]: listener for listener in listeners}

    def _create_listener(self, snapshot: ResourceSnapshot, port: int, group: TaggedResource) -> None:
        self.client.elb.create_listener(
            LoadBalancerArn=snapshot.load_balancer.id,
            Port=port,
            Protocol="TCP",
            DefaultActions=[{"Type": "forward", "TargetGroupArn": group.id}],
        )
        logger.info(f"Created listener on port {port} forwarding to {group.name}")

    def ssh_target_group_name(self, port: int) -> str:
        return target_group_name(self.definition.name, SSH_TARGET, "tcp", port)

    def reconcile(self, snapshot: ResourceSnapshot) -> list[TargetGroupBinding]:
        """Ensure target groups and listeners for every ingress rule.

        Target membership is recomputed on every pass, so added, replaced
        and no longer ingress nodes are picked up.  Listeners outside the SSH
        port range without a matching rule are removed.

        Returns:
            The rule bindings
        """
        instances = {
            name: record.instance_id
            for name, record in snapshot.instances.items()
            if record.exists
        }
        control_plane = [instances[n.name] for n in self.definition.control_plane_nodes if n.name in instances]
        ingress = [instances[n.name] for n in self.definition.sorted_nodes if n.ingress and n.name in instances]

        bindings = []
        for rule in self.network.cluster_ingress_rules():
            name = target_group_name(self.definition.name, rule.target, rule.protocol, rule.external_port)
            health_check = rule.health_check or self.network.ingress_health_check
            group = self._ensure_target_group(snapshot, name, rule.node_port, health_check)
            self._register(group, control_plane if rule.target == TARGET_CONTROL_PLANE else ingress)
            bindings.append(
                TargetGroupBinding(
                    rule_name=rule.name,
                    target_group_name=name,
                    external_port=rule.external_port,
                    target_group_arn=group.id,
                )
            )

        for node in self.definition.sorted_nodes:
            record = snapshot.instances.get(node.name)
            if record is None or not record.exists or record.ssh_port is None:
                continue
            group = self._ensure_target_group(
                snapshot,
                self.ssh_target_group_name(record.ssh_port),
                SSH_PORT,
                self.network.ingress_health_check,
            )
            self._register(group, [record.instance_id])

        listeners = self._listeners(snapshot)
        for binding in bindings:
            listener = listeners.get(binding.external_port)
            if listener is None:
                self._create_listener(
                    snapshot, binding.external_port, snapshot.target_groups[binding.target_group_name]
                )
            else:
                binding.listener_arn = listener["ListenerArn"]

        rule_ports = {binding.external_port for binding in bindings}
        for port, listener in listeners.items():
            if self.network.is_external_ssh_port(port) or port in rule_ports:
                continue
            self.client.elb.delete_listener(ListenerArn=listener["ListenerArn"])
            logger.info(f"Removed listener on port {port} with no matching ingress rule")

        return bindings

    def add_ssh_listeners(self, snapshot: ResourceSnapshot) -> None:
        """Forward each node's external SSH port to its SSH target group."""
        listeners = self._listeners(snapshot)
        for record in snapshot.instances.values():
            if not record.exists or record.ssh_port is None or record.ssh_port in listeners:
                continue
            group = snapshot.target_groups[self.ssh_target_group_name(record.ssh_port)]
            self._create_listener(snapshot, record.ssh_port, group)

    def remove_ssh_listeners(self, snapshot: ResourceSnapshot) -> None:
        """Remove every listener inside the external SSH port range."""
        for port, listener in self._listeners(snapshot).items():
            if self.network.is_external_ssh_port(port):
                self.client.elb.delete_listener(ListenerArn=listener["ListenerArn"])
                logger.info(f"Removed SSH listener on port {port}")

    def wait_for_ssh_target(self, snapshot: ResourceSnapshot, node_name: str) -> bool:
        """Wait until a node's SSH target group reports it healthy.

        Returns:
            True when healthy, False when cancelled
        """
        record = snapshot.instances[node_name]
        group = snapshot.target_groups[self.ssh_target_group_name(record.ssh_port)]

        def healthy() -> bool:
            descriptions = self.client.elb.describe_target_health(
                TargetGroupArn=group.id, Targets=[{"Id": record.instance_id}]
            )["TargetHealthDescriptions"]
            state = descriptions[0]["TargetHealth"]["State"] if descriptions else "initial"
            if state == "healthy":
                return True
            if state in ("initial", "unhealthy"):
                return False
            raise ProviderError(f"SSH target for node {node_name} is {state}")

        return wait_for(
            healthy,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"SSH target for node {node_name}",
        )
