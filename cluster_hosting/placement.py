"""Placement partition allocation for hardware fault isolation."""

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.node import NodeDefinition

logger = get_logger(__name__)


def assign_partitions(nodes: list[NodeDefinition], partition_count: int) -> dict[str, int]:
    """Assign nodes of one role to 1-based placement partitions.

    Nodes with an explicit ``aws.placement_partition`` keep it and are counted
    first.  The remaining nodes are taken in name order and each is placed in
    the partition with the fewest nodes so far, lowest partition index first
    on ties.

    Args:
        nodes: Nodes of a single role
        partition_count: Number of partitions in the role's placement group

    Returns:
        Mapping of node name to partition number

    Raises:
        ConfigurationError: If partition_count is not positive or an override exceeds it
    """
    if partition_count < 1:
        raise ConfigurationError(f"Partition count must be at least 1, got {partition_count}")

    ordered = sorted(nodes, key=lambda n: n.name)
    counts = [0] * partition_count
    assignments: dict[str, int] = {}

    for node in ordered:
        override = node.aws.placement_partition
        if override <= 0:
            continue
        if override > partition_count:
            raise ConfigurationError(
                f"Node '{node.name}' requests placement partition {override}",
                f"The placement group only has {partition_count} partition(s).",
            )
        assignments[node.name] = override
        counts[override - 1] += 1

    for node in ordered:
        if node.name in assignments:
            continue
        index = min(range(partition_count), key=lambda i: counts[i])
        counts[index] += 1
        assignments[node.name] = index + 1

    logger.debug(f"Partition assignments across {partition_count} partition(s): {assignments}")
    return assignments
