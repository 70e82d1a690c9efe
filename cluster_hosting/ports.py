"""External SSH port allocation."""

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.node import NodeDefinition

logger = get_logger(__name__)


def assign_ports(
    nodes: list[NodeDefinition],
    existing: dict[str, int],
    first_port: int,
    last_port: int,
) -> dict[str, int]:
    """Assign a stable external SSH port to every node.

    Existing allocations (read back from instance tags) are kept as-is.  The
    remaining nodes are processed control-plane first then workers, each group
    sorted by name, and take the lowest free ports in the range.

    Args:
        nodes: All cluster nodes
        existing: Persisted allocations keyed by node name
        first_port: First port of the range (inclusive)
        last_port: Last port of the range (inclusive)

    Returns:
        Mapping of node name to port for every node

    Raises:
        ConfigurationError: If the range has too few free ports
    """
    node_names = {node.name for node in nodes}
    allocated = {name: port for name, port in existing.items() if name in node_names}
    used = set(allocated.values())
    free = [port for port in range(first_port, last_port + 1) if port not in used]

    control_plane = sorted((n for n in nodes if n.is_control_plane), key=lambda n: n.name)
    workers = sorted((n for n in nodes if not n.is_control_plane), key=lambda n: n.name)
    pending = [node for node in control_plane + workers if node.name not in allocated]

    if len(pending) > len(free):
        raise ConfigurationError(
            f"External SSH port range {first_port}-{last_port} is exhausted",
            f"{len(pending)} node(s) need a port but only {len(free)} are free.",
        )

    for node, port in zip(pending, free):
        allocated[node.name] = port
        logger.debug(f"Assigned external SSH port {port} to node {node.name}")

    return allocated
