"""Hosting manager registry.

Managers are registered explicitly by environment name; ``create_manager``
builds the one matching a cluster definition.
"""

from typing import Callable

from cluster_hosting.exceptions import ValidationError
from cluster_hosting.hosting.base import HostingManager
from cluster_hosting.models.cluster import AWS, XENSERVER, ClusterDefinition

ManagerFactory = Callable[..., HostingManager]


def _aws_manager(definition: ClusterDefinition, **kwargs) -> HostingManager:
    from cluster_hosting.hosting.aws.manager import AwsHostingManager

    return AwsHostingManager(definition, **kwargs)


def _xenserver_manager(definition: ClusterDefinition, **kwargs) -> HostingManager:
    from cluster_hosting.hosting.xenserver.manager import XenServerHostingManager

    return XenServerHostingManager(definition, **kwargs)


_REGISTRY: dict[str, ManagerFactory] = {
    AWS: _aws_manager,
    XENSERVER: _xenserver_manager,
}


def register_manager(environment: str, factory: ManagerFactory) -> None:
    """Register (or replace) the factory for a hosting environment."""
    _REGISTRY[environment.lower()] = factory


def registered_environments() -> list[str]:
    return sorted(_REGISTRY)


def create_manager(definition: ClusterDefinition, **kwargs) -> HostingManager:
    """Create the hosting manager for a cluster definition.

    Args:
        definition: Cluster definition
        **kwargs: Passed to the manager constructor

    Raises:
        ValidationError: If no manager is registered for the hosting environment
    """
    environment = definition.hosting.environment
    factory = _REGISTRY.get(environment)
    if factory is None:
        raise ValidationError(
            f"No hosting manager for environment '{environment}'",
            f"Supported environments: {', '.join(registered_environments())}",
        )
    return factory(definition, **kwargs)


__all__ = ["HostingManager", "create_manager", "register_manager", "registered_environments"]
