"""XenServer hosting environment."""

from cluster_hosting.hosting.xenserver.manager import XenServerHostingManager

__all__ = ["XenServerHostingManager"]
