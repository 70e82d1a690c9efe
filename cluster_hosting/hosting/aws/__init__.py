"""AWS hosting environment."""

from cluster_hosting.hosting.aws.manager import AwsHostingManager, NetworkOperations

__all__ = ["AwsHostingManager", "NetworkOperations"]
