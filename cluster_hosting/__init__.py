"""Cluster hosting managers for cloud and hypervisor infrastructure."""

__version__ = "0.1.0"
