"""The contract every hosting manager implements."""

import threading
from abc import ABC, abstractmethod

from cluster_hosting.login import LoginStore
from cluster_hosting.models.cluster import ClusterDefinition
from cluster_hosting.models.resources import HostingResourceAvailability
from cluster_hosting.setup import SetupController
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL


class HostingManager(ABC):
    """Provisions and manages the infrastructure hosting one cluster.

    Provisioning is expressed as steps added to a SetupController; every step
    must be safe to run again after an interruption.
    """

    environment: str = ""
    can_manage_router = False

    def __init__(
        self,
        definition: ClusterDefinition,
        operation_timeout: float = OPERATION_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        cancel_event: threading.Event | None = None,
        login_store: LoginStore | None = None,
    ):
        self.definition = definition
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event or threading.Event()
        self.login_store = login_store or LoginStore()

    @abstractmethod
    def validate(self) -> None:
        """Validate the cluster definition for this environment.

        Raises:
            ValidationError: If the definition cannot be hosted here
        """

    @abstractmethod
    def add_provisioning_steps(self, controller: SetupController) -> None:
        """Add the steps that create or reconcile the cluster infrastructure."""

    def add_post_provisioning_steps(self, controller: SetupController) -> None:
        """Add steps that run after the nodes have been prepared."""

    @abstractmethod
    def get_ssh_endpoint(self, node_name: str) -> tuple[str, int]:
        """Return the (address, port) used to reach a node's SSH server."""

    @abstractmethod
    def get_cluster_address(self) -> str | None:
        """Return the address clients use to reach the cluster, if there is one."""

    @abstractmethod
    def start(self) -> None:
        """Start every node of a stopped cluster."""

    @abstractmethod
    def stop(self) -> None:
        """Stop every node without removing anything."""

    @abstractmethod
    def remove(self) -> None:
        """Remove every resource created for the cluster."""

    @abstractmethod
    def get_resource_availability(
        self, reserve_memory_gib: int = 0, reserve_disk_gib: int = 0
    ) -> HostingResourceAvailability:
        """Report whether the environment has room for the cluster."""

    def enable_internet_ssh(self) -> None:
        """Open external SSH access to the nodes."""
        raise NotImplementedError(f"{self.environment} does not manage internet SSH access")

    def disable_internet_ssh(self) -> None:
        """Close external SSH access to the nodes."""
        raise NotImplementedError(f"{self.environment} does not manage internet SSH access")

    def attach_cancel_event(self, controller: SetupController) -> None:
        """Share the controller's cancellation flag with this manager."""
        self.cancel_event = controller.cancel_event
