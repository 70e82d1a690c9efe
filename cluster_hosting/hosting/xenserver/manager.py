"""XenServer hosting manager.

Each node is a VM on the XenServer host named by ``node.vm.host``.  Commands
against one host are serialized by that host's lock; different hosts are
worked on in parallel.
"""

import os
import threading
from ipaddress import ip_network
from pathlib import Path
from typing import Callable

from cluster_hosting.exceptions import ConflictError, ProviderError, ValidationError
from cluster_hosting.hosting.base import HostingManager
from cluster_hosting.hosting.xenserver.client import GIB, XenClient, download_template, parse_map
from cluster_hosting.logging_config import get_logger
from cluster_hosting.login import DEFAULT_ADMIN_USERNAME, LoginStore
from cluster_hosting.models.cluster import XENSERVER, ClusterDefinition, XenServerHostingOptions
from cluster_hosting.models.node import NodeDefinition
from cluster_hosting.models.resources import HostingResourceAvailability
from cluster_hosting.naming import CLUSTER_TAG
from cluster_hosting.setup import SetupController
from cluster_hosting.waiting import OPERATION_TIMEOUT, POLL_INTERVAL, wait_for

logger = get_logger(__name__)

SSH_PORT = 22
DEFAULT_NAMESERVERS = ["8.8.8.8", "8.8.4.4"]
DEFAULT_TEMPLATE_FOLDER = Path.home() / ".cluster-hosting" / "templates"
ADMIN_PASSWORD_KEY = "admin_password"
TEMPLATE_PATH_KEY = "template_path"

POWER_RUNNING = "running"
POWER_HALTED = "halted"

STAGING_SUFFIX = ".creating"


class XenServerHostingManager(HostingManager):
    """Provisions cluster nodes as VMs on XenServer hosts."""

    environment = XENSERVER

    def __init__(
        self,
        definition: ClusterDefinition,
        operation_timeout: float = OPERATION_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        cancel_event: threading.Event | None = None,
        client_factory: Callable[..., XenClient] = XenClient,
        admin_password: str | None = None,
        template_folder: Path = DEFAULT_TEMPLATE_FOLDER,
        login_store: LoginStore | None = None,
    ):
        super().__init__(definition, operation_timeout, poll_interval, cancel_event, login_store)
        self.client_factory = client_factory
        self.admin_password = admin_password
        self.template_folder = Path(template_folder)
        self._clients: dict[str, XenClient] = {}
        self._clients_lock = threading.Lock()

    @property
    def options(self) -> XenServerHostingOptions:
        return self.definition.hosting.xenserver

    def vm_name(self, node: NodeDefinition) -> str:
        return f"{self.definition.hosting.vm_name_prefix}{node.name}"

    def client(self, host_name: str) -> XenClient:
        """The client for a host, created on first use and shared afterwards."""
        with self._clients_lock:
            client = self._clients.get(host_name)
            if client is None:
                client = self.client_factory(self.options.get_host(host_name))
                self._clients[host_name] = client
            return client

    def hosted_nodes(self, host_name: str) -> list[NodeDefinition]:
        return [n for n in self.definition.sorted_nodes if n.vm.host == host_name]

    def _owned(self, vm: dict[str, str]) -> bool:
        return parse_map(vm.get("other-config", "")).get(CLUSTER_TAG) == self.definition.name

    def validate(self) -> None:
        """Check that every node is placed on a known host and assign node addresses.

        Raises:
            ValidationError: If a node names no host or an unknown one
        """
        if self.options is None or not self.options.hosts:
            raise ValidationError("hosting.xenserver must list at least one host")

        for node in self.definition.sorted_nodes:
            if not node.vm.host:
                raise ValidationError(f"Node '{node.name}' must set vm.host for XenServer hosting")
            if self.options.get_host(node.vm.host) is None:
                raise ValidationError(
                    f"Node '{node.name}' references unknown XenServer host '{node.vm.host}'",
                    f"Known hosts: {', '.join(h.name for h in self.options.hosts)}",
                )

        self.definition.assign_node_addresses(ip_network(self.options.node_subnet))
        self.definition.ensure_ingress_nodes()

    def add_provisioning_steps(self, controller: SetupController) -> None:
        self.attach_cancel_event(controller)

        controller.add_global_step("initialize", self._initialize_step)
        controller.add_node_step("verify readiness", self._verify_step)
        if self.options.template_url:
            controller.add_global_step("download node template", self._download_step)
        controller.add_node_step("node template", self._template_step)
        controller.add_node_step("virtual machine", self._vm_step)

    def _initialize_step(self, controller: SetupController) -> None:
        if controller.get(ADMIN_PASSWORD_KEY) is None:
            login = self.login_store.ensure(
                self.definition.name, DEFAULT_ADMIN_USERNAME, self.admin_password
            )
            controller.set(ADMIN_PASSWORD_KEY, login.admin_password)

    def _verify_step(self, controller: SetupController, node: NodeDefinition) -> None:
        """Fail when the node's VM name is taken by a VM this cluster did not create."""
        client = self.client(node.vm.host)
        with client.lock:
            vm = client.find_vm(self.vm_name(node))
        if vm is not None and not self._owned(vm):
            raise ConflictError(
                f"XenServer {client.name} already hosts a VM named '{self.vm_name(node)}'",
                "Remove the VM or choose a different hosting.vm_name_prefix.",
            )

    def _download_step(self, controller: SetupController) -> None:
        url = self.options.template_url
        os.makedirs(self.template_folder, exist_ok=True)
        path = str(self.template_folder / os.path.basename(url.rstrip("/")))

        def progress(percent: int) -> bool:
            controller.set_operation_status(f"download: node template [{percent}%]")
            return not controller.is_cancel_pending

        if download_template(url, path, progress):
            controller.set(TEMPLATE_PATH_KEY, path)
        controller.set_operation_status()

    def _template_step(self, controller: SetupController, node: NodeDefinition) -> None:
        client = self.client(node.vm.host)
        template = self.options.template

        with client.lock:
            if client.find_template(template) is not None:
                return

            path = controller.get(TEMPLATE_PATH_KEY)
            if path is None:
                raise ProviderError(
                    f"Template '{template}' is not installed on XenServer {client.name}",
                    "Set hosting.xenserver.template_url so it can be downloaded and installed.",
                )
            controller.set_node_status(node.name, f"install: node template {template}")
            client.import_template(path, template, client.host.storage_repository)

    def boot_data(self, node: NodeDefinition, admin_password: str) -> dict[str, str]:
        """First-boot settings read by the node image from ``vm-data/`` in xenstore."""
        subnet = ip_network(self.options.node_subnet)
        gateway = self.options.gateway or str(subnet.network_address + 1)
        nameservers = self.definition.network.nameservers or DEFAULT_NAMESERVERS
        return {
            "hostname": node.name,
            "address": f"{node.address}/{subnet.prefixlen}",
            "gateway": gateway,
            "nameservers": ",".join(nameservers),
            "admin-password": admin_password,
        }

    def staging_name(self, node: NodeDefinition) -> str:
        """Name a VM carries until it is fully configured."""
        return f"{self.vm_name(node)}{STAGING_SUFFIX}"

    def _discard_staged_vm(self, client: XenClient, node: NodeDefinition) -> None:
        """Destroy a VM left half-built by an interrupted run.  Caller holds the host lock."""
        staged = client.find_vm(self.staging_name(node))
        if staged is None:
            return
        if staged.get("power-state", POWER_HALTED) != POWER_HALTED:
            client.shutdown_vm(staged["uuid"], force=True)
        client.uninstall_vm(staged["uuid"])
        logger.info(f"Discarded incomplete VM {self.staging_name(node)} on XenServer {client.name}")

    def _vm_step(self, controller: SetupController, node: NodeDefinition) -> None:
        """Create and start the node's VM.

        A new VM is installed under its staging name and only renamed to the
        node's VM name once it is tagged, sized and carries its boot data, so
        a VM with the final name is always complete.
        """
        client = self.client(node.vm.host)
        name = self.vm_name(node)

        with client.lock:
            self._discard_staged_vm(client, node)
            vm = client.find_vm(name)
            if vm is None:
                controller.set_node_status(node.name, "create: virtual machine")
                uuid = client.install_vm(
                    self.staging_name(node), self.options.template, client.host.storage_repository
                )
                client.set_other_config(uuid, {CLUSTER_TAG: self.definition.name})
                client.size_vm(
                    uuid, cores=node.vm.cores, memory_gib=node.vm.memory_gib, disk_gib=node.vm.disk_gib
                )
                client.set_xenstore_data(uuid, self.boot_data(node, controller.get(ADMIN_PASSWORD_KEY)))
                client.rename_vm(uuid, name)
                logger.info(f"Created VM {name} ({uuid}) on XenServer {client.name}")
                state = POWER_HALTED
            else:
                uuid = vm["uuid"]
                state = vm.get("power-state", "")

            if state == POWER_HALTED:
                controller.set_node_status(node.name, "start: virtual machine")
                client.start_vm(uuid)

        self._wait_for_power_state(client, uuid, name, POWER_RUNNING)

    def _wait_for_power_state(self, client: XenClient, uuid: str, name: str, state: str) -> bool:
        def reached() -> bool:
            with client.lock:
                return client.power_state(uuid) == state

        return wait_for(
            reached,
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            cancel_event=self.cancel_event,
            description=f"VM {name} to be {state}",
        )

    def get_ssh_endpoint(self, node_name: str) -> tuple[str, int]:
        node = self.definition.get_node(node_name)
        if node is None or node.address is None:
            raise ValidationError(f"Node '{node_name}' has no address")
        return str(node.address), SSH_PORT

    def get_cluster_address(self) -> str | None:
        control_plane = self.definition.control_plane_nodes
        if not control_plane or control_plane[0].address is None:
            return None
        return str(control_plane[0].address)

    def _cluster_vms(self) -> list[tuple[XenClient, NodeDefinition, dict[str, str]]]:
        found = []
        for node in self.definition.sorted_nodes:
            client = self.client(node.vm.host)
            with client.lock:
                vm = client.find_vm(self.vm_name(node))
            if vm is not None and self._owned(vm):
                found.append((client, node, vm))
        return found

    def start(self) -> None:
        for client, node, vm in self._cluster_vms():
            if vm.get("power-state") == POWER_HALTED:
                with client.lock:
                    client.start_vm(vm["uuid"])
            self._wait_for_power_state(client, vm["uuid"], self.vm_name(node), POWER_RUNNING)

    def stop(self) -> None:
        for client, node, vm in self._cluster_vms():
            if vm.get("power-state") == POWER_RUNNING:
                with client.lock:
                    client.shutdown_vm(vm["uuid"])
            self._wait_for_power_state(client, vm["uuid"], self.vm_name(node), POWER_HALTED)

    def remove(self) -> None:
        """Destroy the cluster's VMs; VMs this cluster did not create are left alone."""
        for client, node, vm in self._cluster_vms():
            with client.lock:
                if vm.get("power-state") != POWER_HALTED:
                    client.shutdown_vm(vm["uuid"], force=True)
                client.uninstall_vm(vm["uuid"])
            logger.info(f"Removed VM {self.vm_name(node)}")

        for node in self.definition.sorted_nodes:
            client = self.client(node.vm.host)
            with client.lock:
                self._discard_staged_vm(client, node)

        self.login_store.remove(self.definition.name)

    def get_resource_availability(
        self, reserve_memory_gib: int = 0, reserve_disk_gib: int = 0
    ) -> HostingResourceAvailability:
        """Compare each host's free memory and storage with the VMs placed on it.

        Args:
            reserve_memory_gib: Memory to leave free on every host
            reserve_disk_gib: Storage to leave free on every host
        """
        availability = HostingResourceAvailability()

        for host in self.options.hosts:
            nodes = self.hosted_nodes(host.name)
            if not nodes:
                continue

            client = self.client(host.name)
            with client.lock:
                free_memory = client.free_memory_bytes()
                free_disk = client.free_storage_bytes(host.storage_repository)

            memory = (sum(n.vm.memory_gib for n in nodes) + reserve_memory_gib) * GIB
            disk = (sum(n.vm.disk_gib for n in nodes) + reserve_disk_gib) * GIB

            if memory > free_memory:
                availability.add_constraint(
                    host.name,
                    f"needs {memory // GIB} GiB memory, {free_memory // GIB} GiB free",
                )
            if disk > free_disk:
                availability.add_constraint(
                    host.name,
                    f"needs {disk // GIB} GiB in '{host.storage_repository}', {free_disk // GIB} GiB free",
                )

        return availability
