"""XenServer host access through the ``xe`` command line client."""

import os
import re
import subprocess
import threading
from typing import Callable

import requests

from cluster_hosting.exceptions import (
    ConfigurationError,
    ProviderError,
    TransientProviderError,
)
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import XenServerHost

logger = get_logger(__name__)

GIB = 1024**3
COMMAND_TIMEOUT = 120
IMPORT_TIMEOUT = 60 * 60
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

_RECORD_LINE = re.compile(r"^\s*([\w-]+)\s*\([^)]*\)\s*:\s*(.*)$")


def parse_records(output: str) -> list[dict[str, str]]:
    """Parse ``xe *-list`` output into one dict per record.

    Records are separated by blank lines and each line reads
    ``name ( RO): value``.
    """
    records = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                records.append(current)
                current = {}
            continue
        match = _RECORD_LINE.match(line)
        if match:
            current[match.group(1)] = match.group(2).strip()
    if current:
        records.append(current)
    return records


def parse_map(value: str) -> dict[str, str]:
    """Parse a map parameter such as ``other-config`` (``key: value; key: value``)."""
    items = {}
    for item in value.split(";"):
        key, sep, val = item.partition(":")
        if sep:
            items[key.strip()] = val.strip()
    return items


def download_template(
    url: str,
    path: str,
    progress: Callable[[int], bool] | None = None,
    timeout: float = 60,
) -> bool:
    """Download a VM template file unless it is already present.

    Args:
        url: Template (XVA) URL
        path: Local file path
        progress: Called with the percentage downloaded; returning False cancels
        timeout: Connect and read timeout in seconds

    Returns:
        True when the file is present, False if the download was cancelled

    Raises:
        ProviderError: If the download fails
    """
    if os.path.exists(path):
        logger.debug(f"Template already downloaded: {path}")
        return True

    partial = f"{path}.partial"
    logger.info(f"Downloading VM template {url}")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length", 0))
            received = 0
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
                    received += len(chunk)
                    percent = int(received * 100 / total) if total else 0
                    if progress is not None and not progress(percent):
                        logger.info(f"Template download cancelled at {percent}%")
                        break
                else:
                    os.replace(partial, path)
                    return True
    except requests.exceptions.RequestException as e:
        raise ProviderError(f"Failed to download VM template from {url}", str(e))

    os.remove(partial)
    return False


class XenClient:
    """Runs ``xe`` commands against one XenServer host.

    A XenClient is not safe for concurrent use; callers serialize access
    through ``lock``.
    """

    def __init__(self, host: XenServerHost, timeout: float = COMMAND_TIMEOUT):
        self.host = host
        self.timeout = timeout
        self.lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.host.name

    def invoke(self, command: str, *args: str, timeout: float | None = None) -> str:
        """Run an ``xe`` command on the host and return its trimmed output.

        Raises:
            ConfigurationError: If the xe client is not installed
            TransientProviderError: If the command times out
            ProviderError: If the command fails
        """
        cmd = [
            "xe",
            "-s",
            self.host.address,
            "-u",
            self.host.username,
            "-pw",
            self.host.password,
            command,
            *args,
        ]
        logger.debug(f"[{self.name}] xe {command} {' '.join(args)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError:
            raise ConfigurationError(
                "The XenServer 'xe' command line client is not installed",
                "Install the XenServer CLI package and make sure 'xe' is on your PATH.",
            )
        except subprocess.TimeoutExpired:
            raise TransientProviderError(f"XenServer {self.name}: 'xe {command}' timed out")
        except subprocess.CalledProcessError as e:
            error_msg = (e.stderr or e.stdout or "").strip()
            raise ProviderError(f"XenServer {self.name}: 'xe {command}' failed", error_msg)

        return result.stdout.strip()

    def list_vms(self) -> list[dict[str, str]]:
        """Guest VMs on the host with uuid, name-label, power-state and other-config."""
        output = self.invoke(
            "vm-list",
            "is-control-domain=false",
            "is-a-template=false",
            "params=uuid,name-label,power-state,other-config",
        )
        return parse_records(output)

    def find_vm(self, name: str) -> dict[str, str] | None:
        return next((vm for vm in self.list_vms() if vm.get("name-label") == name), None)

    def find_template(self, name: str) -> str | None:
        """Return the uuid of the named template, if installed."""
        uuid = self.invoke("template-list", f"name-label={name}", "--minimal")
        return uuid.split(",")[0] or None

    def storage_repository_uuid(self, name: str) -> str:
        uuid = self.invoke("sr-list", f"name-label={name}", "--minimal")
        if not uuid:
            raise ConfigurationError(f"XenServer {self.name} has no storage repository named '{name}'")
        return uuid.split(",")[0]

    def import_template(self, path: str, name: str, storage_repository: str) -> str:
        """Import an XVA file as a named template and return its uuid."""
        sr_uuid = self.storage_repository_uuid(storage_repository)
        uuid = self.invoke("vm-import", f"filename={path}", f"sr-uuid={sr_uuid}", timeout=IMPORT_TIMEOUT)
        self.invoke("template-param-set", f"uuid={uuid}", f"name-label={name}")
        logger.info(f"Installed template {name} on XenServer {self.name}")
        return uuid

    def install_vm(self, name: str, template: str, storage_repository: str) -> str:
        """Install a halted VM from a template and return its uuid."""
        sr_uuid = self.storage_repository_uuid(storage_repository)
        uuid = self.invoke(
            "vm-install", f"template={template}", f"new-name-label={name}", f"sr-uuid={sr_uuid}"
        )
        logger.info(f"Installed VM {name} ({uuid}) on XenServer {self.name}")
        return uuid

    def size_vm(self, uuid: str, cores: int, memory_gib: int, disk_gib: int) -> None:
        """Set the processor count, memory and boot disk size of a halted VM."""
        self.invoke("vm-param-set", f"uuid={uuid}", f"VCPUs-max={cores}")
        self.invoke("vm-param-set", f"uuid={uuid}", f"VCPUs-at-startup={cores}")
        memory = f"{memory_gib}GiB"
        self.invoke(
            "vm-memory-limits-set",
            f"uuid={uuid}",
            f"static-min={memory}",
            f"static-max={memory}",
            f"dynamic-min={memory}",
            f"dynamic-max={memory}",
        )

        vdi_uuid = self.invoke("vbd-list", f"vm-uuid={uuid}", "type=Disk", "params=vdi-uuid", "--minimal")
        if vdi_uuid:
            self.invoke("vdi-resize", f"uuid={vdi_uuid.split(',')[0]}", f"disk-size={disk_gib}GiB")

    def rename_vm(self, uuid: str, name: str) -> None:
        self.invoke("vm-param-set", f"uuid={uuid}", f"name-label={name}")

    def set_other_config(self, uuid: str, data: dict[str, str]) -> None:
        args = [f"other-config:{key}={value}" for key, value in sorted(data.items())]
        self.invoke("vm-param-set", f"uuid={uuid}", *args)

    def set_xenstore_data(self, uuid: str, data: dict[str, str]) -> None:
        """Expose key/value data to the guest under ``vm-data/``."""
        args = [f"xenstore-data:vm-data/{key}={value}" for key, value in sorted(data.items())]
        self.invoke("vm-param-set", f"uuid={uuid}", *args)

    def power_state(self, uuid: str) -> str:
        return self.invoke("vm-param-get", f"uuid={uuid}", "param-name=power-state")

    def start_vm(self, uuid: str) -> None:
        self.invoke("vm-start", f"uuid={uuid}")

    def shutdown_vm(self, uuid: str, force: bool = False) -> None:
        args = [f"uuid={uuid}"]
        if force:
            args.append("--force")
        self.invoke("vm-shutdown", *args)

    def uninstall_vm(self, uuid: str) -> None:
        """Destroy a VM and its disks."""
        self.invoke("vm-uninstall", f"uuid={uuid}", "--force")
        logger.info(f"Removed VM {uuid} from XenServer {self.name}")

    def free_memory_bytes(self) -> int:
        return int(self.invoke("host-list", "params=memory-free", "--minimal").split(",")[0] or 0)

    def free_storage_bytes(self, storage_repository: str) -> int:
        """Unallocated bytes in the named storage repository."""
        output = self.invoke(
            "sr-list", f"name-label={storage_repository}", "params=physical-size,physical-utilisation"
        )
        records = parse_records(output)
        if not records:
            raise ConfigurationError(
                f"XenServer {self.name} has no storage repository named '{storage_repository}'"
            )
        record = records[0]
        return int(record.get("physical-size", 0)) - int(record.get("physical-utilisation", 0))
