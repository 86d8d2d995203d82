"""Cloud VM inventory and control.

This module is the narrow seam between azfleet and the Azure control plane:

- "does this VM exist in the resource group?"
- "create a VM with these parameters"
- "list the public IPs of every VM in the resource group"

plus the preflight checks (CLI session authenticated, resource group
exists). `AzureCLIInventory` implements it by shelling out to `az`; tests use
an in-memory implementation of the same protocol.

Calls are synchronous, never cached and never retried: Azure is the source
of truth on every run.

Security:
- No shell=True
- Credentials redacted from logged command lines
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from azfleet.modules.prerequisites import PreconditionError
from azfleet.security import sanitize_azure_command

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("ResourceNotFound", "was not found", "could not be found")


class VMInventoryError(Exception):
    """Raised when a VM inventory query or creation fails."""

    pass


@dataclass
class VMRecord:
    """VM details as reported by Azure."""

    name: str
    resource_group: str
    location: str | None = None
    size: str | None = None
    public_ip: str | None = None
    id: str | None = None


@dataclass
class VMCreateRequest:
    """Parameters for a single password-authenticated VM."""

    name: str
    resource_group: str
    location: str
    image: str
    size: str
    admin_username: str
    admin_password: str = field(repr=False)
    os_disk_size_gb: int = 30
    vnet_name: str | None = None
    subnet_name: str | None = None
    nsg_name: str | None = None
    public_ip: bool = True
    tags: dict[str, str] = field(default_factory=dict)

    def tag_tokens(self) -> list[str]:
        """Tags flattened to `key=value` tokens for --tags."""
        return [f"{key}={value}" for key, value in self.tags.items()]

    def to_az_args(self) -> list[str]:
        """Build the `az vm create` argument list."""
        cmd = [
            "az",
            "vm",
            "create",
            "--resource-group",
            self.resource_group,
            "--name",
            self.name,
            "--location",
            self.location,
            "--image",
            self.image,
            "--size",
            self.size,
            "--admin-username",
            self.admin_username,
            "--admin-password",
            self.admin_password,
            "--authentication-type",
            "password",
            "--os-disk-size-gb",
            str(self.os_disk_size_gb),
        ]

        if self.vnet_name and self.subnet_name:
            cmd.extend(["--vnet-name", self.vnet_name, "--subnet", self.subnet_name])

        if self.nsg_name:
            cmd.extend(["--nsg", self.nsg_name])

        if not self.public_ip:
            # An empty value tells az not to create a public IP
            cmd.extend(["--public-ip-address", ""])

        tokens = self.tag_tokens()
        if tokens:
            cmd.append("--tags")
            cmd.extend(tokens)

        cmd.extend(["--output", "json"])
        return cmd


class VmIpIndex:
    """Read-only VM name -> public IP mapping built from one fleet query."""

    def __init__(self, addresses: dict[str, str] | None = None):
        self._addresses: dict[str, str] = dict(addresses or {})

    def get(self, vm_name: str) -> str | None:
        return self._addresses.get(vm_name)

    def __contains__(self, vm_name: object) -> bool:
        return vm_name in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    def names(self) -> list[str]:
        return sorted(self._addresses)

    @classmethod
    def from_az_output(cls, entries: list[dict[str, Any]]) -> "VmIpIndex":
        """Build the index from `az vm list-ip-addresses` JSON.

        VMs without a public IP are left out of the index.
        """
        addresses: dict[str, str] = {}
        for entry in entries:
            vm = entry.get("virtualMachine") or {}
            name = vm.get("name")
            public_ips = (vm.get("network") or {}).get("publicIpAddresses") or []
            ip = public_ips[0].get("ipAddress") if public_ips else None
            if not name:
                continue
            if not ip:
                logger.debug(f"VM {name} has no public IP")
                continue
            addresses[name] = ip
        return cls(addresses)


@runtime_checkable
class VMInventory(Protocol):
    """Protocol for the cloud control plane operations azfleet needs."""

    def ensure_logged_in(self) -> None:
        """Raise PreconditionError when the control-plane session is not authenticated."""
        ...

    def resource_group_exists(self, resource_group: str) -> bool: ...

    def get_vm(self, name: str, resource_group: str) -> VMRecord | None:
        """Return the VM, or None if no VM with that name exists."""
        ...

    def create_vm(self, request: VMCreateRequest) -> VMRecord: ...

    def list_public_ips(self, resource_group: str) -> VmIpIndex:
        """One fleet query resolving every VM name to its public IP."""
        ...


class AzureCLIInventory:
    """VMInventory backed by the Azure CLI."""

    def __init__(self, timeout: int = 60, create_timeout: int = 900):
        """Initialize inventory.

        Args:
            timeout: Timeout in seconds for queries
            create_timeout: Timeout in seconds for `az vm create`
        """
        self.timeout = timeout
        self.create_timeout = create_timeout

    def _run(self, cmd: list[str], timeout: int | None = None) -> subprocess.CompletedProcess[str]:
        logger.debug(f"Executing: {sanitize_azure_command(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout or self.timeout,
            check=False,
        )

    def ensure_logged_in(self) -> None:
        """Check the Azure CLI session with `az account show`.

        Raises:
            PreconditionError: If az is not logged in or not installed
        """
        try:
            result = self._run(["az", "account", "show", "--output", "json"])
        except FileNotFoundError as e:
            raise PreconditionError("Azure CLI (az) is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise PreconditionError("Timed out checking Azure CLI login") from e

        if result.returncode != 0:
            raise PreconditionError("Azure CLI is not logged in. Please run 'az login' first.")

        try:
            account = json.loads(result.stdout)
            logger.debug(f"Using subscription: {account.get('name')} ({account.get('id')})")
        except json.JSONDecodeError:
            logger.debug("Could not parse az account show output")

    def resource_group_exists(self, resource_group: str) -> bool:
        try:
            result = self._run(["az", "group", "show", "--name", resource_group, "--output", "json"])
        except subprocess.TimeoutExpired as e:
            raise PreconditionError(f"Timed out checking resource group '{resource_group}'") from e
        return result.returncode == 0

    def get_vm(self, name: str, resource_group: str) -> VMRecord | None:
        """Look up one VM by name.

        Returns:
            VMRecord, or None if the VM does not exist

        Raises:
            VMInventoryError: If the query fails for another reason
        """
        cmd = ["az", "vm", "show", "--resource-group", resource_group, "--name", name, "--output", "json"]

        try:
            result = self._run(cmd)
        except subprocess.TimeoutExpired as e:
            raise VMInventoryError(f"VM query timed out for {name}") from e

        if result.returncode != 0:
            if any(marker in result.stderr for marker in NOT_FOUND_MARKERS):
                return None
            raise VMInventoryError(f"Failed to query VM {name}: {result.stderr.strip()}")

        try:
            data: dict[str, Any] = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise VMInventoryError(f"Failed to parse VM details for {name}") from e

        return VMRecord(
            name=data.get("name", name),
            resource_group=resource_group,
            location=data.get("location"),
            size=(data.get("hardwareProfile") or {}).get("vmSize"),
            id=data.get("id"),
        )

    def create_vm(self, request: VMCreateRequest) -> VMRecord:
        """Create one VM and wait for Azure to finish provisioning it.

        Raises:
            VMInventoryError: If creation fails or times out
        """
        cmd = request.to_az_args()

        try:
            result = self._run(cmd, timeout=self.create_timeout)
        except subprocess.TimeoutExpired as e:
            raise VMInventoryError(
                f"VM creation timed out after {self.create_timeout}s: {request.name}"
            ) from e

        if result.returncode != 0:
            raise VMInventoryError(result.stderr.strip() or f"az exited with {result.returncode}")

        try:
            data: dict[str, Any] = json.loads(result.stdout) if result.stdout.strip() else {}
        except json.JSONDecodeError as e:
            raise VMInventoryError("Failed to parse VM creation response") from e

        return VMRecord(
            name=request.name,
            resource_group=request.resource_group,
            location=data.get("location", request.location),
            size=request.size,
            public_ip=data.get("publicIpAddress") or None,
            id=data.get("id"),
        )

    def list_public_ips(self, resource_group: str) -> VmIpIndex:
        """Resolve every VM in the resource group to its public IP.

        Raises:
            PreconditionError: If the query fails or the resource group has no VMs
        """
        cmd = ["az", "vm", "list-ip-addresses", "--resource-group", resource_group, "--output", "json"]

        try:
            result = self._run(cmd)
        except subprocess.TimeoutExpired as e:
            raise PreconditionError("VM IP address query timed out") from e

        if result.returncode != 0:
            raise PreconditionError(f"Failed to list VM IP addresses: {result.stderr.strip()}")

        try:
            entries = json.loads(result.stdout) if result.stdout.strip() else []
        except json.JSONDecodeError as e:
            raise PreconditionError("Failed to parse VM IP address list") from e

        if not entries:
            raise PreconditionError(f"No VMs found in resource group '{resource_group}'")

        return VmIpIndex.from_az_output(entries)
