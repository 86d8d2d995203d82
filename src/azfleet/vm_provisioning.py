"""VM fleet provisioning module.

Creates the VMs described by a deployment descriptor, one at a time in
declaration order. Each planned name is checked for existence first:

- exists      -> skipped (no creation call)
- missing     -> created
- create fails -> failed, and the loop moves on to the next VM

Existing VMs are matched by name only. A size or location mismatch is
reported as a warning but the VM is still skipped.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from azfleet.deployment_config import DeploymentSpec, VMPlanEntry, plan_vm_names
from azfleet.modules.prerequisites import PreconditionError
from azfleet.vm_inventory import VMCreateRequest, VMInventory, VMInventoryError, VMRecord

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningFailure:
    """Details of a failed VM creation."""

    name: str
    location: str
    error: str


@dataclass
class ProvisioningSummary:
    """Result of one provisioning pass.

    Attributes:
        total_requested: Number of VMs in the naming plan
        location_count: Number of locations in the descriptor
        created: Records of VMs created in this pass
        skipped: Names that already existed
        failed: Failures with error details
    """

    total_requested: int
    location_count: int
    created: list[VMRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[ProvisioningFailure] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def get_summary(self) -> str:
        """Get one-line human-readable summary."""
        return (
            f"Fleet: {self.created_count} created, {self.skipped_count} skipped, "
            f"{self.failed_count} failed of {self.total_requested} requested"
        )


class FleetProvisioner:
    """Provision a fleet of password-authenticated VMs.

    Example:
        >>> provisioner = FleetProvisioner(AzureCLIInventory())
        >>> summary = provisioner.provision(load_deployment_config("vm-config.local.json"))
        >>> sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        inventory: VMInventory,
        progress_callback: Callable[[str], None] | None = None,
    ):
        """Initialize provisioner.

        Args:
            inventory: Cloud inventory adapter
            progress_callback: Optional callback for progress updates
        """
        self.inventory = inventory
        self._progress_callback = progress_callback

    def _report(self, message: str) -> None:
        if self._progress_callback:
            self._progress_callback(message)
        logger.info(message)

    def build_request(self, spec: DeploymentSpec, entry: VMPlanEntry) -> VMCreateRequest:
        """Create the creation request for one planned VM."""
        return VMCreateRequest(
            name=entry.name,
            resource_group=spec.resource_group,
            location=entry.location,
            image=spec.image,
            size=spec.vm_size,
            admin_username=spec.admin_username,
            admin_password=spec.admin_password,
            os_disk_size_gb=spec.os_disk_size_gb,
            vnet_name=spec.vnet_name if spec.uses_custom_network else None,
            subnet_name=spec.subnet_name if spec.uses_custom_network else None,
            nsg_name=spec.nsg_name,
            public_ip=spec.public_ip,
            tags=dict(spec.tags),
        )

    def provision(self, spec: DeploymentSpec) -> ProvisioningSummary:
        """Run one provisioning pass over the whole naming plan.

        Returns:
            ProvisioningSummary with created/skipped/failed accounting

        Raises:
            PreconditionError: If the resource group does not exist (nothing is created)
        """
        if not self.inventory.resource_group_exists(spec.resource_group):
            raise PreconditionError(f"Resource group '{spec.resource_group}' does not exist")

        plan = plan_vm_names(spec)
        summary = ProvisioningSummary(
            total_requested=len(plan), location_count=len(spec.locations)
        )

        self._report(
            f"Starting deployment of {len(plan)} VM(s) across {len(spec.locations)} location(s)..."
        )

        remaining = iter(plan)
        for location in spec.locations:
            self._report(f"Processing location: {location.name} ({location.vm_count} VMs)")
            for _ in range(location.vm_count):
                self._provision_one(spec, next(remaining), summary)

        return summary

    def _provision_one(
        self, spec: DeploymentSpec, entry: VMPlanEntry, summary: ProvisioningSummary
    ) -> None:
        try:
            existing = self.inventory.get_vm(entry.name, spec.resource_group)
        except VMInventoryError as e:
            logger.error(f"Failed to check VM {entry.name}: {e}")
            summary.failed.append(ProvisioningFailure(entry.name, entry.location, str(e)))
            return

        if existing is not None:
            logger.warning(f"VM '{entry.name}' already exists. Skipping...")
            self._warn_on_mismatch(spec, entry, existing)
            summary.skipped.append(entry.name)
            return

        self._report(f"Creating VM: {entry.name} in {entry.location}")
        try:
            record = self.inventory.create_vm(self.build_request(spec, entry))
        except VMInventoryError as e:
            logger.error(f"Failed to create VM: {entry.name}: {e}")
            summary.failed.append(ProvisioningFailure(entry.name, entry.location, str(e)))
            return

        self._report(f"Successfully created VM: {entry.name}")
        summary.created.append(record)

    def _warn_on_mismatch(
        self, spec: DeploymentSpec, entry: VMPlanEntry, existing: VMRecord
    ) -> None:
        if existing.size and existing.size.lower() != spec.vm_size.lower():
            logger.warning(
                f"  Existing VM '{entry.name}' has size {existing.size}, "
                f"descriptor requests {spec.vm_size}"
            )
        if existing.location and existing.location.lower() != entry.location.lower():
            logger.warning(
                f"  Existing VM '{entry.name}' is in {existing.location}, "
                f"descriptor places it in {entry.location}"
            )
