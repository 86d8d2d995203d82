"""User configuration module.

Creates or updates OS user accounts with administrative-group membership on
fleet VMs. For each entry of the user descriptor azfleet connects as the
fleet admin account and runs an idempotent script:

- account exists  -> reset password, (re-)add to the admin group
- account missing -> useradd -m -s /bin/bash, set password, add to the group

and then verifies the account exists and carries the group. Running it twice
with the same input converges to the same end state and reports success both
times.
"""

import logging
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field

from azfleet.remote_exec import RemoteExecError, RemoteExecutor, SSHConfig
from azfleet.settings import Settings
from azfleet.user_config import UserEntry, UserSpec
from azfleet.vm_inventory import VMInventory, VmIpIndex

logger = logging.getLogger(__name__)

CONFIGURE_SCRIPT_TEMPLATE = """\
set -e
USERNAME={username}
PASSWORD={password}
ADMIN_GROUP={group}

if id "$USERNAME" >/dev/null 2>&1; then
    echo "User '$USERNAME' already exists. Updating password and ensuring $ADMIN_GROUP access..."
    echo "$USERNAME:$PASSWORD" | sudo chpasswd
    sudo usermod -aG "$ADMIN_GROUP" "$USERNAME"
else
    echo "Creating user '$USERNAME'..."
    sudo useradd -m -s /bin/bash "$USERNAME"
    echo "$USERNAME:$PASSWORD" | sudo chpasswd
    sudo usermod -aG "$ADMIN_GROUP" "$USERNAME"
fi

if id "$USERNAME" >/dev/null 2>&1 && id -nG "$USERNAME" | tr ' ' '\\n' | grep -qx "$ADMIN_GROUP"; then
    echo "SUCCESS: User '$USERNAME' is configured with $ADMIN_GROUP access."
    exit 0
fi

echo "ERROR: Failed to configure user '$USERNAME'"
exit 1
"""


def build_configure_script(username: str, password: str, admin_group: str = "sudo") -> str:
    """Render the remote create-or-update script for one user.

    All values are shell-quoted; the script travels on stdin.
    """
    return CONFIGURE_SCRIPT_TEMPLATE.format(
        username=shlex.quote(username),
        password=shlex.quote(password),
        group=shlex.quote(admin_group),
    )


@dataclass
class UserFailure:
    """Details of a failed user configuration."""

    vm_name: str
    username: str
    error: str


@dataclass
class ConfigurationSummary:
    """Result of one user configuration pass."""

    total: int
    configured: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[UserFailure] = field(default_factory=list)

    @property
    def configured_count(self) -> int:
        return len(self.configured)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class UserConfigurator:
    """Configure sudo-capable users across the fleet, one entry at a time."""

    def __init__(
        self,
        inventory: VMInventory,
        executor: RemoteExecutor,
        settings: Settings | None = None,
        output_callback: Callable[[str], None] | None = None,
    ):
        self.inventory = inventory
        self.executor = executor
        self.settings = settings or Settings()
        self._output_callback = output_callback

    def configure(self, spec: UserSpec) -> ConfigurationSummary:
        """Run one configuration pass over every user entry.

        Raises:
            PreconditionError: If the fleet IP query fails
        """
        logger.info("Fetching VM IP addresses from Azure...")
        ip_index = self.inventory.list_public_ips(spec.resource_group)
        logger.info(f"Found {len(ip_index)} VMs with public IPs")

        summary = ConfigurationSummary(total=len(spec.entries))
        logger.info("Starting user configuration...")

        for entry in spec.entries:
            missing = entry.missing_fields(require_password=True)
            if missing:
                logger.warning(f"Skipping entry {entry.position}: {', '.join(missing)} is missing")
                summary.skipped.append(entry.position)
                continue

            error = self._configure_one(spec, entry, ip_index)
            if error is None:
                summary.configured.append((entry.vm_name, entry.username))
            else:
                summary.failed.append(UserFailure(entry.vm_name, entry.username, error))

        return summary

    def _configure_one(self, spec: UserSpec, entry: UserEntry, ip_index: VmIpIndex) -> str | None:
        """Configure one user; returns an error message or None on success."""
        vm_ip = ip_index.get(entry.vm_name)
        if not vm_ip:
            error = f"VM '{entry.vm_name}' not found or has no public IP"
            logger.error(error)
            return error

        logger.info(f"Configuring user '{entry.username}' on VM '{entry.vm_name}' ({vm_ip})...")

        ssh_config = SSHConfig(
            host=vm_ip,
            user=spec.admin_username,
            password=spec.admin_password,
            connect_timeout=self.settings.ssh_connect_timeout,
            strict_host_key_checking=self.settings.strict_host_key_checking,
        )
        script = build_configure_script(entry.username, entry.password, self.settings.admin_group)

        try:
            result = self.executor.run_script(ssh_config, script)
        except RemoteExecError as e:
            logger.error(f"  Failed to configure user on '{entry.vm_name}': {e}")
            return str(e)

        output = result.get_output().strip()
        if not result.success:
            logger.error(f"  Failed to configure user on '{entry.vm_name}': {output}")
            return output or f"remote script exited with {result.exit_code}"

        for line in output.splitlines():
            logger.info(f"  {line}")
        return None
