"""Deployment descriptor module.

Loads and validates the JSON deployment descriptor consumed by `azfleet deploy`
and computes the fleet naming plan.

Descriptor format:
    {
        "resource_group": "lab-rg",
        "locations": [{"name": "eastus", "vm_count": 2}, {"name": "westus2", "vm_count": 3}],
        "vm_name_prefix": "lab",
        "vm_size": "Standard_B2s",
        "image": "Ubuntu2204",
        "admin_username": "labadmin",
        "admin_password": "...",
        "os_disk_size_gb": 30,
        "vnet_name": "lab-vnet",
        "subnet_name": "default",
        "nsg_name": "lab-nsg",
        "public_ip": true,
        "tags": {"course": "net101"}
    }

Security:
- Passwords are held in memory only and never logged
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from azfleet.settings import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_OS_DISK_SIZE_GB = 30

REQUIRED_STRING_FIELDS = (
    "resource_group",
    "vm_name_prefix",
    "vm_size",
    "image",
    "admin_username",
    "admin_password",
)


@dataclass
class LocationSpec:
    """One deployment location and the number of VMs to place there."""

    name: str
    vm_count: int


@dataclass
class DeploymentSpec:
    """Validated deployment descriptor."""

    resource_group: str
    locations: list[LocationSpec]
    vm_name_prefix: str
    vm_size: str
    image: str
    admin_username: str
    admin_password: str = field(repr=False)
    os_disk_size_gb: int = DEFAULT_OS_DISK_SIZE_GB
    vnet_name: str | None = None
    subnet_name: str | None = None
    nsg_name: str | None = None
    public_ip: bool = True
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def total_vm_count(self) -> int:
        return sum(location.vm_count for location in self.locations)

    @property
    def uses_custom_network(self) -> bool:
        """VNet/subnet only take effect when both are set."""
        return bool(self.vnet_name and self.subnet_name)


@dataclass
class VMPlanEntry:
    """A single VM the deployment should contain."""

    name: str
    location: str
    index: int


def format_vm_name(prefix: str, index: int) -> str:
    """Build a fleet VM name.

    Example:
        >>> format_vm_name("lab", 7)
        'lab-007'
    """
    return f"{prefix}-{index:03d}"


def plan_vm_names(spec: DeploymentSpec) -> list[VMPlanEntry]:
    """Compute the ordered naming plan for a deployment.

    Indices are 1-based and continue across locations in declaration order,
    so locations [(A, 2), (B, 3)] yield -001/-002 in A and -003..-005 in B.
    """
    plan: list[VMPlanEntry] = []
    global_index = 1

    for location in spec.locations:
        for _ in range(location.vm_count):
            plan.append(
                VMPlanEntry(
                    name=format_vm_name(spec.vm_name_prefix, global_index),
                    location=location.name,
                    index=global_index,
                )
            )
            global_index += 1

    return plan


def read_json_object(path: Path) -> dict[str, Any]:
    """Read a JSON file whose top level must be an object.

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    return data


def require_string(data: dict[str, Any], key: str, source: str) -> str:
    """Fetch a required non-empty string field.

    Raises:
        ConfigError: If the field is missing, null, empty or not a string
    """
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required in {source}")
    return value


def _optional_string(data: dict[str, Any], key: str, source: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string in {source}")
    return value


def _parse_locations(raw: Any, source: str) -> list[LocationSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"locations array must contain at least one location in {source}")

    locations: list[LocationSpec] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"locations[{i}] must be an object in {source}")

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"locations[{i}].name is required in {source}")

        count = item.get("vm_count")
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ConfigError(
                f"locations[{i}].vm_count must be a non-negative integer in {source}"
            )

        locations.append(LocationSpec(name=name, vm_count=count))

    if sum(location.vm_count for location in locations) < 1:
        raise ConfigError(f"locations must request at least one VM in {source}")

    return locations


def _parse_tags(raw: Any, source: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"tags must be an object in {source}")

    tags: dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, (dict, list)) or value is None:
            raise ConfigError(f"tags.{key} must be a string in {source}")
        if isinstance(value, bool):
            tags[key] = "true" if value else "false"
        else:
            tags[key] = str(value)
    return tags


def parse_deployment_config(data: dict[str, Any], source: str = "deployment config") -> DeploymentSpec:
    """Validate a decoded deployment descriptor.

    Args:
        data: Decoded JSON object
        source: Description used in error messages

    Raises:
        ConfigError: On any missing or invalid required field
    """
    values = {key: require_string(data, key, source) for key in REQUIRED_STRING_FIELDS}
    locations = _parse_locations(data.get("locations"), source)

    disk_size = data.get("os_disk_size_gb", DEFAULT_OS_DISK_SIZE_GB)
    if disk_size is None:
        disk_size = DEFAULT_OS_DISK_SIZE_GB
    if isinstance(disk_size, bool) or not isinstance(disk_size, int) or disk_size <= 0:
        raise ConfigError(f"os_disk_size_gb must be a positive integer in {source}")

    public_ip = data.get("public_ip", True)
    if public_ip is None:
        public_ip = True
    if not isinstance(public_ip, bool):
        raise ConfigError(f"public_ip must be true or false in {source}")

    vnet_name = _optional_string(data, "vnet_name", source)
    subnet_name = _optional_string(data, "subnet_name", source)
    if bool(vnet_name) != bool(subnet_name):
        logger.warning("vnet_name and subnet_name must be set together; ignoring both")
        vnet_name = subnet_name = None

    return DeploymentSpec(
        locations=locations,
        os_disk_size_gb=disk_size,
        vnet_name=vnet_name,
        subnet_name=subnet_name,
        nsg_name=_optional_string(data, "nsg_name", source),
        public_ip=public_ip,
        tags=_parse_tags(data.get("tags"), source),
        **values,
    )


def load_deployment_config(path: str | Path) -> DeploymentSpec:
    """Load and validate a deployment descriptor from disk.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_path = Path(path)
    data = read_json_object(config_path)
    spec = parse_deployment_config(data, source=str(config_path))
    logger.debug(f"Loaded deployment config from: {config_path}")
    return spec
