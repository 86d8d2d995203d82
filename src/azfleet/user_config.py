"""User descriptor module.

Loads the JSON user descriptor shared by `azfleet users` and `azfleet logins`:

    {
        "deployment_config": "vm-config.local.json",
        "users": [
            {"vm_name": "lab-001", "username": "alice", "password": "..."},
            {"vm_name": "lab-002", "username": "bob", "password": "..."}
        ]
    }

`deployment_config` is resolved relative to the user descriptor's directory
when it is not absolute. Only the admin credentials and resource group are
read from it.

Incomplete user entries are kept so callers can report them as skipped.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from azfleet.deployment_config import read_json_object, require_string
from azfleet.settings import ConfigError

logger = logging.getLogger(__name__)


def _field_value(raw: Any) -> str:
    if raw is None:
        return ""
    return raw if isinstance(raw, str) else str(raw)


@dataclass
class UserEntry:
    """One (VM, username, password) triple from the user descriptor."""

    position: int
    vm_name: str
    username: str
    password: str = field(default="", repr=False)

    @classmethod
    def from_raw(cls, position: int, raw: Any) -> "UserEntry":
        if not isinstance(raw, dict):
            return cls(position=position, vm_name="", username="", password="")
        return cls(
            position=position,
            vm_name=_field_value(raw.get("vm_name")).strip(),
            username=_field_value(raw.get("username")).strip(),
            password=_field_value(raw.get("password")),
        )

    def missing_fields(self, require_password: bool = True) -> list[str]:
        """Names of required fields that are empty."""
        missing: list[str] = []
        if not self.vm_name:
            missing.append("vm_name")
        if not self.username:
            missing.append("username")
        if require_password and not self.password:
            missing.append("password")
        return missing


@dataclass
class UserSpec:
    """Validated user descriptor plus the admin context it references."""

    config_path: Path
    deployment_config: Path
    resource_group: str
    admin_username: str
    admin_password: str = field(repr=False)
    entries: list[UserEntry] = field(default_factory=list)


def resolve_deployment_path(user_config_path: Path, reference: str) -> Path:
    """Resolve `deployment_config` against the user descriptor's directory."""
    candidate = Path(reference).expanduser()
    if candidate.is_absolute():
        return candidate
    return user_config_path.parent / candidate


def load_user_config(path: str | Path) -> UserSpec:
    """Load the user descriptor and the admin context from its deployment config.

    Raises:
        ConfigError: If either file is missing, or a required field is absent
    """
    config_path = Path(path)
    data = read_json_object(config_path)

    reference = require_string(data, "deployment_config", str(config_path))
    deployment_path = resolve_deployment_path(config_path, reference)
    if not deployment_path.is_file():
        raise ConfigError(f"Deployment config file not found: {deployment_path}")

    deployment = read_json_object(deployment_path)
    source = f"deployment config {deployment_path}"
    admin_username = require_string(deployment, "admin_username", source)
    admin_password = require_string(deployment, "admin_password", source)
    resource_group = require_string(deployment, "resource_group", source)

    raw_users = data.get("users")
    if not isinstance(raw_users, list) or not raw_users:
        raise ConfigError(f"No users defined in {config_path}")

    entries = [UserEntry.from_raw(i, raw) for i, raw in enumerate(raw_users)]

    logger.debug(f"Loaded {len(entries)} user entries from: {config_path}")
    return UserSpec(
        config_path=config_path,
        deployment_config=deployment_path,
        resource_group=resource_group,
        admin_username=admin_username,
        admin_password=admin_password,
        entries=entries,
    )
