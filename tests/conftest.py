"""
Shared test fixtures for azfleet tests.

This module provides:
- Isolation of the settings file from ~/.azfleet
- Sample deployment and user descriptors written to tmp_path
- A subprocess.run capture for az/ssh invocations
"""

import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from tests.mocks.subprocess_mock import SubprocessCallCapture

# ============================================================================
# ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point AZFLEET_SETTINGS at a temp file so tests never touch ~/.azfleet."""
    settings_path = tmp_path / "azfleet-settings" / "config.toml"
    monkeypatch.setenv("AZFLEET_SETTINGS", str(settings_path))
    return settings_path


# ============================================================================
# DESCRIPTOR FIXTURES
# ============================================================================


@pytest.fixture
def write_json(tmp_path):
    """Write a JSON document under tmp_path and return its path."""

    def _write(name: str, data: Any) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture
def deployment_data() -> dict[str, Any]:
    return {
        "resource_group": "test-rg",
        "locations": [{"name": "eastus", "vm_count": 2}, {"name": "westus2", "vm_count": 3}],
        "vm_name_prefix": "lab",
        "vm_size": "Standard_B2s",
        "image": "Ubuntu2204",
        "admin_username": "labadmin",
        "admin_password": "Adm1n-Pass!",
    }


@pytest.fixture
def users_data() -> dict[str, Any]:
    return {
        "deployment_config": "vm-config.local.json",
        "users": [
            {"vm_name": "lab-001", "username": "alice", "password": "Al1ce-Pass!"},
            {"vm_name": "lab-002", "username": "bob", "password": "B0b-Pass!"},
        ],
    }


@pytest.fixture
def deployment_file(write_json, deployment_data) -> Path:
    return write_json("vm-config.local.json", deployment_data)


@pytest.fixture
def users_file(write_json, deployment_file, users_data) -> Path:
    return write_json("vm-users.local.json", users_data)


# ============================================================================
# SUBPROCESS FIXTURES
# ============================================================================


@pytest.fixture
def az_capture():
    """Capture subprocess.run calls made by AzureCLIInventory."""
    capture = SubprocessCallCapture()
    with patch("azfleet.vm_inventory.subprocess.run", side_effect=capture):
        yield capture


@pytest.fixture
def ssh_capture():
    """Capture subprocess.run calls made by SSHPasswordExecutor."""
    capture = SubprocessCallCapture()
    with patch("azfleet.remote_exec.subprocess.run", side_effect=capture):
        yield capture
