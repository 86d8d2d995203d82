"""Unit tests for the azfleet CLI."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from azfleet import __version__
from azfleet.cli import main
from azfleet.modules.prerequisites import PreconditionError
from azfleet.vm_inventory import VMRecord
from tests.mocks.fleet_fakes import FakeExecutor, FakeInventory, audit_record, ok

IPS = {"lab-001": "20.1.2.3", "lab-002": "20.1.2.4"}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def tools_available():
    with patch("azfleet.cli.PrerequisiteChecker.require") as mock_require:
        yield mock_require


def use_fakes(inventory, executor=None):
    """Patch the CLI factories to hand out in-memory fakes."""
    executor = executor or FakeExecutor()
    return (
        patch("azfleet.cli._make_inventory", return_value=inventory),
        patch("azfleet.cli._make_executor", return_value=executor),
    )


def invoke(runner, args, inventory, executor=None):
    inventory_patch, executor_patch = use_fakes(inventory, executor)
    with inventory_patch, executor_patch:
        return runner.invoke(main, args)


class TestMainGroup:
    """Tests for the top-level group."""

    def test_no_args_shows_help(self, runner):
        result = runner.invoke(main, [])
        assert result.exit_code == 0
        assert "deploy" in result.output
        assert "logins" in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_unknown_command_shows_help(self, runner):
        result = runner.invoke(main, ["destroy"])
        assert result.exit_code != 0
        assert "Usage:" in result.output

    def test_invalid_settings_file(self, runner, isolated_settings):
        isolated_settings.parent.mkdir(parents=True)
        isolated_settings.write_text("history_lines = 'ten'\n")
        isolated_settings.chmod(0o600)

        result = runner.invoke(main, ["deploy"])

        assert result.exit_code == 1
        assert "history_lines" in result.output


class TestDeployCommand:
    """Tests for azfleet deploy."""

    def test_deploy_creates_fleet(self, runner, tools_available, deployment_file):
        inventory = FakeInventory()
        result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 0, result.output
        assert len(inventory.create_requests) == 5
        assert "VMs created: 5" in result.output
        assert "Total VMs requested: 5" in result.output
        tools_available.assert_called_once_with(["az"])

    def test_deploy_uses_default_config_path(self, runner, tools_available, deployment_file, monkeypatch):
        monkeypatch.chdir(deployment_file.parent)
        result = invoke(runner, ["deploy"], FakeInventory())

        assert result.exit_code == 0, result.output

    def test_deploy_reports_skips(self, runner, tools_available, deployment_file):
        inventory = FakeInventory(existing={"lab-001": VMRecord("lab-001", "test-rg", "eastus", "Standard_B2s")})
        result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 0
        assert "VMs skipped (already exist): 1" in result.output

    def test_deploy_failure_exit_code(self, runner, tools_available, deployment_file):
        inventory = FakeInventory(failing_creates={"lab-003"})
        result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 1
        assert "VMs failed: 1" in result.output
        assert "lab-003 (westus2)" in result.output

    def test_deploy_missing_config(self, runner, tools_available, tmp_path):
        inventory = FakeInventory()
        result = invoke(runner, ["deploy", str(tmp_path / "missing.json")], inventory)

        assert result.exit_code == 1
        assert "Config file not found" in result.output
        assert inventory.create_requests == []

    def test_deploy_missing_resource_group(self, runner, tools_available, deployment_file):
        inventory = FakeInventory(resource_groups=set())
        result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 1
        assert "Resource group 'test-rg' does not exist" in result.output
        assert inventory.create_requests == []

    def test_deploy_not_logged_in(self, runner, tools_available, deployment_file):
        inventory = FakeInventory(logged_in=False)
        result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 1
        assert "az login" in result.output

    def test_deploy_missing_tools(self, runner, deployment_file):
        inventory = FakeInventory()
        with patch(
            "azfleet.cli.PrerequisiteChecker.require",
            side_effect=PreconditionError("Missing required tools: az"),
        ):
            result = invoke(runner, ["deploy", str(deployment_file)], inventory)

        assert result.exit_code == 1
        assert "Missing required tools: az" in result.output
        assert inventory.create_requests == []


class TestUsersCommand:
    """Tests for azfleet users."""

    def test_users_configures_entries(self, runner, tools_available, users_file):
        executor = FakeExecutor(
            responses={
                "20.1.2.3": ok("SUCCESS: User 'alice' is configured with sudo access.\n"),
                "20.1.2.4": ok("SUCCESS: User 'bob' is configured with sudo access.\n"),
            }
        )
        result = invoke(runner, ["users", str(users_file)], FakeInventory(ips=IPS), executor)

        assert result.exit_code == 0, result.output
        assert "Users configured: 2" in result.output
        assert len(executor.calls) == 2
        tools_available.assert_called_once_with(["az", "ssh", "sshpass"])

    def test_users_failure_exit_code(self, runner, tools_available, users_file):
        executor = FakeExecutor(responses={"20.1.2.3": ok("SUCCESS\n")})
        result = invoke(runner, ["users", str(users_file)], FakeInventory(ips=IPS), executor)

        assert result.exit_code == 1
        assert "Users failed: 1" in result.output
        assert "bob@lab-002" in result.output

    def test_users_empty_fleet(self, runner, tools_available, users_file):
        result = invoke(runner, ["users", str(users_file)], FakeInventory(ips={}))

        assert result.exit_code == 1
        assert "No VMs found in resource group 'test-rg'" in result.output


class TestLoginsCommand:
    """Tests for azfleet logins."""

    def test_logins_reports_statuses(self, runner, tools_available, users_file):
        executor = FakeExecutor(
            responses={
                "20.1.2.3": ok(audit_record("alice  **Never logged in**", "", ["whoami"])),
                "20.1.2.4": ok("USER_NOT_FOUND|||\n"),
            }
        )
        result = invoke(runner, ["logins", str(users_file)], FakeInventory(ips=IPS), executor)

        assert result.exit_code == 1
        assert "NEVER" in result.output
        assert "NOT FOUND" in result.output
        assert "→ whoami" in result.output
        assert "Total users checked: 2" in result.output
        assert "Errors: 1" in result.output

    def test_logins_all_found(self, runner, tools_available, users_file):
        record = ok(audit_record("alice  **Never logged in**", ""))
        executor = FakeExecutor(responses={"20.1.2.3": record, "20.1.2.4": record})
        result = invoke(runner, ["logins", str(users_file)], FakeInventory(ips=IPS), executor)

        assert result.exit_code == 0, result.output
        assert "Never logged in: 2" in result.output


class TestSettingsCommands:
    """Tests for azfleet settings."""

    def test_show_defaults(self, runner):
        result = runner.invoke(main, ["settings", "show"])

        assert result.exit_code == 0
        assert "not created, defaults" in result.output
        assert "admin_group = sudo" in result.output
        assert "strict_host_key_checking = false" in result.output

    def test_set_then_show(self, runner, isolated_settings):
        result = runner.invoke(main, ["settings", "set", "history_lines", "25"])
        assert result.exit_code == 0
        assert "✓ history_lines = 25" in result.output
        assert isolated_settings.exists()

        result = runner.invoke(main, ["settings", "show"])
        assert "history_lines = 25" in result.output

    def test_set_unknown_key(self, runner):
        result = runner.invoke(main, ["settings", "set", "colour", "blue"])
        assert result.exit_code == 1
        assert "Unknown setting 'colour'" in result.output

    def test_explicit_settings_path(self, runner, tmp_path):
        custom = tmp_path / "custom.toml"
        result = runner.invoke(main, ["--settings", str(custom), "settings", "set", "admin_group", "wheel"])

        assert result.exit_code == 0
        assert 'admin_group = "wheel"' in custom.read_text()
