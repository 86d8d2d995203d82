"""CLI entry point for azfleet.

Commands:
    azfleet deploy [CONFIG]      # Provision the VM fleet described by CONFIG
    azfleet users [CONFIG]       # Create/update sudo users on fleet VMs
    azfleet logins [CONFIG]      # Report per-user login status and recent commands
    azfleet settings show|set    # Inspect or change tool settings

Exit codes:
    0  every item succeeded (skips are not failures)
    1  invalid configuration, failed precondition, or any per-item failure
"""

import logging
import sys
from typing import NoReturn

import click

from azfleet import __version__
from azfleet.click_group import AzfleetGroup
from azfleet.commands.settings import settings_group
from azfleet.deployment_config import DeploymentSpec, load_deployment_config
from azfleet.login_auditor import AuditSummary, LoginAuditor, render_audit
from azfleet.modules.prerequisites import PreconditionError, PrerequisiteChecker
from azfleet.remote_exec import SSHPasswordExecutor
from azfleet.settings import ConfigError, Settings, SettingsManager
from azfleet.user_config import UserSpec, load_user_config
from azfleet.user_configurator import ConfigurationSummary, UserConfigurator
from azfleet.vm_inventory import AzureCLIInventory
from azfleet.vm_provisioning import FleetProvisioner, ProvisioningSummary

logger = logging.getLogger(__name__)

RULE_WIDTH = 40


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _make_inventory(settings: Settings) -> AzureCLIInventory:
    return AzureCLIInventory(timeout=settings.az_timeout, create_timeout=settings.az_create_timeout)


def _make_executor(settings: Settings) -> SSHPasswordExecutor:
    return SSHPasswordExecutor(timeout=settings.ssh_command_timeout)


def _fail(message: str) -> NoReturn:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _rule(title: str) -> str:
    return f" {title} ".center(RULE_WIDTH, "=")


def _log_deployment(config_path: str, spec: DeploymentSpec) -> None:
    logger.info(f"Configuration loaded from: {config_path}")
    logger.info(f"Resource Group: {spec.resource_group}")
    logger.info(f"Locations: {len(spec.locations)}")
    for location in spec.locations:
        logger.info(f"  - {location.name}: {location.vm_count} VM(s)")
    logger.info(f"Total VM Count: {spec.total_vm_count}")
    logger.info(f"VM Name Prefix: {spec.vm_name_prefix}")
    logger.info(f"VM Size: {spec.vm_size}")
    logger.info(f"Image: {spec.image}")


def _log_user_spec(spec: UserSpec, action: str) -> None:
    logger.info(f"Configuration loaded from: {spec.config_path}")
    logger.info(f"Deployment config: {spec.deployment_config}")
    logger.info(f"Resource Group: {spec.resource_group}")
    logger.info(f"Admin Username: {spec.admin_username}")
    logger.info(f"Users to {action}: {len(spec.entries)}")


def print_provisioning_summary(summary: ProvisioningSummary) -> None:
    click.echo("")
    click.echo(_rule("Deployment Summary"))
    click.echo(f"Total VMs requested: {summary.total_requested}")
    click.echo(f"Locations: {summary.location_count}")
    click.secho(f"VMs created: {summary.created_count}", fg="green")
    click.echo(f"VMs skipped (already exist): {summary.skipped_count}")
    if summary.failed:
        click.secho(f"VMs failed: {summary.failed_count}", fg="red")
        for failure in summary.failed:
            click.secho(f"  ✗ {failure.name} ({failure.location}): {failure.error}", fg="red")
    click.echo("=" * RULE_WIDTH)


def print_configuration_summary(summary: ConfigurationSummary) -> None:
    click.echo("")
    click.echo(_rule("Configuration Summary"))
    click.echo(f"Total users in config: {summary.total}")
    click.secho(f"Users configured: {summary.configured_count}", fg="green")
    if summary.skipped:
        click.secho(f"Users skipped (invalid config): {summary.skipped_count}", fg="yellow")
    if summary.failed:
        click.secho(f"Users failed: {summary.failed_count}", fg="red")
        for failure in summary.failed:
            click.secho(f"  ✗ {failure.username}@{failure.vm_name}", fg="red")
    click.echo("=" * RULE_WIDTH)


def print_audit_summary(summary: AuditSummary) -> None:
    click.echo("")
    click.echo(_rule("Login Check Summary"))
    click.echo(f"Total users checked: {summary.total}")
    click.secho(f"Currently active: {summary.active}", fg="green")
    click.echo(f"Previously logged in: {summary.logged_in}")
    click.secho(f"Never logged in: {summary.never}", fg="yellow")
    if summary.skipped:
        click.secho(f"Skipped (invalid config): {summary.skipped}", fg="yellow")
    if summary.failed:
        click.secho(f"Errors: {summary.failed}", fg="red")
    click.echo("=" * RULE_WIDTH)


@click.group(
    cls=AzfleetGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False),
    help="Settings file (default: ~/.azfleet/config.toml or $AZFLEET_SETTINGS)",
)
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool, settings_path: str | None) -> None:
    """azfleet - Azure VM fleet provisioning and user management.

    \b
    COMMANDS:
        deploy     Provision the VMs described by a deployment config
        users      Create or update sudo users on fleet VMs
        logins     Report user login status and recent commands
        settings   Show or change azfleet settings

    \b
    EXAMPLES:
        $ azfleet deploy vm-config.local.json
        $ azfleet users vm-users.local.json
        $ azfleet logins
        $ azfleet settings set ssh_connect_timeout 20

    \b
    CONFIGURATION:
        Settings file: ~/.azfleet/config.toml
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")

    ctx.ensure_object(dict)
    ctx.obj["settings_path"] = settings_path
    try:
        ctx.obj["settings"] = SettingsManager.load_settings(settings_path)
    except ConfigError as e:
        _fail(str(e))

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)


main.add_command(settings_group)


@main.command(name="deploy")
@click.argument("config", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def deploy_command(ctx: click.Context, config: str | None) -> None:
    """Provision the VMs described by a deployment config.

    VM names are PREFIX-001, PREFIX-002, ... numbered continuously across
    locations. VMs that already exist are skipped; a failed VM does not stop
    the remaining ones.

    \b
    CONFIG defaults to ./vm-config.local.json (see 'azfleet settings').
    """
    settings = _settings(ctx)
    config_path = config or settings.deployment_config

    try:
        spec = load_deployment_config(config_path)
        PrerequisiteChecker.require(PrerequisiteChecker.DEPLOY_TOOLS)

        inventory = _make_inventory(settings)
        inventory.ensure_logged_in()
        _log_deployment(config_path, spec)

        summary = FleetProvisioner(inventory).provision(spec)
    except (ConfigError, PreconditionError) as e:
        _fail(str(e))

    print_provisioning_summary(summary)
    sys.exit(summary.exit_code)


@main.command(name="users")
@click.argument("config", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def users_command(ctx: click.Context, config: str | None) -> None:
    """Create or update sudo users on fleet VMs.

    Existing accounts get their password reset and admin group membership
    re-applied, so the command is safe to re-run. Entries missing vm_name,
    username or password are skipped.

    \b
    CONFIG defaults to ./vm-users.local.json (see 'azfleet settings').
    """
    settings = _settings(ctx)
    config_path = config or settings.users_config

    try:
        spec = load_user_config(config_path)
        PrerequisiteChecker.require(PrerequisiteChecker.REMOTE_TOOLS)

        inventory = _make_inventory(settings)
        inventory.ensure_logged_in()
        _log_user_spec(spec, "configure")

        configurator = UserConfigurator(inventory, _make_executor(settings), settings)
        summary = configurator.configure(spec)
    except (ConfigError, PreconditionError) as e:
        _fail(str(e))

    print_configuration_summary(summary)
    sys.exit(summary.exit_code)


@main.command(name="logins")
@click.argument("config", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def logins_command(ctx: click.Context, config: str | None) -> None:
    """Report login status and recent commands for fleet users.

    Read-only: nothing is changed on the VMs.

    \b
    STATUS values:
        ACTIVE      Logged in right now
        LOGGED IN   Logged in before, no open session
        NEVER       No recorded login
        NOT FOUND   Account does not exist on the VM
        ERROR       VM not resolvable or SSH failed

    \b
    CONFIG defaults to ./vm-users.local.json (see 'azfleet settings').
    """
    settings = _settings(ctx)
    config_path = config or settings.users_config

    try:
        spec = load_user_config(config_path)
        PrerequisiteChecker.require(PrerequisiteChecker.REMOTE_TOOLS)

        inventory = _make_inventory(settings)
        inventory.ensure_logged_in()
        _log_user_spec(spec, "check")

        report = LoginAuditor(inventory, _make_executor(settings), settings).audit(spec)
    except (ConfigError, PreconditionError) as e:
        _fail(str(e))

    render_audit(report.checks)
    print_audit_summary(report.summary)
    sys.exit(report.summary.exit_code)


if __name__ == "__main__":
    main()
