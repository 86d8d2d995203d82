"""Settings CLI commands.

- Show effective settings
- Change a single setting
"""

import logging
import sys

import click

from azfleet.click_group import AzfleetGroup
from azfleet.settings import ConfigError, SettingsManager

logger = logging.getLogger(__name__)


@click.group(name="settings", cls=AzfleetGroup)
def settings_group():
    """Show or change azfleet settings.

    \b
    COMMANDS:
        show       Print effective settings
        set        Change one setting

    \b
    EXAMPLES:
        $ azfleet settings show
        $ azfleet settings set ssh_connect_timeout 20
        $ azfleet settings set admin_group wheel
        $ azfleet settings set strict_host_key_checking true
    """
    pass


@settings_group.command(name="show")
@click.pass_context
def show_settings(ctx: click.Context):
    """Print effective settings and where they are stored."""
    custom_path = (ctx.obj or {}).get("settings_path")
    path = SettingsManager.get_settings_path(custom_path)

    try:
        settings = SettingsManager.load_settings(custom_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    source = str(path) if path.exists() else f"{path} (not created, defaults)"
    click.echo(f"Settings file: {source}")
    click.echo("")
    for key, value in settings.to_dict().items():
        if isinstance(value, bool):
            value = str(value).lower()
        click.echo(f"  {key} = {value}")


@settings_group.command(name="set")
@click.argument("key", type=str)
@click.argument("value", type=str)
@click.pass_context
def set_setting(ctx: click.Context, key: str, value: str):
    """Change one setting.

    \b
    KEY is the setting name (see 'azfleet settings show').
    VALUE is converted to the setting's type (integer, true/false, text).
    """
    custom_path = (ctx.obj or {}).get("settings_path")

    try:
        updated = SettingsManager.update_setting(key, value, custom_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ {key} = {getattr(updated, key)}")
    logger.debug(f"Updated setting {key} in {SettingsManager.get_settings_path(custom_path)}")
