"""Command groups for azfleet CLI."""

from azfleet.commands.settings import settings_group

__all__ = ["settings_group"]
