"""Click group that answers usage errors with contextual help.

An unknown command, a bad option value or a missing argument prints
``Error: <message>``, a blank line and the help of the most specific command
involved, then exits with status 1.
"""

from typing import Any, NoReturn

import click

USAGE_ERRORS = (
    click.exceptions.UsageError,
    click.exceptions.BadParameter,
    click.exceptions.MissingParameter,
)


def show_usage_error(error: click.UsageError, fallback: click.Context | None) -> NoReturn:
    """Print the error plus help for the failing command and exit 1."""
    click.echo(f"Error: {error.format_message()}", err=True)

    help_ctx = getattr(error, "ctx", None) or fallback
    if help_ctx is None:
        raise SystemExit(1)

    click.echo("")
    click.echo(help_ctx.get_help())
    help_ctx.exit(1)


class AzfleetGroup(click.Group):
    """Group class for azfleet commands and subgroups."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().main(*args, **kwargs)
        except USAGE_ERRORS as e:
            show_usage_error(e, None)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except USAGE_ERRORS as e:
            show_usage_error(e, ctx)

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            # Parameter errors belong to the subcommand; invoke() reports them
            if isinstance(e, click.exceptions.MissingParameter | click.exceptions.BadParameter):
                raise
            show_usage_error(e, ctx)


# Subgroups declared with @group.group() inherit the same behavior
AzfleetGroup.group_class = AzfleetGroup
