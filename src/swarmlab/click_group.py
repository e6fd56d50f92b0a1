"""Custom Click group with automatic help display on errors.

Usage errors (unknown command, bad or missing parameter) print the error
followed by the help of the most specific command, then exit with the usage
error code.
"""

import sys
from typing import Any

import click


class SwarmlabGroup(click.Group):
    """Click group that shows contextual help on usage errors."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().main(*args, **kwargs)
        except click.exceptions.UsageError as e:
            click.echo(f"Error: {e.format_message()}", err=True)

            ctx = e.ctx if e.ctx else None
            if ctx:
                click.echo("")
                click.echo(ctx.get_help())
                # ctx.exit() keeps CliRunner working
                ctx.exit(e.exit_code)
            sys.exit(e.exit_code)

    def invoke(self, ctx: click.Context) -> Any:
        """Invoke the subcommand, showing its help on parameter errors."""
        try:
            return super().invoke(ctx)
        except click.exceptions.UsageError as e:
            click.echo(f"Error: {e.format_message()}", err=True)

            error_ctx = e.ctx if e.ctx else ctx
            click.echo("")
            click.echo(error_ctx.get_help())
            error_ctx.exit(e.exit_code)

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        """Show help when the command is not found."""
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            if isinstance(e, click.exceptions.MissingParameter | click.exceptions.BadParameter):
                raise
            click.echo(f"Error: {e.format_message()}", err=True)
            click.echo("")
            click.echo(ctx.get_help())
            ctx.exit(e.exit_code)
            return None, None, []


# Subgroups created with @main.group() also use SwarmlabGroup
SwarmlabGroup.group_class = SwarmlabGroup
