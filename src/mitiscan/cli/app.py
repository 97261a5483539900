"""Root Typer application with subcommand registration."""

from __future__ import annotations

from typing import Optional

import typer

from mitiscan import MitiscanContext, __version__

app = typer.Typer(
    name="mitiscan",
    help="mitiscan - check PE, ELF and Mach-O binaries for exploit mitigations",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Shared state across commands
_ctx = MitiscanContext()


def get_context() -> MitiscanContext:
    return _ctx


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"mitiscan {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, "--config", "-C", help="Path to mitiscan.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V", callback=_version_callback, is_eager=True
    ),
) -> None:
    """mitiscan - check PE, ELF and Mach-O binaries for exploit mitigations."""
    from mitiscan.config.loader import load_config
    from mitiscan.engine.summary import ExitStatus
    from mitiscan.errors import ConfigurationError
    from mitiscan.utils.formatters import print_error
    from mitiscan.utils.logging import setup_logging

    _ctx.reset()
    try:
        cfg = load_config(config)
    except ConfigurationError as exc:
        setup_logging(level="DEBUG" if verbose else "WARNING")
        print_error(str(exc))
        raise typer.Exit(int(ExitStatus.CONFIGURATION_ERROR)) from exc
    setup_logging(
        level="DEBUG" if verbose else cfg.logging.level,
        json_output=cfg.logging.json_output,
    )
    _ctx.config = cfg


# -- Subcommand registration --
from mitiscan.cli.analyze import analyze_cmd  # noqa: E402
from mitiscan.cli.inspect_cmd import inspect_cmd  # noqa: E402
from mitiscan.cli.rules_cmd import rules_cmd  # noqa: E402

app.command(name="analyze")(analyze_cmd)
app.command(name="rules")(rules_cmd)
app.command(name="inspect")(inspect_cmd)
