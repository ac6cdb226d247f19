"""
Root Typer application for the host-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from hostspine.core.logging import configure_logging

app = Typer(
    name="host-spine",
    help="host-spine: run application hosts locally with staging, readiness and debugging.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("host-spine")
        except PackageNotFoundError:
            from hostspine import __version__ as v
        typer.echo(f"host-spine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json."),
) -> None:
    """host-spine CLI: run, prepare and inspect local hosts."""
    configure_logging(level=log_level, format=log_format)


# ── Command registration ─────────────────────────────────────────────────

from hostspine.cli.run import prepare_command, profiles_command, run_command  # noqa: E402
from hostspine.cli.settings import app as settings_app  # noqa: E402

app.command("run")(run_command)
app.command("prepare")(prepare_command)
app.command("profiles")(profiles_command)
app.add_typer(settings_app, name="settings", help="Persisted app settings used during staging.")
