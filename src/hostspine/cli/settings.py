"""
CLI: ``host-spine settings``, persisted app settings.

Documents saved here are merged during staging when a run names them with
``--settings-key``; explicit ``--setting`` values still win.

Usage::

    host-spine settings set orders-app AzureWebJobsStorage=UseDevelopmentStorage=true
    host-spine settings show orders-app
    host-spine settings path orders-app
"""

from __future__ import annotations

import json

import typer
from rich.console import Console
from rich.table import Table

from hostspine.cli.run import parse_settings
from hostspine.core.secrets import JsonFileSettingsStore
from hostspine.core.settings import LauncherSettings

app = typer.Typer(no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)


def _store() -> JsonFileSettingsStore:
    return JsonFileSettingsStore(LauncherSettings().settings_dir)


def _load(store: JsonFileSettingsStore, key: str) -> dict[str, str]:
    try:
        return store.load(key)
    except ValueError as exc:
        err_console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc


@app.command("set")
def set_settings(
    key: str = typer.Argument(..., help="Settings document name."),
    pairs: list[str] = typer.Argument(..., help="KEY=VALUE pairs."),
    replace: bool = typer.Option(False, "--replace", help="Replace the document instead of merging."),
) -> None:
    """Add or update values in a settings document."""
    store = _store()
    updates = parse_settings(pairs)
    current = {} if replace else _load(store, key)
    path = store.save(key, {**current, **updates})
    console.print(f"Saved {len(updates)} setting(s) to {path}")


@app.command("show")
def show_settings(
    key: str = typer.Argument(..., help="Settings document name."),
    show_values: bool = typer.Option(False, "--show-values", help="Print values unmasked."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Print a settings document (values masked by default)."""
    values = _load(_store(), key)
    shown = {k: (v if show_values or not v else "********") for k, v in sorted(values.items())}
    if json_out:
        typer.echo(json.dumps(shown, indent=2))
        return
    if not shown:
        console.print(f"[dim]No settings stored under {key!r}[/dim]")
        return
    table = Table(title=f"Settings: {key}")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for name, value in shown.items():
        table.add_row(name, value)
    console.print(table)


@app.command("path")
def settings_path(key: str = typer.Argument(..., help="Settings document name.")) -> None:
    """Print where a settings document is stored."""
    typer.echo(str(_store().path_for(key)))
