"""
CLI: ``host-spine run`` / ``prepare`` / ``profiles``.

Usage::

    host-spine run function target/azure-functions/orders-app
    host-spine run function target/azure-functions/orders-app --debug --debug-port 5006
    host-spine run container build/libs/orders.jar --image orders:local
    host-spine run generic ./dist --executable ./serve.sh --ready "listening on"
    host-spine run --config launch.yaml --ready-timeout 60 --json

    host-spine prepare function target/azure-functions/orders-app
    host-spine profiles
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from hostspine.core.errors import HostSpineError, RuntimeFailure
from hostspine.core.secrets import JsonFileSettingsStore
from hostspine.core.settings import LauncherSettings
from hostspine.launch.config import LaunchConfig
from hostspine.launch.coordinator import RunCoordinator
from hostspine.launch.debug import EchoDebuggerAttacher
from hostspine.launch.models import RunResult, StagingManifest
from hostspine.launch.profiles import list_profiles
from hostspine.launch.sinks import ConsoleSink
from hostspine.launch.staging import StagingDirectoryPreparer, remove_staging_dir

console = Console()
err_console = Console(stderr=True)


# ── Config assembly ──────────────────────────────────────────────────────


def parse_settings(pairs: list[str]) -> dict[str, str]:
    """``["KEY=VALUE", ...]`` → dict. Raises ``typer.BadParameter``."""
    settings: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}")
        settings[key.strip()] = value
    return settings


def build_config(
    profile: str | None,
    artifact: Path | None,
    config_file: Path | None,
    overrides: dict[str, Any],
) -> LaunchConfig:
    """Combine a config file (if any) with command-line values.

    Command-line values that were given replace the file's; settings maps
    are merged with the command line winning.
    """
    given = {k: v for k, v in overrides.items() if v not in (None, [], {}, False)}
    try:
        if config_file is not None:
            base = LaunchConfig.from_yaml_file(config_file)
            data = base.model_dump()
            if profile:
                data["profile"] = profile
            if artifact:
                data["artifact"] = artifact
            settings = {**data.get("settings", {}), **given.pop("settings", {})}
            data.update(given)
            data["settings"] = settings
            return LaunchConfig.model_validate(data)

        if profile is None or artifact is None:
            raise typer.BadParameter("PROFILE and ARTIFACT are required unless --config is given")
        return LaunchConfig(profile=profile, artifact=artifact, **given)
    except (ValidationError, ValueError) as exc:
        err_console.print(f"[bold red]Invalid launch configuration:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc


# ── Run ──────────────────────────────────────────────────────────────────


async def execute(coordinator: RunCoordinator, ready_timeout: float | None = None) -> tuple[RunResult, bool]:
    """Run *coordinator*; returns (result, timed_out).

    SIGINT/SIGTERM request a cancellation instead of tearing the loop down,
    so the result is still reported.
    """
    loop = asyncio.get_running_loop()
    cancels: set[asyncio.Task[None]] = set()

    def request_cancel() -> None:
        task = asyncio.ensure_future(coordinator.cancel())
        cancels.add(task)
        task.add_done_callback(cancels.discard)

    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            continue

    timed_out = False
    run_task = asyncio.create_task(coordinator.run())
    try:
        if ready_timeout is not None:
            ready = await coordinator.wait_ready(ready_timeout)
            if not ready and not run_task.done():
                timed_out = True
                err_console.print(f"[yellow]Host not ready after {ready_timeout:g}s, stopping[/yellow]")
                await coordinator.cancel()
        return await run_task, timed_out
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        if cancels:
            await asyncio.gather(*cancels)


def run_command(
    profile: str | None = typer.Argument(None, help="Host profile: function, container or generic."),
    artifact: Path | None = typer.Argument(None, help="Build output directory or file."),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Launch configuration YAML."),
    executable: str | None = typer.Option(None, "--executable", "-e", help="Host executable override."),
    image: str | None = typer.Option(None, "--image", help="Image to run (container profile)."),
    host_config: Path | None = typer.Option(None, "--host-config", help="Host configuration file."),
    local_settings: Path | None = typer.Option(None, "--local-settings", help="Local settings file."),
    setting: list[str] = typer.Option([], "--setting", "-s", help="App setting KEY=VALUE. Repeatable."),
    settings_key: str | None = typer.Option(None, "--settings-key", "-k", help="Persisted settings document."),
    ready: list[str] = typer.Option([], "--ready", help="Readiness regex. Repeatable."),
    fail: list[str] = typer.Option([], "--fail", help="Failure regex. Repeatable."),
    debug: bool = typer.Option(False, "--debug", help="Start the host with a debug agent."),
    debug_port: int | None = typer.Option(None, "--debug-port", help="Debug port (auto-selected if omitted)."),
    ready_timeout: float | None = typer.Option(None, "--ready-timeout", help="Stop if not ready within N seconds."),
    json_out: bool = typer.Option(False, "--json", help="Print the run result as JSON."),
) -> None:
    """Stage an artifact and run its host until it exits or is stopped."""
    config = build_config(
        profile,
        artifact,
        config_file,
        {
            "executable": executable,
            "image": image,
            "host_config": host_config,
            "local_settings": local_settings,
            "settings": parse_settings(setting),
            "settings_key": settings_key,
            "readiness": ready,
            "failure": fail,
            "debug": debug,
            "debug_port": debug_port,
        },
    )
    settings = LauncherSettings()
    host_profile = config.resolve_profile()
    output = err_console if json_out else console
    coordinator = RunCoordinator(
        host_profile,
        config.to_run_spec(host_profile, settings),
        config.to_artifacts(),
        config.to_declared(),
        sink=ConsoleSink(output),
        attacher=EchoDebuggerAttacher(err_console),
        settings=settings,
        store=JsonFileSettingsStore(settings.settings_dir),
    )

    if not json_out:
        console.print(f"[bold]host-spine run[/] {host_profile.name}  run_id: {coordinator.run_id}")

    try:
        result, timed_out = asyncio.run(execute(coordinator, ready_timeout))
    except RuntimeFailure as exc:
        _report_error(exc, json_out)
        if exc.result is not None and not json_out:
            _print_run_result(exc.result)
        raise typer.Exit(code=1) from exc
    except HostSpineError as exc:
        _report_error(exc, json_out)
        raise typer.Exit(code=1) from exc

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_run_result(result)
    if timed_out:
        raise typer.Exit(code=1)


# ── Prepare ──────────────────────────────────────────────────────────────


def prepare_command(
    profile: str | None = typer.Argument(None, help="Host profile."),
    artifact: Path | None = typer.Argument(None, help="Build output directory or file."),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Launch configuration YAML."),
    host_config: Path | None = typer.Option(None, "--host-config", help="Host configuration file."),
    local_settings: Path | None = typer.Option(None, "--local-settings", help="Local settings file."),
    setting: list[str] = typer.Option([], "--setting", "-s", help="App setting KEY=VALUE. Repeatable."),
    settings_key: str | None = typer.Option(None, "--settings-key", "-k", help="Persisted settings document."),
    image: str | None = typer.Option(None, "--image", help="Image (container profile)."),
    executable: str | None = typer.Option(None, "--executable", "-e", help="Executable (generic profile)."),
    keep: bool = typer.Option(False, "--keep", help="Keep the staging directory."),
    show_values: bool = typer.Option(False, "--show-values", help="Print setting values unmasked."),
    json_out: bool = typer.Option(False, "--json", help="Print the manifest as JSON."),
) -> None:
    """Stage an artifact and show the resulting manifest without launching anything."""
    config = build_config(
        profile,
        artifact,
        config_file,
        {
            "host_config": host_config,
            "local_settings": local_settings,
            "settings": parse_settings(setting),
            "settings_key": settings_key,
            "image": image,
            "executable": executable,
        },
    )
    settings = LauncherSettings()
    preparer = StagingDirectoryPreparer(
        config.resolve_profile(),
        store=JsonFileSettingsStore(settings.settings_dir),
        staging_root=settings.staging_root,
    )
    try:
        manifest = preparer.prepare(config.to_artifacts(), config.to_declared())
    except HostSpineError as exc:
        _report_error(exc, json_out)
        raise typer.Exit(code=1) from exc

    try:
        if json_out:
            typer.echo(json.dumps(_manifest_payload(manifest, show_values), indent=2))
        else:
            _print_manifest(manifest, show_values)
    finally:
        if keep:
            err_console.print(f"Staging directory kept at {manifest.staging_dir}")
        else:
            remove_staging_dir(manifest.staging_dir)

    if manifest.blocking_missing_settings:
        raise typer.Exit(code=1)


# ── Profiles ─────────────────────────────────────────────────────────────


def profiles_command(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List the available host profiles."""
    profiles = list_profiles()
    if json_out:
        payload = [
            {
                "name": p.name,
                "description": p.description,
                "executable": p.default_executable,
                "args": list(p.default_args),
                "installs_dependencies": p.has_installer,
                "validates_runtime": p.validate_runtime is not None,
            }
            for p in profiles
        ]
        typer.echo(json.dumps(payload, indent=2))
        return

    table = Table(title="Host profiles")
    table.add_column("Name", style="cyan")
    table.add_column("Command")
    table.add_column("Installs deps")
    table.add_column("Description")
    for p in profiles:
        command = " ".join([p.default_executable or "<executable>", *p.default_args])
        table.add_row(p.name, command, "yes" if p.has_installer else "no", p.description)
    console.print(table)


# ── Output helpers ───────────────────────────────────────────────────────


def _report_error(exc: HostSpineError, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(exc.to_dict(), indent=2, default=str))
        return
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")


def _mask(value: str, show: bool) -> str:
    if show or not value:
        return value
    return "********"


def _manifest_payload(manifest: StagingManifest, show_values: bool) -> dict[str, Any]:
    return {
        "staging_dir": str(manifest.staging_dir),
        "profile": manifest.profile,
        "capabilities": sorted(manifest.capabilities),
        "settings": {k: _mask(v, show_values) for k, v in sorted(manifest.settings.items())},
        "missing_settings": [
            {"key": m.key, "required_by": list(m.required_by), "blocking": m.blocking}
            for m in manifest.missing_settings
        ],
        "files": list(manifest.files),
    }


def _print_manifest(manifest: StagingManifest, show_values: bool) -> None:
    console.print(f"[bold]Staging[/bold] {manifest.staging_dir}  (profile: {manifest.profile})")
    console.print(f"  capabilities: {', '.join(sorted(manifest.capabilities)) or '-'}")
    console.print(f"  files: {len(manifest.files)}")

    if manifest.settings:
        table = Table(title="Settings")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in sorted(manifest.settings.items()):
            table.add_row(key, _mask(value, show_values))
        console.print(table)

    for missing in manifest.missing_settings:
        style = "bold red" if missing.blocking else "yellow"
        console.print(f"[{style}]{missing.message}[/{style}]")


def _print_run_result(result: RunResult) -> None:
    colour = {"succeeded": "green", "failed": "red", "cancelled": "yellow"}[result.outcome.value]
    console.print(
        f"[bold {colour}]{result.outcome.value.upper()}[/bold {colour}]"
        f"  exit_code={result.exit_code}  ready={result.ready}  {result.duration_seconds:.1f}s"
    )
    if result.last_error_line and not result.succeeded:
        console.print(f"  last error: {result.last_error_line}")
    if result.debug_port is not None:
        console.print(f"  debug port: {result.debug_port}")
    for warning in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {warning}")

