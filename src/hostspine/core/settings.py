"""Launcher settings.

Configuration that applies to every run on a machine (tool locations,
timeouts, where staging directories go) lives in :class:`LauncherSettings`.
Values come from ``HOSTSPINE_*`` environment variables or a ``.env`` file
and can be overridden with keyword arguments.

Examples:
    >>> from hostspine.core.settings import LauncherSettings
    >>> settings = LauncherSettings(func_path="/opt/func/func")
    >>> settings.default_debug_port
    5005

Tags:
    settings, configuration, pydantic, environment, host-spine
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LauncherSettings(BaseSettings):
    """Machine-wide launcher configuration.

    Fields
    ──────
    func_path            : Function host CLI (name on PATH or absolute path)
    docker_path          : docker-compatible CLI used by the container profile
    java_path            : java used for version checks (JAVA_HOME/bin, then PATH if None)
    staging_root         : Parent for per-run staging dirs (system temp if None)
    kill_timeout_seconds : Grace period between SIGTERM and SIGKILL
    default_debug_port   : First port probed when a debug port is auto-selected
    stream_line_limit    : Max bytes buffered for a single output line
    drain_timeout_seconds: Wait for output EOF after the host exits
    settings_dir         : Directory backing the JSON settings store
    log_level / log_format : structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="HOSTSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Tools ────────────────────────────────────────────────────
    func_path: str = "func"
    docker_path: str = "docker"
    java_path: str | None = None

    # ── Process handling ─────────────────────────────────────────
    staging_root: Path | None = None
    kill_timeout_seconds: float = Field(default=5.0, gt=0)
    default_debug_port: int = Field(default=5005, ge=1, le=65535)
    stream_line_limit: int = Field(default=1024 * 1024, ge=1024)
    drain_timeout_seconds: float = Field(default=2.0, gt=0)

    # ── Storage ──────────────────────────────────────────────────
    settings_dir: Path = Field(
        default_factory=lambda: Path.home() / ".hostspine" / "settings",
        description="Directory holding persisted app-settings JSON documents",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"

    def executable_for(self, profile: str) -> str | None:
        """Configured tool location for a built-in profile, if any."""
        return {"function": self.func_path, "container": self.docker_path}.get(profile)
