"""Data model for local host runs.

Immutable inputs (``RunSpec``, ``ProjectArtifacts``, ``DeclaredConfig``),
the prepared ``StagingManifest``, per-line ``ReadinessSignal`` /
``FailureSignal`` predicates, and the terminal ``RunResult``.

.. code-block:: text

    ProjectArtifacts + DeclaredConfig
            │  StagingDirectoryPreparer.prepare()
            ▼
    StagingManifest (frozen) ──► DependencyInstaller / ProcessSupervisor
            │
    RunSpec (frozen) ──► ProcessSupervisor.launch() ──► ProcessSession
                                                     │
                                                     ▼
                                                 RunResult

Architecture Decisions:
    - Pydantic v2 (frozen) for ``RunSpec``, ``DebugConfig`` and ``RunResult``:
      validation at the edges, ``model_dump_json()`` for ``--json`` output.
    - Frozen dataclasses for the manifest and signals: internal values that
      never cross a serialization boundary.
    - ``MappingProxyType`` for manifest maps so "never mutated after
      prepare()" holds at runtime, not only by convention.

Tags:
    models, pydantic, dataclasses, run-spec, manifest, host-spine
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

PORT_PLACEHOLDER = "{port}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProcessState(str, Enum):
    """Lifecycle of a spawned process. Transitions only move forward."""

    CREATED = "created"
    RUNNING = "running"
    READY = "ready"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        return _PROCESS_STATE_ORDER[self]


_PROCESS_STATE_ORDER = {
    ProcessState.CREATED: 0,
    ProcessState.RUNNING: 1,
    ProcessState.READY: 2,
    ProcessState.TERMINATED: 3,
}


class CoordinatorState(str, Enum):
    """States of a RunCoordinator. CANCELLING is reachable from any non-terminal state."""

    IDLE = "idle"
    PREPARING = "preparing"
    INSTALLING_DEPENDENCIES = "installing_dependencies"
    LAUNCHING = "launching"
    RUNNING = "running"
    READY = "ready"
    CANCELLING = "cancelling"
    TERMINATED = "terminated"


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


# ---------------------------------------------------------------------------
# Run specification
# ---------------------------------------------------------------------------


class DebugConfig(BaseModel):
    """Debugger settings for a run.

    ``port=None`` means "pick a free port" (probing upward from the
    configured default). ``agent_args`` are appended to the command line when
    debugging is enabled; every ``{port}`` in them is replaced by the resolved
    port.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    port: int | None = Field(default=None, ge=1, le=65535)
    agent_args: tuple[str, ...] = ()

    def render_args(self, port: int) -> list[str]:
        return [arg.replace(PORT_PLACEHOLDER, str(port)) for arg in self.agent_args]


class RunSpec(BaseModel):
    """What to launch. Immutable once handed to a RunCoordinator.

    Example::

        spec = RunSpec(
            executable="func",
            args=("host", "start"),
            env={"FUNCTIONS_WORKER_RUNTIME": "java"},
            debug=DebugConfig(enabled=True, agent_args=("--inspect={port}",)),
        )
    """

    model_config = ConfigDict(frozen=True)

    executable: str
    args: tuple[str, ...] = ()
    working_dir: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    debug: DebugConfig = Field(default_factory=DebugConfig)
    name: str = "host"

    @field_validator("executable")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("executable must not be empty")
        return value

    def with_debug_port(self, port: int) -> RunSpec:
        """Return a copy with the debug port fixed."""
        return self.model_copy(update={"debug": self.debug.model_copy(update={"port": port})})

    def with_env(self, extra: Mapping[str, str]) -> RunSpec:
        """Return a copy whose overlay also contains *extra* (existing keys win)."""
        return self.model_copy(update={"env": {**extra, **self.env}})


# ---------------------------------------------------------------------------
# Preparation inputs and manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectArtifacts:
    """Build output plus static configuration files, as produced by the build step."""

    artifact_path: Path
    host_config_path: Path | None = None
    local_settings_path: Path | None = None
    extra_files: tuple[Path, ...] = ()


@dataclass(frozen=True)
class DeclaredConfig:
    """Explicit run configuration.

    ``run_settings`` has the highest merge precedence; ``settings_key`` names
    the document to look up in the settings store.
    """

    run_settings: Mapping[str, str] = field(default_factory=dict)
    settings_key: str | None = None


@dataclass(frozen=True)
class MissingSetting:
    """A setting some capability may need but that resolved to an empty value.

    ``blocking`` is True when at least one declared capability cannot work
    without it; validation outside the core decides whether to stop the run.
    """

    key: str
    required_by: tuple[str, ...] = ()
    blocking: bool = False

    @property
    def message(self) -> str:
        if self.blocking:
            return (
                f"Missing value for {self.key}. It is required by: "
                f"{', '.join(self.required_by)}."
            )
        return f"Missing value for {self.key}. No declared capability requires it yet."


@dataclass(frozen=True)
class StagingManifest:
    """Result of staging. Never mutated after ``prepare()`` returns."""

    staging_dir: Path
    profile: str
    settings: Mapping[str, str]
    capabilities: frozenset[str]
    host_config: Mapping[str, Any] = field(default_factory=dict)
    missing_settings: tuple[MissingSetting, ...] = ()
    files: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "settings", MappingProxyType(dict(self.settings)))
        object.__setattr__(self, "host_config", MappingProxyType(dict(self.host_config)))

    @property
    def warnings(self) -> list[str]:
        return [m.message for m in self.missing_settings]

    @property
    def blocking_missing_settings(self) -> tuple[MissingSetting, ...]:
        return tuple(m for m in self.missing_settings if m.blocking)

    def content_key(self) -> dict[str, Any]:
        """Everything except the staging path; equal across runs with equal inputs."""
        return {
            "profile": self.profile,
            "settings": dict(sorted(self.settings.items())),
            "capabilities": sorted(self.capabilities),
            "missing_settings": [(m.key, m.required_by, m.blocking) for m in self.missing_settings],
            "files": list(self.files),
        }


# ---------------------------------------------------------------------------
# Line signals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineSignal:
    """Stateless predicate over one output line.

    Matches when any substring occurs (case-insensitive) or any regular
    expression is found in the line.
    """

    substrings: tuple[str, ...] = ()
    patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def containing(cls, *phrases: str) -> LineSignal:
        return cls(substrings=tuple(p.lower() for p in phrases))

    @classmethod
    def regex(cls, *patterns: str | re.Pattern[str]) -> LineSignal:
        return cls(patterns=tuple(re.compile(p) if isinstance(p, str) else p for p in patterns))

    @classmethod
    def never(cls) -> LineSignal:
        return cls()

    def matches(self, line: str) -> bool:
        lowered = line.lower()
        if any(s in lowered for s in self.substrings):
            return True
        return any(p.search(line) for p in self.patterns)

    def __bool__(self) -> bool:
        return bool(self.substrings or self.patterns)


class ReadinessSignal(LineSignal):
    """Line indicating the host finished initializing."""


class FailureSignal(LineSignal):
    """stderr line worth reporting as the cause of a failure."""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class RunResult(BaseModel):
    """Terminal outcome of a run."""

    run_id: str = ""
    profile: str = ""
    outcome: RunOutcome = RunOutcome.SUCCEEDED
    exit_code: int | None = None
    pid: int | None = None
    ready: bool = False
    ready_line: str | None = None
    last_error_line: str | None = None
    debug_port: int | None = None
    staging_dir: str | None = None
    warnings: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == RunOutcome.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.outcome == RunOutcome.CANCELLED

    def mark_complete(self) -> RunResult:
        """Stamp ``finished_at`` and ``duration_seconds``; returns self."""
        self.finished_at = _utcnow()
        self.duration_seconds = round((self.finished_at - self.started_at).total_seconds(), 3)
        return self
