"""
Shared pytest fixtures for host-spine tests.

This module provides:
- Function-app and container artifact trees in temporary directories
- Launcher settings pointing staging and the settings store at tmp_path
- Spy collaborators (debugger attacher, process supervisor)
- Helpers that build RunSpecs for ``sys.executable -c`` scripts
- Fake command-line tools (shell scripts) for version checks
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure hostspine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hostspine.core.secrets import DictSettingsStore
from hostspine.core.settings import LauncherSettings
from hostspine.launch.models import DebugConfig, ProjectArtifacts, RunSpec
from hostspine.launch.process import ProcessSupervisor


# =============================================================================
# Helpers
# =============================================================================


def python_spec(script: str, *, name: str = "host", debug: DebugConfig | None = None, **kwargs: Any) -> RunSpec:
    """RunSpec running *script* with the current interpreter, unbuffered."""
    return RunSpec(
        executable=sys.executable,
        args=("-u", "-c", script),
        name=name,
        debug=debug or DebugConfig(),
        **kwargs,
    )


def write_tool(path: Path, body: str) -> str:
    """Create an executable shell script at *path* running *body*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def write_function(root: Path, name: str, *binding_types: str) -> Path:
    """Create ``<root>/<name>/function.json`` declaring *binding_types*."""
    folder = root / name
    folder.mkdir(parents=True, exist_ok=True)
    bindings = [{"type": t, "name": f"b{i}", "direction": "in"} for i, t in enumerate(binding_types)]
    path = folder / "function.json"
    path.write_text(json.dumps({"bindings": bindings}), encoding="utf-8")
    return path


# =============================================================================
# Artifacts
# =============================================================================


@pytest.fixture
def http_app(tmp_path: Path) -> Path:
    """Function app with a single HTTP-triggered function."""
    root = tmp_path / "http-app"
    root.mkdir()
    (root / "app.jar").write_bytes(b"PK\x03\x04jar")
    write_function(root, "HttpExample", "httpTrigger", "http")
    return root


@pytest.fixture
def queue_app(tmp_path: Path) -> Path:
    """Function app with a queue trigger (needs storage and extensions)."""
    root = tmp_path / "queue-app"
    root.mkdir()
    (root / "app.jar").write_bytes(b"PK\x03\x04jar")
    write_function(root, "QueueExample", "queueTrigger")
    write_function(root, "HttpExample", "httpTrigger", "http")
    return root


@pytest.fixture
def http_artifacts(http_app: Path) -> ProjectArtifacts:
    return ProjectArtifacts(artifact_path=http_app)


@pytest.fixture
def queue_artifacts(queue_app: Path) -> ProjectArtifacts:
    return ProjectArtifacts(artifact_path=queue_app)


# =============================================================================
# Settings and collaborators
# =============================================================================


@pytest.fixture
def launcher_settings(tmp_path: Path) -> LauncherSettings:
    staging_root = tmp_path / "staging"
    return LauncherSettings(
        staging_root=staging_root,
        settings_dir=tmp_path / "settings",
        kill_timeout_seconds=2.0,
    )


@pytest.fixture
def staging_root(launcher_settings: LauncherSettings) -> Path:
    assert launcher_settings.staging_root is not None
    return launcher_settings.staging_root


@pytest.fixture
def store() -> DictSettingsStore:
    return DictSettingsStore()


@pytest.fixture
def supervisor() -> ProcessSupervisor:
    return ProcessSupervisor(kill_timeout_seconds=2.0)


class SpyAttacher:
    """Records every attach call; optionally fails."""

    def __init__(self, *, error: Exception | None = None, is_async: bool = False) -> None:
        self.ports: list[int] = []
        self.error = error
        self.is_async = is_async

    def attach(self, port: int):
        if self.is_async:
            return self._attach_async(port)
        self._record(port)
        return None

    async def _attach_async(self, port: int) -> None:
        self._record(port)

    def _record(self, port: int) -> None:
        self.ports.append(port)
        if self.error is not None:
            raise self.error


class SpySupervisor(ProcessSupervisor):
    """Real supervisor that remembers every spec it launched."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.launched: list[RunSpec] = []

    async def launch(self, spec, work_dir, **kwargs):
        self.launched.append(spec)
        return await super().launch(spec, work_dir, **kwargs)


@pytest.fixture
def attacher() -> SpyAttacher:
    return SpyAttacher()


@pytest.fixture
def spy_supervisor() -> SpySupervisor:
    return SpySupervisor(kill_timeout_seconds=2.0)


# =============================================================================
# Helper fixtures (test modules are not importable packages)
# =============================================================================


@pytest.fixture
def make_spec():
    return python_spec


@pytest.fixture
def make_function():
    return write_function


@pytest.fixture
def attacher_factory():
    return SpyAttacher


@pytest.fixture
def make_tool():
    return write_tool
