"""Static capability inspection and the classification tables.

Capabilities are the trigger/binding types a host will expose. They are
read from descriptor metadata shipped with the build artifact; nothing is
executed.

Function hosts
    Every ``<function>/function.json`` one level below the artifact root
    contributes the ``type`` of each of its ``bindings``.

Containers
    The Dockerfile's first ``EXPOSE <port>`` line declares ``http:<port>``.
    Without one the port defaults to 8080 (80 for ``.war`` artifacts).

Classification is case-insensitive; capability names are kept as declared.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from pathlib import Path

from hostspine.core.errors import ErrorContext, PreparationError
from hostspine.launch.models import ProjectArtifacts

FUNCTION_DESCRIPTOR = "function.json"
DOCKERFILE = "Dockerfile"

# Bindings that work without the extension bundle
NO_INSTALL_BINDINGS = frozenset({"httptrigger", "http"})

# Triggers that run without the storage connection setting
STORAGE_EXEMPT_TRIGGERS = frozenset({
    "httptrigger",
    "kafkatrigger",
    "rabbitmqtrigger",
    "orchestrationtrigger",
    "activitytrigger",
    "entitytrigger",
})

DEFAULT_CONTAINER_PORT = 8080
DEFAULT_WAR_CONTAINER_PORT = 80

_EXPOSE_RE = re.compile(r"^\s*EXPOSE\s+(\d+)", re.IGNORECASE)


def is_trigger(capability: str) -> bool:
    return capability.lower().endswith("trigger")


def requires_install(capabilities: Iterable[str], no_install: Iterable[str] = NO_INSTALL_BINDINGS) -> bool:
    """True when any capability is outside the no-install set."""
    exempt = {c.lower() for c in no_install}
    return any(c.lower() not in exempt for c in capabilities)


def triggers_requiring_storage(
    capabilities: Iterable[str],
    exempt: Iterable[str] = STORAGE_EXEMPT_TRIGGERS,
) -> tuple[str, ...]:
    """Declared triggers that cannot run without the storage setting, sorted."""
    exempt_lower = {e.lower() for e in exempt}
    return tuple(sorted(
        c for c in set(capabilities)
        if is_trigger(c) and c.lower() not in exempt_lower
    ))


# ---------------------------------------------------------------------------
# Inspectors
# ---------------------------------------------------------------------------


def inspect_function_descriptors(artifacts: ProjectArtifacts) -> frozenset[str]:
    """Collect binding types from ``*/function.json`` under the artifact root."""
    root = artifacts.artifact_path
    if not root.is_dir():
        return frozenset()

    capabilities: set[str] = set()
    for descriptor in sorted(root.glob(f"*/{FUNCTION_DESCRIPTOR}")):
        document = load_json_document(descriptor)
        bindings = document.get("bindings", [])
        if not isinstance(bindings, list):
            raise PreparationError(
                f"'bindings' in {descriptor} must be a list",
                context=ErrorContext(stage="prepare"),
            )
        for binding in bindings:
            if isinstance(binding, dict) and binding.get("type"):
                capabilities.add(str(binding["type"]))
    return frozenset(capabilities)


def find_dockerfile(artifacts: ProjectArtifacts) -> Path | None:
    for extra in artifacts.extra_files:
        if extra.name == DOCKERFILE:
            return extra
    candidate_dir = artifacts.artifact_path if artifacts.artifact_path.is_dir() else artifacts.artifact_path.parent
    candidate = candidate_dir / DOCKERFILE
    return candidate if candidate.is_file() else None


def exposed_port(dockerfile_text: str, artifact_name: str = "") -> int:
    for line in dockerfile_text.splitlines():
        match = _EXPOSE_RE.match(line)
        if match:
            return int(match.group(1))
    return DEFAULT_WAR_CONTAINER_PORT if artifact_name.lower().endswith(".war") else DEFAULT_CONTAINER_PORT


def inspect_dockerfile(artifacts: ProjectArtifacts) -> frozenset[str]:
    dockerfile = find_dockerfile(artifacts)
    text = ""
    if dockerfile is not None:
        try:
            text = dockerfile.read_text(encoding="utf-8")
        except OSError as exc:
            raise PreparationError(f"cannot read {dockerfile}: {exc}", cause=exc) from exc
    return frozenset({f"http:{exposed_port(text, artifacts.artifact_path.name)}"})


def inspect_nothing(artifacts: ProjectArtifacts) -> frozenset[str]:
    return frozenset()


def load_json_document(path: Path) -> dict:
    """Read a JSON object from *path*, raising ``PreparationError`` on any problem."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise PreparationError(
            f"malformed JSON in {path}: {exc}",
            context=ErrorContext(stage="prepare"),
            cause=exc,
        ) from exc
    except OSError as exc:
        raise PreparationError(
            f"cannot read {path}: {exc}",
            context=ErrorContext(stage="prepare"),
            cause=exc,
        ) from exc
    if not isinstance(raw, dict):
        raise PreparationError(
            f"{path} must contain a JSON object, got {type(raw).__name__}",
            context=ErrorContext(stage="prepare"),
        )
    return raw
