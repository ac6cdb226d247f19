"""Staging directory preparation.

Builds the isolated per-run working directory the host is launched in and
computes the ``StagingManifest`` every later stage reads.

Architecture:

    .. code-block:: text

        StagingDirectoryPreparer.prepare(artifacts, declared)
        ┌──────────────────────────────────────────────────────────────┐
        │ 1. validate artifact exists                                  │
        │ 2. mkdtemp  hostspine-<run>-XXXX   (under staging_root)      │
        │ 3. copy artifact (dir contents or single file) + extras      │
        │ 4. host config: explicit path > staged copy > profile default│
        │ 5. capabilities = profile.inspector(artifacts)   (static)    │
        │ 6. settings = file defaults < settings store < run settings  │
        │ 7. missing required settings → MissingSetting (data only)    │
        │ 8. write merged local settings into staging                  │
        └──────────────────────────────────────────────────────────────┘
              │ any failure: remove the directory, raise PreparationError
              ▼
        StagingManifest (frozen)

Guardrails:
    - A missing required setting is never a PreparationError; it is
      surfaced on the manifest for validation further up.
    - The staging path is the only thing that differs between two
      preparations of the same inputs.

Tags:
    staging, configuration, merge, host-spine
"""

from __future__ import annotations

import json
import shutil
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from hostspine.core.errors import ErrorContext, PreparationError
from hostspine.core.logging import get_logger
from hostspine.core.secrets import SettingsStore
from hostspine.launch.capabilities import load_json_document, triggers_requiring_storage
from hostspine.launch.models import (
    DeclaredConfig,
    MissingSetting,
    ProjectArtifacts,
    StagingManifest,
)
from hostspine.launch.profiles import HostProfile

logger = get_logger(__name__)

LOCAL_SETTINGS_VALUES = "Values"


def merge_settings(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge settings maps, later layers overriding earlier ones."""
    merged: dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update({str(k): str(v) for k, v in layer.items()})
    return merged


def remove_staging_dir(path: Path | None) -> bool:
    """Delete a staging directory. Returns True if something was removed."""
    if path is None or not path.exists():
        return False
    shutil.rmtree(path, ignore_errors=True)
    if path.exists():
        logger.warning("staging.remove_incomplete", staging_dir=str(path))
    return True


class StagingDirectoryPreparer:
    """Materializes a fresh staging directory for one run.

    Args:
        profile: Host profile describing config file names and requirements.
        store: Settings store consulted for ``DeclaredConfig.settings_key``.
        staging_root: Parent directory for staging dirs (system temp if None).
        run_id: Used in the directory prefix and in log context.
    """

    def __init__(
        self,
        profile: HostProfile,
        *,
        store: SettingsStore | None = None,
        staging_root: Path | None = None,
        run_id: str | None = None,
    ) -> None:
        self.profile = profile
        self.store = store
        self.staging_root = Path(staging_root) if staging_root else None
        self.run_id = run_id or uuid.uuid4().hex[:12]

    def prepare(self, artifacts: ProjectArtifacts, declared: DeclaredConfig) -> StagingManifest:
        source = artifacts.artifact_path
        if not source.exists():
            raise PreparationError(
                f"Build artifact not found: {source}",
                context=self._context(),
            )

        if self.staging_root is not None:
            self.staging_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"hostspine-{self.run_id[:8]}-", dir=self.staging_root))

        try:
            manifest = self._materialize(staging, artifacts, declared)
        except PreparationError as exc:
            remove_staging_dir(staging)
            exc.with_context(run_id=self.run_id, stage="prepare", profile=self.profile.name)
            raise
        except OSError as exc:
            remove_staging_dir(staging)
            raise PreparationError(
                f"Failed to prepare staging directory {staging}: {exc}",
                context=self._context(staging),
                cause=exc,
            ) from exc

        logger.info(
            "staging.prepared",
            staging_dir=str(staging),
            capabilities=sorted(manifest.capabilities),
            settings=len(manifest.settings),
            files=len(manifest.files),
        )
        for missing in manifest.missing_settings:
            logger.warning(
                "staging.missing_setting",
                key=missing.key,
                blocking=missing.blocking,
                required_by=list(missing.required_by),
            )
        return manifest

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _materialize(
        self,
        staging: Path,
        artifacts: ProjectArtifacts,
        declared: DeclaredConfig,
    ) -> StagingManifest:
        self._copy_artifact(artifacts.artifact_path, staging)
        for extra in artifacts.extra_files:
            if not extra.is_file():
                raise PreparationError(f"Configuration file not found: {extra}")
            shutil.copy2(extra, staging / extra.name)

        host_config = self._stage_host_config(staging, artifacts.host_config_path)
        capabilities = self.profile.inspector(artifacts)

        file_defaults, local_document = self._read_local_settings(staging, artifacts.local_settings_path)
        stored = self._load_stored(declared.settings_key)
        settings = merge_settings(file_defaults, stored, declared.run_settings)

        missing = self._missing_settings(settings, capabilities)
        self._write_local_settings(staging, local_document, settings)

        files = tuple(sorted(
            p.relative_to(staging).as_posix() for p in staging.rglob("*") if p.is_file()
        ))
        return StagingManifest(
            staging_dir=staging,
            profile=self.profile.name,
            settings=settings,
            capabilities=capabilities,
            host_config=host_config,
            missing_settings=missing,
            files=files,
        )

    @staticmethod
    def _copy_artifact(source: Path, staging: Path) -> None:
        if source.is_dir():
            shutil.copytree(source, staging, dirs_exist_ok=True)
        else:
            shutil.copy2(source, staging / source.name)

    def _stage_host_config(self, staging: Path, explicit: Path | None) -> dict[str, Any]:
        name = self.profile.host_config_name
        if name is None:
            return {}
        target = staging / name
        if explicit is not None:
            if not explicit.is_file():
                raise PreparationError(f"Host configuration not found: {explicit}")
            shutil.copy2(explicit, target)
        elif not target.exists():
            if self.profile.default_host_config is None:
                return {}
            target.write_text(json.dumps(self.profile.default_host_config, indent=2), encoding="utf-8")
        return load_json_document(target)

    def _read_local_settings(
        self,
        staging: Path,
        explicit: Path | None,
    ) -> tuple[dict[str, str], dict[str, Any]]:
        """Return (Values map, full document) of the lowest-precedence layer."""
        name = self.profile.local_settings_name
        if name is None:
            return {}, {}
        if explicit is not None:
            if not explicit.is_file():
                raise PreparationError(f"Local settings file not found: {explicit}")
            source: Path | None = explicit
        else:
            staged = staging / name
            source = staged if staged.is_file() else None

        if source is None:
            defaults = dict(self.profile.default_local_settings)
            return defaults, {"IsEncrypted": False, LOCAL_SETTINGS_VALUES: defaults}

        document = load_json_document(source)
        values = document.get(LOCAL_SETTINGS_VALUES, {})
        if not isinstance(values, dict):
            raise PreparationError(f"'{LOCAL_SETTINGS_VALUES}' in {source} must be a JSON object")
        return merge_settings(values), document

    def _load_stored(self, key: str | None) -> dict[str, str]:
        if not key or self.store is None:
            return {}
        try:
            return self.store.load(key)
        except ValueError as exc:
            raise PreparationError(
                f"Persisted settings for {key!r} are malformed: {exc}",
                cause=exc,
            ) from exc

    def _missing_settings(
        self,
        settings: Mapping[str, str],
        capabilities: frozenset[str],
    ) -> tuple[MissingSetting, ...]:
        key = self.profile.storage_setting
        if not key or settings.get(key):
            return ()
        needing = triggers_requiring_storage(capabilities, self.profile.storage_exempt_triggers)
        return (MissingSetting(key=key, required_by=needing, blocking=bool(needing)),)

    def _write_local_settings(
        self,
        staging: Path,
        document: Mapping[str, Any],
        settings: Mapping[str, str],
    ) -> None:
        name = self.profile.local_settings_name
        if name is None:
            return
        output = dict(document)
        output.setdefault("IsEncrypted", False)
        output[LOCAL_SETTINGS_VALUES] = dict(sorted(settings.items()))
        (staging / name).write_text(json.dumps(output, indent=2), encoding="utf-8")

    def _context(self, staging: Path | None = None) -> ErrorContext:
        return ErrorContext(
            run_id=self.run_id,
            stage="prepare",
            profile=self.profile.name,
            staging_dir=str(staging) if staging else None,
        )
