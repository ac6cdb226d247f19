"""Persisted app-settings stores.

A run configuration may reference a *settings key*; the store returns the
key/value map persisted under it (connection strings and other values the
user does not want in ``local.settings.json``). A missing key is "no value",
never an error. A document that exists but cannot be parsed raises
``ValueError`` and is reported by the caller as a configuration problem.

Backends:
    DictSettingsStore     in-memory, for tests and programmatic use
    EnvSettingsStore      ``HOSTSPINE_SETTINGS_<KEY>`` holding a JSON object
    JsonFileSettingsStore ``<settings_dir>/<key>.json``

Tags:
    settings-store, secrets, host-spine
"""

from __future__ import annotations

import json
import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


def _coerce_settings(raw: Any, source: str) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise ValueError(f"settings document {source} must be a JSON object, got {type(raw).__name__}")
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


class SettingsStore(ABC):
    """Abstract base for app-settings stores."""

    @abstractmethod
    def load(self, key: str) -> dict[str, str]:
        """Return the settings persisted under *key* (empty dict if none)."""
        ...

    def contains(self, key: str) -> bool:
        return bool(self.load(key))


class DictSettingsStore(SettingsStore):
    """In-memory store."""

    def __init__(self, documents: dict[str, dict[str, str]] | None = None):
        self._documents = {k: dict(v) for k, v in (documents or {}).items()}

    def load(self, key: str) -> dict[str, str]:
        return dict(self._documents.get(key, {}))

    def save(self, key: str, settings: dict[str, str]) -> None:
        self._documents[key] = dict(settings)


class EnvSettingsStore(SettingsStore):
    """Resolve settings documents from environment variables.

    ``load("my-app")`` reads ``HOSTSPINE_SETTINGS_MY_APP`` and parses it as a
    JSON object.
    """

    def __init__(self, prefix: str = "HOSTSPINE_SETTINGS_"):
        self.prefix = prefix

    def env_var(self, key: str) -> str:
        return self.prefix + _KEY_RE.sub("_", key).replace("-", "_").replace(".", "_").upper()

    def load(self, key: str) -> dict[str, str]:
        if not key:
            return {}
        value = os.environ.get(self.env_var(key))
        if not value:
            return {}
        try:
            raw = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON in {self.env_var(key)}: {exc}") from exc
        return _coerce_settings(raw, self.env_var(key))


class JsonFileSettingsStore(SettingsStore):
    """One JSON document per key under a directory.

    Documents are cached after the first read; ``save`` updates both the
    file and the cache.
    """

    def __init__(self, settings_dir: str | Path):
        self.settings_dir = Path(settings_dir)
        self._cache: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        return self.settings_dir / f"{_KEY_RE.sub('_', key)}.json"

    def load(self, key: str) -> dict[str, str]:
        if not key:
            return {}
        with self._lock:
            if key in self._cache:
                return dict(self._cache[key])

        path = self.path_for(key)
        if not path.is_file():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON in {path}: {exc}") from exc

        settings = _coerce_settings(raw, str(path))
        with self._lock:
            self._cache[key] = settings
        return dict(settings)

    def save(self, key: str, settings: dict[str, str]) -> Path:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(settings, indent=2, sort_keys=True), encoding="utf-8")
        with self._lock:
            self._cache[key] = dict(settings)
        return path

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
