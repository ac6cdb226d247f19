"""Launch configuration files.

A ``LaunchConfig`` describes one run declaratively so it can be checked in
next to a project and replayed with ``host-spine run --config launch.yaml``.

Example ``launch.yaml``::

    profile: function
    artifact: target/azure-functions/orders-app
    settings_key: orders-app
    settings:
      FUNCTIONS_WORKER_RUNTIME: java
    debug: true
    debug_port: 5005

Container example::

    profile: container
    artifact: build/libs/orders.jar
    image: orders:local
    settings:
      SPRING_PROFILES_ACTIVE: local

Architecture Decisions:
    - Pydantic v2 model validated from ``yaml.safe_load`` output, the same
      route used for workflow YAML elsewhere.
    - Relative paths in a file are resolved against the file's directory.
    - ``from_env()`` maps ``HOSTSPINE_LAUNCH_*`` variables; keyword
      overrides win over the environment.

Tags:
    config, yaml, pydantic, launch, host-spine
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from hostspine.core.settings import LauncherSettings
from hostspine.launch.models import (
    DebugConfig,
    DeclaredConfig,
    FailureSignal,
    ProjectArtifacts,
    ReadinessSignal,
    RunSpec,
)
from hostspine.launch.profiles import PROFILES, HostProfile, get_profile


class LaunchConfig(BaseModel):
    """Declarative description of one local host run."""

    profile: str = Field(default="function", description="Host profile name")
    artifact: Path = Field(..., description="Build output directory or file")
    executable: str | None = Field(default=None, description="Overrides the profile/tool default")
    args: list[str] | None = Field(default=None, description="Replaces the profile default args")
    image: str | None = Field(default=None, description="Image to run (container profile)")
    name: str = "host"
    working_dir: Path | None = None

    host_config: Path | None = None
    local_settings: Path | None = None
    extra_files: list[Path] = Field(default_factory=list)

    settings: dict[str, str] = Field(default_factory=dict, description="Highest-precedence app settings")
    settings_key: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    debug: bool = False
    debug_port: int | None = Field(default=None, ge=1, le=65535)
    debug_args: list[str] | None = Field(default=None, description="Agent args with a {port} placeholder")

    readiness: list[str] = Field(default_factory=list, description="Regex patterns replacing the profile's")
    failure: list[str] = Field(default_factory=list, description="Regex patterns replacing the profile's")

    @model_validator(mode="after")
    def _check_profile(self) -> LaunchConfig:
        if self.profile not in PROFILES:
            raise ValueError(f"Unknown profile {self.profile!r}. Available: {', '.join(sorted(PROFILES))}")
        if self.profile == "generic" and not self.executable:
            raise ValueError("The generic profile requires 'executable'")
        if self.profile == "container" and not self.image and self.args is None:
            raise ValueError("The container profile requires 'image'")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, yaml_content: str, *, base_dir: Path | None = None) -> LaunchConfig:
        """Parse and validate YAML content.

        Raises:
            ValueError: Invalid YAML or a document that fails validation.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Launch configuration must be a YAML mapping")

        config = cls.model_validate(data)
        if base_dir is not None:
            config = config._resolved_against(base_dir)
        return config

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> LaunchConfig:
        path = Path(path)
        content = path.read_text(encoding="utf-8")
        return cls.from_yaml(content, base_dir=path.resolve().parent)

    @classmethod
    def from_env(cls, **overrides: Any) -> LaunchConfig:
        """Create config from HOSTSPINE_LAUNCH_* environment variables."""
        env_map = {
            "profile": "HOSTSPINE_LAUNCH_PROFILE",
            "artifact": "HOSTSPINE_LAUNCH_ARTIFACT",
            "executable": "HOSTSPINE_LAUNCH_EXECUTABLE",
            "image": "HOSTSPINE_LAUNCH_IMAGE",
            "settings_key": "HOSTSPINE_LAUNCH_SETTINGS_KEY",
            "debug": "HOSTSPINE_LAUNCH_DEBUG",
            "debug_port": "HOSTSPINE_LAUNCH_DEBUG_PORT",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                if field_name == "debug":
                    values[field_name] = env_val.lower() in ("true", "1", "yes")
                elif field_name == "debug_port":
                    values[field_name] = int(env_val)
                else:
                    values[field_name] = env_val
        values.update(overrides)
        return cls(**values)

    def _resolved_against(self, base_dir: Path) -> LaunchConfig:
        def resolve(p: Path | None) -> Path | None:
            if p is None or p.is_absolute():
                return p
            return base_dir / p

        return self.model_copy(update={
            "artifact": resolve(self.artifact),
            "working_dir": resolve(self.working_dir),
            "host_config": resolve(self.host_config),
            "local_settings": resolve(self.local_settings),
            "extra_files": [resolve(p) for p in self.extra_files],
        })

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def resolve_profile(self) -> HostProfile:
        """The named profile, with signal overrides applied."""
        profile = get_profile(self.profile)
        changes: dict[str, Any] = {}
        if self.readiness:
            changes["readiness"] = ReadinessSignal.regex(*self.readiness)
        if self.failure:
            changes["failure"] = FailureSignal.regex(*self.failure)
        return dataclasses.replace(profile, **changes) if changes else profile

    def to_run_spec(self, profile: HostProfile, settings: LauncherSettings | None = None) -> RunSpec:
        settings = settings or LauncherSettings()
        executable = self.executable or settings.executable_for(profile.name) or profile.default_executable
        args = list(self.args) if self.args is not None else list(profile.default_args)
        if self.image:
            args.append(self.image)
        debug = DebugConfig(
            enabled=self.debug,
            port=self.debug_port,
            agent_args=tuple(self.debug_args) if self.debug_args is not None else profile.debug_agent_args,
        )
        return RunSpec(
            executable=executable,
            args=tuple(args),
            working_dir=self.working_dir,
            env=dict(self.env),
            debug=debug,
            name=self.name,
        )

    def to_artifacts(self) -> ProjectArtifacts:
        return ProjectArtifacts(
            artifact_path=self.artifact,
            host_config_path=self.host_config,
            local_settings_path=self.local_settings,
            extra_files=tuple(self.extra_files),
        )

    def to_declared(self) -> DeclaredConfig:
        return DeclaredConfig(run_settings=dict(self.settings), settings_key=self.settings_key)
