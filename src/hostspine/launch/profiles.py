"""Host profiles: one coordinator, several kinds of local host.

A ``HostProfile`` carries everything that differs between app kinds so the
rest of the launcher stays generic:

.. code-block:: text

    HostProfile
    ├── Identity: name, description, default executable + args
    ├── Signals: readiness, failure
    ├── Debug: agent argument template ({port})
    ├── Staging: host config name/default, local settings name/defaults
    ├── Capabilities: inspector, no-install set, storage requirements
    ├── Preflight: host tool version check
    ├── Install: helper args, accepted bundle ids
    └── Launch: extra args derived from the manifest, settings-as-env

Profiles:
    function   Functions host CLI (``func host start``)
    container  docker-compatible CLI (``docker run --rm -p P:P ... IMAGE``)
    generic    any executable; caller supplies signals

Example:
    >>> profile = get_profile("function")
    >>> profile.readiness.matches("Job host started")
    True
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from hostspine.launch.capabilities import (
    NO_INSTALL_BINDINGS,
    STORAGE_EXEMPT_TRIGGERS,
    inspect_dockerfile,
    inspect_function_descriptors,
    inspect_nothing,
)
from hostspine.launch.models import (
    FailureSignal,
    ProjectArtifacts,
    ReadinessSignal,
    StagingManifest,
)
from hostspine.launch.runtime import RuntimeValidator, validate_function_runtime

STORAGE_SETTING = "AzureWebJobsStorage"
EXTENSION_BUNDLE_KEY = "extensionBundle"
EXTENSION_BUNDLE_ID = "Microsoft.Azure.Functions.ExtensionBundle"

DEFAULT_FUNCTION_HOST_CONFIG: dict[str, Any] = {
    "version": "2.0",
    "logging": {
        "applicationInsights": {
            "samplingSettings": {"isEnabled": True, "excludedTypes": "Request"},
        },
    },
    "extensionBundle": {"id": EXTENSION_BUNDLE_ID, "version": "[2.*, 3.0.0)"},
}

JDWP_AGENT_ARGS = (
    "--language-worker",
    "--",
    '"-agentlib:jdwp=transport=dt_socket,server=y,suspend=n,address={port}"',
)


@dataclass(frozen=True)
class HostProfile:
    """Parameters of one kind of local host."""

    name: str
    description: str
    default_executable: str
    default_args: tuple[str, ...] = ()
    readiness: ReadinessSignal = field(default_factory=ReadinessSignal)
    failure: FailureSignal = field(default_factory=FailureSignal)
    debug_agent_args: tuple[str, ...] = ()

    # Staging
    host_config_name: str | None = None
    default_host_config: Mapping[str, Any] | None = None
    local_settings_name: str | None = None
    default_local_settings: Mapping[str, str] = field(default_factory=dict)
    inspector: Callable[[ProjectArtifacts], frozenset[str]] = inspect_nothing

    # Settings requirements
    storage_setting: str | None = None
    storage_exempt_triggers: frozenset[str] = STORAGE_EXEMPT_TRIGGERS

    # Preflight
    validate_runtime: RuntimeValidator | None = None

    # Dependency install helper
    install_args: tuple[str, ...] = ()
    no_install_capabilities: frozenset[str] = NO_INSTALL_BINDINGS
    bundle_key: str = EXTENSION_BUNDLE_KEY
    accepted_bundle_ids: frozenset[str] = frozenset()

    # Launch
    export_settings_as_env: bool = False
    manifest_args: Callable[[tuple[str, ...], StagingManifest], tuple[str, ...]] | None = None

    @property
    def has_installer(self) -> bool:
        return bool(self.install_args)

    def declares_bundle(self, host_config: Mapping[str, Any]) -> bool:
        """True when *host_config* references a self-contained extension bundle.

        With ``accepted_bundle_ids`` empty, any bundle id counts.
        """
        bundle = host_config.get(self.bundle_key)
        if not isinstance(bundle, Mapping):
            return False
        bundle_id = bundle.get("id")
        if not isinstance(bundle_id, str) or not bundle_id:
            return False
        if not self.accepted_bundle_ids:
            return True
        return bundle_id.lower() in {b.lower() for b in self.accepted_bundle_ids}

    def launch_args(self, args: tuple[str, ...], manifest: StagingManifest) -> tuple[str, ...]:
        """Final static argument list for a manifest."""
        if self.manifest_args is None:
            return args
        return self.manifest_args(args, manifest)


def _container_args(args: tuple[str, ...], manifest: StagingManifest) -> tuple[str, ...]:
    """Insert ``-p``/``-e`` flags before the image (the last argument)."""
    if not args:
        return args
    flags: list[str] = []
    for capability in sorted(manifest.capabilities):
        if capability.startswith("http:"):
            port = capability.split(":", 1)[1]
            flags.extend(["-p", f"{port}:{port}"])
    for key in sorted(manifest.settings):
        # Value comes from the process environment, not the command line
        flags.extend(["-e", key])
    return (*args[:-1], *flags, args[-1])


FUNCTION_PROFILE = HostProfile(
    name="function",
    description="Functions host CLI run from a staged build output",
    default_executable="func",
    default_args=("host", "start"),
    readiness=ReadinessSignal.containing(
        "Job host started",
        "Listening for transport dt_socket at address",
    ),
    failure=FailureSignal.regex(r"Port \d+ is unavailable"),
    debug_agent_args=JDWP_AGENT_ARGS,
    host_config_name="host.json",
    default_host_config=DEFAULT_FUNCTION_HOST_CONFIG,
    local_settings_name="local.settings.json",
    default_local_settings={STORAGE_SETTING: "", "FUNCTIONS_WORKER_RUNTIME": "java"},
    inspector=inspect_function_descriptors,
    storage_setting=STORAGE_SETTING,
    install_args=("extensions", "install", "--java"),
    accepted_bundle_ids=frozenset({EXTENSION_BUNDLE_ID}),
    validate_runtime=validate_function_runtime,
)

CONTAINER_PROFILE = HostProfile(
    name="container",
    description="Prebuilt image run through a docker-compatible CLI",
    default_executable="docker",
    default_args=("run", "--rm"),
    readiness=ReadinessSignal.regex(
        r"(?i)started .* in \d",
        r"(?i)server startup in",
        r"(?i)listening on",
    ),
    failure=FailureSignal.regex(r"(?i)port is already allocated", r"(?i)address already in use"),
    inspector=inspect_dockerfile,
    export_settings_as_env=True,
    manifest_args=_container_args,
)

GENERIC_PROFILE = HostProfile(
    name="generic",
    description="Any executable; readiness and failure patterns come from the caller",
    default_executable="",
)

PROFILES: dict[str, HostProfile] = {
    p.name: p for p in (FUNCTION_PROFILE, CONTAINER_PROFILE, GENERIC_PROFILE)
}


def get_profile(name: str) -> HostProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise KeyError(f"Unknown host profile {name!r}. Available: {', '.join(sorted(PROFILES))}") from None


def list_profiles() -> list[HostProfile]:
    return [PROFILES[name] for name in sorted(PROFILES)]
