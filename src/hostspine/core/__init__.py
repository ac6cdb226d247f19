"""Ambient building blocks shared by the launcher: errors, logging, settings, stores."""

from hostspine.core.errors import (
    CoordinatorStateError,
    DebugAttachWarning,
    DependencyInstallError,
    ErrorCategory,
    ErrorContext,
    HostSpineError,
    LaunchError,
    PreparationError,
    RuntimeFailure,
)
from hostspine.core.logging import bind_context, configure_logging, get_logger
from hostspine.core.secrets import (
    DictSettingsStore,
    EnvSettingsStore,
    JsonFileSettingsStore,
    SettingsStore,
)
from hostspine.core.settings import LauncherSettings

__all__ = [
    # Errors
    "HostSpineError",
    "ErrorCategory",
    "ErrorContext",
    "PreparationError",
    "DependencyInstallError",
    "LaunchError",
    "RuntimeFailure",
    "DebugAttachWarning",
    "CoordinatorStateError",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    # Settings
    "LauncherSettings",
    "SettingsStore",
    "DictSettingsStore",
    "EnvSettingsStore",
    "JsonFileSettingsStore",
]
