"""
Structured error types for host-spine.

Every failure of a local host run is reported through one of the typed
errors below. Each carries a category, a retry hint, and an ``ErrorContext``
so that the CLI, log processors, and callers can act on them without parsing
messages.

Manifesto:
    - **Typed over generic:** one class per pipeline stage that can fail
    - **Fatal vs. advisory:** fatal errors abort the run, ``DebugAttachWarning``
      is only ever logged
    - **Rich context:** run id, stage, staging path, and exit codes travel
      with the error
    - **Chaining:** the underlying ``OSError``/``JSONDecodeError`` is kept as
      ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       HostSpineError                          │
        │          (category, retryable, context, cause)               │
        ├──────────────────────────────────────────────────────────────┤
        │  PreparationError        CONFIG      fatal, pre-launch       │
        │  DependencyInstallError  DEPENDENCY  fatal, pre-launch       │
        │  LaunchError             LAUNCH      fatal, bad executable   │
        │  RuntimeFailure          RUNTIME     host exited non-zero    │
        │  DebugAttachWarning      DEBUG       logged, never raised    │
        │  CoordinatorStateError   INTERNAL    misuse / bad transition │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = DependencyInstallError("extension install failed", exit_code=3)
    >>> err.exit_code
    3
    >>> err.to_dict()["category"]
    'DEPENDENCY'

Tags:
    error-handling, exception-hierarchy, host-spine, launcher
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hostspine.launch.models import RunResult


class ErrorCategory(str, Enum):
    """Classification of launcher errors for routing and reporting."""

    CONFIG = "CONFIG"  # Artifact or configuration problems
    DEPENDENCY = "DEPENDENCY"  # Extension/dependency helper failed
    LAUNCH = "LAUNCH"  # Executable missing or not startable
    RUNTIME = "RUNTIME"  # Host process exited with an error
    DEBUG = "DEBUG"  # Debugger attach problems
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only the fields that are set end up in ``to_dict()``.
    """

    run_id: str | None = None
    stage: str | None = None
    profile: str | None = None
    staging_dir: str | None = None
    executable: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("run_id", "stage", "profile", "staging_dir", "executable"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class HostSpineError(Exception):
    """Base exception for all host-spine errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.

    Args:
        message: Human-readable description.
        category: Overrides the class default category.
        retryable: Overrides the class default retry hint.
        context: Structured metadata for logging.
        cause: Underlying exception (also set as ``__cause__``).
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> HostSpineError:
        """Add context fields (unknown keys go to ``metadata``) and return self."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging and ``--json`` output."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        ctx = self.context.to_dict()
        if ctx:
            result["context"] = ctx
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


class PreparationError(HostSpineError):
    """Artifact missing/unreadable or configuration malformed.

    Raised before any process is spawned.
    """

    default_category = ErrorCategory.CONFIG


class DependencyInstallError(HostSpineError):
    """The extension/dependency helper exited non-zero."""

    default_category = ErrorCategory.DEPENDENCY
    default_retryable = True

    def __init__(self, message: str, *, exit_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["exit_code"] = self.exit_code
        return result


class LaunchError(HostSpineError):
    """The primary (or helper) executable could not be started."""

    default_category = ErrorCategory.LAUNCH


class RuntimeFailure(HostSpineError):
    """The primary host process exited with a non-zero code.

    ``last_error_line`` is the last stderr line that matched the failure
    signal, falling back to the last stderr line seen.
    """

    default_category = ErrorCategory.RUNTIME

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        last_error_line: str | None = None,
        result: RunResult | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.last_error_line = last_error_line
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["exit_code"] = self.exit_code
        result["last_error_line"] = self.last_error_line
        return result


class DebugAttachWarning(HostSpineError):
    """Debugger attach failed. Non-fatal; the host keeps running undebugged."""

    default_category = ErrorCategory.DEBUG

    def __init__(self, message: str, *, port: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.port = port


class CoordinatorStateError(HostSpineError):
    """A coordinator was reused or a session moved through an illegal transition."""

    default_category = ErrorCategory.INTERNAL


def is_fatal(error: BaseException) -> bool:
    """Return True for errors that abort a run."""
    return isinstance(error, HostSpineError) and not isinstance(error, DebugAttachWarning)
