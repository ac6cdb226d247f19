"""Local host launch pipeline.

``RunCoordinator`` is the entry point; the other classes are its stages and
can be used on their own.
"""

from hostspine.launch.config import LaunchConfig
from hostspine.launch.coordinator import RunCoordinator
from hostspine.launch.debug import DebuggerAttacher, EchoDebuggerAttacher, find_free_port
from hostspine.launch.installer import DependencyInstaller
from hostspine.launch.models import (
    CoordinatorState,
    DebugConfig,
    DeclaredConfig,
    FailureSignal,
    MissingSetting,
    ProcessState,
    ProjectArtifacts,
    ReadinessSignal,
    RunOutcome,
    RunResult,
    RunSpec,
    StagingManifest,
    StreamKind,
)
from hostspine.launch.process import ProcessSession, ProcessSupervisor
from hostspine.launch.profiles import (
    CONTAINER_PROFILE,
    FUNCTION_PROFILE,
    GENERIC_PROFILE,
    HostProfile,
    get_profile,
    list_profiles,
)
from hostspine.launch.runtime import validate_function_runtime
from hostspine.launch.sinks import ConsoleSink, LogSink, MemorySink, Sink, TeeSink
from hostspine.launch.staging import StagingDirectoryPreparer
from hostspine.launch.streams import StreamMonitor, StreamMultiplexer

__all__ = [
    # Coordinator
    "RunCoordinator",
    "LaunchConfig",
    # Stages
    "StagingDirectoryPreparer",
    "DependencyInstaller",
    "ProcessSupervisor",
    "ProcessSession",
    "StreamMultiplexer",
    "StreamMonitor",
    # Models
    "RunSpec",
    "DebugConfig",
    "ProjectArtifacts",
    "DeclaredConfig",
    "StagingManifest",
    "MissingSetting",
    "ReadinessSignal",
    "FailureSignal",
    "RunResult",
    "RunOutcome",
    "ProcessState",
    "CoordinatorState",
    "StreamKind",
    # Profiles
    "HostProfile",
    "FUNCTION_PROFILE",
    "CONTAINER_PROFILE",
    "GENERIC_PROFILE",
    "get_profile",
    "list_profiles",
    "validate_function_runtime",
    # Collaborators
    "Sink",
    "ConsoleSink",
    "LogSink",
    "MemorySink",
    "TeeSink",
    "DebuggerAttacher",
    "EchoDebuggerAttacher",
    "find_free_port",
]
