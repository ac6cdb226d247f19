"""Run coordinator: one local host run from staging to cleanup.

Architecture:

    .. code-block:: text

        RunCoordinator.run()
        ┌──────────────────────────────────────────────────────────────┐
        │ IDLE                                                         │
        │  └► PREPARING    version check, StagingDirectoryPreparer     │
        │      └► INSTALLING_DEPENDENCIES  DependencyInstaller          │
        │          └► LAUNCHING        ProcessSupervisor.launch()      │
        │              └► RUNNING      StreamMultiplexer.attach()      │
        │                  └► READY    attach debugger (at most once)  │
        │                      └► TERMINATED                           │
        │                                                              │
        │  cancel() from any non-terminal state ──► CANCELLING         │
        │  finally: kill process tree, cancel helper, rm staging (1x)  │
        └──────────────────────────────────────────────────────────────┘

    Waiting races the process exit against the readiness event:

        wait_task  = supervisor.wait(session)
        ready_task = monitor.ready.wait()
        asyncio.wait({wait_task, ready_task}, FIRST_COMPLETED)

Outcomes:
    exit 0                       → RunResult(SUCCEEDED)
    exit != 0                    → RuntimeFailure (result attached)
    cancel() / exit while CANCELLING → RunResult(CANCELLED)
    asyncio task cancelled       → cleanup, then CancelledError propagates

Example:
    >>> coordinator = RunCoordinator(
    ...     get_profile("function"),
    ...     RunSpec(executable="func", args=("host", "start")),
    ...     ProjectArtifacts(artifact_path=Path("target/azure-functions/app")),
    ... )
    >>> result = await coordinator.run()

Tags:
    coordinator, asyncio, lifecycle, cancellation, host-spine
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from pathlib import Path

from hostspine.core.errors import (
    CoordinatorStateError,
    DebugAttachWarning,
    DependencyInstallError,
    ErrorContext,
    HostSpineError,
    RuntimeFailure,
)
from hostspine.core.logging import bind_context, get_logger, unbind_context
from hostspine.core.secrets import JsonFileSettingsStore, SettingsStore
from hostspine.core.settings import LauncherSettings
from hostspine.launch.debug import DebuggerAttacher, find_free_port, invoke_attacher
from hostspine.launch.installer import DependencyInstaller
from hostspine.launch.models import (
    CoordinatorState,
    DeclaredConfig,
    ProjectArtifacts,
    RunOutcome,
    RunResult,
    RunSpec,
    StagingManifest,
)
from hostspine.launch.process import ProcessSession, ProcessSupervisor
from hostspine.launch.profiles import HostProfile
from hostspine.launch.sinks import LogSink, Sink
from hostspine.launch.staging import StagingDirectoryPreparer, remove_staging_dir
from hostspine.launch.streams import StreamMonitor, StreamMultiplexer

logger = get_logger(__name__)

StateCallback = Callable[[CoordinatorState], None]


class RunCoordinator:
    """Drives a single run. Instances are single-use.

    Args:
        profile: Host profile (signals, install helper, staging layout).
        spec: What to launch. Profile launch args and debug defaults are
            applied on top of it.
        artifacts: Build output and static config files.
        declared: Explicit run settings and the settings-store key.
        sink: Receives every output line of the helper and the host.
        attacher: Debugger collaborator, called once on READY when
            ``spec.debug`` is enabled.
        settings: Launcher settings (staging root, timeouts, default port).
        store: Settings store for ``declared.settings_key``.
        supervisor: Process launcher; built from ``settings`` when omitted.
        on_state: Observer for coordinator state transitions.
        run_id: Identifier bound into every log line of the run.
    """

    def __init__(
        self,
        profile: HostProfile,
        spec: RunSpec,
        artifacts: ProjectArtifacts,
        declared: DeclaredConfig | None = None,
        *,
        sink: Sink | None = None,
        attacher: DebuggerAttacher | None = None,
        settings: LauncherSettings | None = None,
        store: SettingsStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        on_state: StateCallback | None = None,
        run_id: str | None = None,
    ) -> None:
        self.profile = profile
        self.spec = spec
        self.artifacts = artifacts
        self.declared = declared or DeclaredConfig()
        self.sink = sink or LogSink()
        self.attacher = attacher
        self.settings = settings or LauncherSettings()
        self.store = store if store is not None else JsonFileSettingsStore(self.settings.settings_dir)
        self.supervisor = supervisor or ProcessSupervisor.from_settings(self.settings)
        self.on_state = on_state
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self.state = CoordinatorState.IDLE
        self.manifest: StagingManifest | None = None
        self.session: ProcessSession | None = None
        self.debug_port: int | None = None

        self._started = False
        self._cancel_requested = False
        self._cleaned_up = False
        self._attached = False
        self._installer: DependencyInstaller | None = None
        self._monitor: StreamMonitor | None = None
        self._staging_dir: Path | None = None
        self._warnings: list[str] = []
        self._ready_event = asyncio.Event()
        self._done_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def run(self) -> RunResult:
        if self._started:
            raise CoordinatorStateError(
                "RunCoordinator instances are single-use; create a new one per run",
                context=ErrorContext(run_id=self.run_id, profile=self.profile.name),
            )
        self._started = True
        bind_context(run_id=self.run_id, profile=self.profile.name)
        try:
            return await self._run()
        except asyncio.CancelledError:
            self._cancel_requested = True
            self._set_state(CoordinatorState.CANCELLING)
            logger.warning("run.task_cancelled", state=self.state.value)
            raise
        except HostSpineError as exc:
            exc.with_context(run_id=self.run_id, profile=self.profile.name)
            logger.error("run.failed", **exc.to_dict())
            raise
        finally:
            await self._cleanup()
            self._set_state(CoordinatorState.TERMINATED)
            unbind_context("run_id", "profile")

    async def cancel(self) -> None:
        """Stop the run. The pending ``run()`` returns a CANCELLED result."""
        if self.state == CoordinatorState.TERMINATED or self._cancel_requested:
            return
        self._cancel_requested = True
        self._set_state(CoordinatorState.CANCELLING)
        logger.info("run.cancel_requested")
        if self._installer is not None:
            await self._installer.cancel()
        if self.session is not None:
            await self.supervisor.kill(self.session)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait for readiness. False on timeout or when the run ended first."""
        ready = asyncio.ensure_future(self._ready_event.wait())
        done = asyncio.ensure_future(self._done_event.wait())
        try:
            await asyncio.wait({ready, done}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            done.cancel()
        return self._ready_event.is_set()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(self) -> RunResult:
        result = RunResult(run_id=self.run_id, profile=self.profile.name)
        if self._cancel_requested:
            return self._finish(result, RunOutcome.CANCELLED)

        # Preparation
        self._set_state(CoordinatorState.PREPARING)
        if self.profile.validate_runtime is not None:
            self._warnings.extend(await self.profile.validate_runtime(self.spec.executable, self.settings))
        preparer = StagingDirectoryPreparer(
            self.profile,
            store=self.store,
            staging_root=self.settings.staging_root,
            run_id=self.run_id,
        )
        manifest = await asyncio.to_thread(preparer.prepare, self.artifacts, self.declared)
        self.manifest = manifest
        self._staging_dir = manifest.staging_dir
        self._warnings.extend(manifest.warnings)
        if self._cancel_requested:
            return self._finish(result, RunOutcome.CANCELLED)

        # Dependencies
        self._set_state(CoordinatorState.INSTALLING_DEPENDENCIES)
        self._installer = DependencyInstaller(
            self.profile,
            self.supervisor,
            self.sink,
            executable=self.spec.executable,
            drain_timeout=self.settings.drain_timeout_seconds,
        )
        try:
            await self._installer.install_if_needed(manifest, manifest.staging_dir)
        except DependencyInstallError:
            if self._cancel_requested:
                return self._finish(result, RunOutcome.CANCELLED)
            raise
        if self._cancel_requested:
            return self._finish(result, RunOutcome.CANCELLED)

        # Launch
        self._set_state(CoordinatorState.LAUNCHING)
        spec = self._final_spec(manifest)
        session = await self.supervisor.launch(spec, manifest.staging_dir)
        self.session = session
        if self._cancel_requested:
            await self.supervisor.kill(session)
        self._set_state(CoordinatorState.RUNNING)

        monitor = StreamMultiplexer().attach(session, self.sink, self.profile.readiness, self.profile.failure)
        self._monitor = monitor
        return await self._supervise(session, monitor, spec, result)

    async def _supervise(
        self,
        session: ProcessSession,
        monitor: StreamMonitor,
        spec: RunSpec,
        result: RunResult,
    ) -> RunResult:
        wait_task = asyncio.create_task(self.supervisor.wait(session), name=f"{self.run_id}-wait")
        ready_task = asyncio.create_task(monitor.ready.wait(), name=f"{self.run_id}-ready")
        try:
            await asyncio.wait({wait_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
            if monitor.is_ready:
                await self._on_ready(session, monitor, spec)
            exit_result = await wait_task
            await monitor.drained(self.settings.drain_timeout_seconds)
        finally:
            ready_task.cancel()
            if not wait_task.done():
                wait_task.cancel()

        result.exit_code = exit_result.exit_code
        result.pid = exit_result.pid
        result.ready = exit_result.ready
        result.ready_line = monitor.ready_line
        result.last_error_line = monitor.error_line

        if self._cancel_requested or exit_result.outcome == RunOutcome.CANCELLED:
            return self._finish(result, RunOutcome.CANCELLED)
        if exit_result.outcome == RunOutcome.SUCCEEDED:
            return self._finish(result, RunOutcome.SUCCEEDED)

        self._finish(result, RunOutcome.FAILED)
        raise RuntimeFailure(
            f"{spec.name} exited with code {result.exit_code}"
            + (f": {result.last_error_line}" if result.last_error_line else ""),
            exit_code=result.exit_code,
            last_error_line=result.last_error_line,
            result=result,
            context=ErrorContext(stage="run", staging_dir=result.staging_dir, executable=spec.executable),
        )

    async def _on_ready(self, session: ProcessSession, monitor: StreamMonitor, spec: RunSpec) -> None:
        if self._cancel_requested or not self.supervisor.mark_ready(session):
            return
        self._ready_event.set()
        self._set_state(CoordinatorState.READY)
        logger.info("run.ready", line=monitor.ready_line, pid=session.pid)

        if not spec.debug.enabled or self._attached or self.debug_port is None:
            return
        self._attached = True
        if self.attacher is None:
            logger.info("debug.listening", port=self.debug_port)
            return
        try:
            await invoke_attacher(self.attacher, self.debug_port)
        except Exception as exc:
            warning = DebugAttachWarning(
                f"Debugger attach on port {self.debug_port} failed: {exc}",
                port=self.debug_port,
                cause=exc,
                context=ErrorContext(stage="debug"),
            )
            logger.warning("debug.attach_failed", **warning.to_dict())
            self._warnings.append(warning.message)
        else:
            logger.info("debug.attached", port=self.debug_port)

    def _final_spec(self, manifest: StagingManifest) -> RunSpec:
        spec = self.spec
        if spec.debug.enabled:
            debug = spec.debug
            if not debug.agent_args and self.profile.debug_agent_args:
                debug = debug.model_copy(update={"agent_args": self.profile.debug_agent_args})
            if debug.port is None:
                debug = debug.model_copy(update={"port": find_free_port(self.settings.default_debug_port)})
            spec = spec.model_copy(update={"debug": debug})
            self.debug_port = debug.port
            logger.info("debug.port_selected", port=self.debug_port)

        spec = spec.model_copy(update={"args": self.profile.launch_args(spec.args, manifest)})
        if self.profile.export_settings_as_env:
            spec = spec.with_env(manifest.settings)
        return spec

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _finish(self, result: RunResult, outcome: RunOutcome) -> RunResult:
        result.outcome = outcome
        result.debug_port = self.debug_port
        result.staging_dir = str(self._staging_dir) if self._staging_dir else None
        result.warnings = list(self._warnings)
        result.mark_complete()
        logger.info(
            "run.finished",
            outcome=outcome.value,
            exit_code=result.exit_code,
            ready=result.ready,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _set_state(self, state: CoordinatorState) -> None:
        if self.state == state:
            return
        if self.state == CoordinatorState.TERMINATED:
            raise CoordinatorStateError(
                f"Coordinator already terminated; cannot enter {state.value}",
                context=ErrorContext(run_id=self.run_id),
            )
        if self.state == CoordinatorState.CANCELLING and state != CoordinatorState.TERMINATED:
            return
        logger.debug("run.state", old=self.state.value, new=state.value)
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    async def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        try:
            if self._installer is not None:
                await self._installer.cancel()
            if self.session is not None:
                await self.supervisor.kill(self.session)
            if self._monitor is not None:
                self._monitor.cancel()
        finally:
            removed = remove_staging_dir(self._staging_dir)
            logger.info(
                "run.cleanup",
                staging_removed=removed,
                pid=self.session.pid if self.session else None,
            )
            self._done_event.set()
