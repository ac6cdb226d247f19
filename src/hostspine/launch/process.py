"""Process supervisor: spawn, observe, and tear down one host process tree.

Architecture:

    .. code-block:: text

        ProcessSupervisor
        ┌──────────────────────────────────────────────────────────────┐
        │  launch(spec, work_dir)                                      │
        │    resolve executable (PATH / X_OK) ── LaunchError           │
        │    argv = executable + args + debug agent args({port})       │
        │    env  = os.environ + spec.env + HOSTSPINE_RUNTIME=local    │
        │    asyncio.create_subprocess_exec(stdout=PIPE, stderr=PIPE)  │
        │                                          → ProcessSession    │
        │                                                              │
        │  wait(session)     returncode → RunResult                    │
        │  mark_ready(session)  RUNNING → READY (once)                 │
        │  kill(session)     snapshot descendants (psutil)             │
        │                    SIGTERM tree → grace → SIGKILL survivors  │
        │                    then the process group, even after exit   │
        └──────────────────────────────────────────────────────────────┘

    ProcessSession state: CREATED → RUNNING → READY → TERMINATED
    (READY is optional; going back or repeating a state raises).

Guardrails:
    - The direct child is only ever reaped through its asyncio handle; psutil
      waits are limited to descendants.
    - ``kill`` is idempotent and safe to call while ``wait`` is pending.
    - On POSIX the child leads its own session; ``kill`` signals that group
      after the child is reaped, so orphaned descendants holding the output
      pipes are terminated too.

Tags:
    subprocess, asyncio, psutil, process-tree, host-spine
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import psutil

from hostspine.core.errors import CoordinatorStateError, ErrorContext, LaunchError
from hostspine.core.logging import get_logger
from hostspine.core.settings import LauncherSettings
from hostspine.launch.models import ProcessState, RunOutcome, RunResult, RunSpec

logger = get_logger(__name__)

RUNTIME_ENV_VAR = "HOSTSPINE_RUNTIME"
GROUP_POLL_SECONDS = 0.05
EXIT_POLL_SECONDS = 0.1

_POSIX = os.name == "posix"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class ProcessSession:
    """One spawned process and the streams captured at spawn time."""

    name: str
    command: tuple[str, ...]
    process: asyncio.subprocess.Process
    on_state: Callable[[ProcessSession, ProcessState], None] | None = None
    state: ProcessState = ProcessState.CREATED
    killed: bool = False
    ready_reached: bool = False
    pgid: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _kill_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None

    def transition(self, new_state: ProcessState) -> None:
        if new_state.rank <= self.state.rank:
            raise CoordinatorStateError(
                f"Illegal process transition {self.state.value} -> {new_state.value}",
                context=ErrorContext(metadata={"pid": self.pid, "session": self.name}),
            )
        old_state = self.state
        self.state = new_state
        logger.debug("process.state", session=self.name, pid=self.pid, old=old_state.value, new=new_state.value)
        if self.on_state is not None:
            self.on_state(self, new_state)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def resolve_executable(executable: str) -> str:
    """Return an absolute path for *executable* or raise ``LaunchError``."""
    has_separator = os.sep in executable or (os.altsep is not None and os.altsep in executable)
    if has_separator:
        path = Path(executable).expanduser()
        if not path.is_file():
            raise LaunchError(
                f"Executable not found: {executable}",
                context=ErrorContext(stage="launch", executable=executable),
            )
        if not os.access(path, os.X_OK):
            raise LaunchError(
                f"Executable is not executable: {executable}",
                context=ErrorContext(stage="launch", executable=executable),
            )
        return str(path.resolve())

    found = shutil.which(executable)
    if found is None:
        raise LaunchError(
            f"Executable {executable!r} not found on PATH",
            context=ErrorContext(stage="launch", executable=executable),
        )
    return found


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    except psutil.AccessDenied:
        logger.warning("process.descendants_denied", pid=pid)
        return []


def _signal_all(procs: list[psutil.Process], *, force: bool) -> None:
    for proc in procs:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("process.signal_denied", pid=proc.pid, force=force)


def _signal_group(pgid: int | None, sig: int) -> bool:
    """Signal every member of a process group. False when the group is gone."""
    if pgid is None or not _POSIX:
        return False
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("process.group_signal_denied", pgid=pgid, signal=sig)
        return False
    return True


def _group_alive(pgid: int | None) -> bool:
    return _signal_group(pgid, 0)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ProcessSupervisor:
    """Launches and terminates host processes.

    Args:
        kill_timeout_seconds: Grace period between SIGTERM and SIGKILL.
        stream_line_limit: asyncio stream buffer limit (max line length).
        inherit_env: Start from ``os.environ`` before applying the overlay.
    """

    def __init__(
        self,
        *,
        kill_timeout_seconds: float = 5.0,
        stream_line_limit: int = 1024 * 1024,
        inherit_env: bool = True,
    ) -> None:
        self.kill_timeout = kill_timeout_seconds
        self.stream_line_limit = stream_line_limit
        self.inherit_env = inherit_env

    @classmethod
    def from_settings(cls, settings: LauncherSettings) -> ProcessSupervisor:
        return cls(
            kill_timeout_seconds=settings.kill_timeout_seconds,
            stream_line_limit=settings.stream_line_limit,
        )

    def build_command(self, spec: RunSpec) -> list[str]:
        command = [resolve_executable(spec.executable), *spec.args]
        if spec.debug.enabled:
            if spec.debug.port is None:
                raise LaunchError(
                    "Debugging requested but no debug port was resolved",
                    context=ErrorContext(stage="launch", executable=spec.executable),
                )
            command.extend(spec.debug.render_args(spec.debug.port))
        return command

    def build_env(self, spec: RunSpec) -> dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {}
        env.update(spec.env)
        env[RUNTIME_ENV_VAR] = "local"
        return env

    async def launch(
        self,
        spec: RunSpec,
        work_dir: Path,
        *,
        on_state: Callable[[ProcessSession, ProcessState], None] | None = None,
    ) -> ProcessSession:
        command = self.build_command(spec)
        cwd = spec.working_dir or work_dir
        # Own process group, so the whole tree can be signalled after the child exits
        group_kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            group_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            group_kwargs["start_new_session"] = True
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=self.build_env(spec),
                cwd=str(cwd),
                limit=self.stream_line_limit,
                **group_kwargs,
            )
        except OSError as exc:
            raise LaunchError(
                f"Failed to start {command[0]}: {exc}",
                context=ErrorContext(stage="launch", executable=command[0], metadata={"cwd": str(cwd)}),
                cause=exc,
            ) from exc

        session = ProcessSession(
            name=spec.name,
            command=tuple(command),
            process=process,
            on_state=on_state,
            pgid=process.pid if _POSIX else None,
        )
        logger.info("process.launched", session=spec.name, pid=process.pid, command=command, cwd=str(cwd))
        session.transition(ProcessState.RUNNING)
        return session

    def mark_ready(self, session: ProcessSession) -> bool:
        """Move a running session to READY. False if it is not RUNNING."""
        if session.state != ProcessState.RUNNING or session.exited or session.killed:
            return False
        session.ready_reached = True
        session.transition(ProcessState.READY)
        return True

    async def wait(self, session: ProcessSession) -> RunResult:
        exit_code = await self._exit_code(session)
        if session.state != ProcessState.TERMINATED:
            session.transition(ProcessState.TERMINATED)

        if session.killed:
            outcome = RunOutcome.CANCELLED
        elif exit_code == 0:
            outcome = RunOutcome.SUCCEEDED
        else:
            outcome = RunOutcome.FAILED
        logger.info(
            "process.exited",
            session=session.name,
            pid=session.pid,
            exit_code=exit_code,
            outcome=outcome.value,
        )
        return RunResult(
            outcome=outcome,
            exit_code=exit_code,
            pid=session.pid,
            ready=session.ready_reached,
            started_at=session.started_at,
        )

    async def _exit_code(self, session: ProcessSession) -> int:
        """Return code of the direct child.

        ``Process.wait()`` also waits for the pipes to close, and a descendant
        holding them keeps it pending after the child is gone, so the return
        code is polled alongside it.
        """
        waiter = asyncio.ensure_future(session.process.wait())
        try:
            while session.returncode is None:
                done, _ = await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
                if done:
                    return waiter.result()
            return session.returncode
        finally:
            if not waiter.done():
                waiter.cancel()

    async def kill(self, session: ProcessSession) -> None:
        """Terminate the session's process tree. Safe to call repeatedly."""
        async with session._kill_lock:
            if not session.exited:
                await self._kill_running(session)
            # Descendants outlive the child and may still hold its pipes
            await self._kill_group(session)

    async def _kill_running(self, session: ProcessSession) -> None:
        session.killed = True
        descendants = _descendants(session.pid)
        logger.info(
            "process.killing",
            session=session.name,
            pid=session.pid,
            descendants=[p.pid for p in descendants],
        )

        try:
            session.process.terminate()
        except ProcessLookupError:
            pass
        _signal_all(descendants, force=False)
        _signal_group(session.pgid, signal.SIGTERM)

        try:
            await asyncio.wait_for(self._exit_code(session), timeout=self.kill_timeout)
        except TimeoutError:
            logger.warning("process.kill_escalated", session=session.name, pid=session.pid)
            try:
                session.process.kill()
            except ProcessLookupError:
                pass
            await self._exit_code(session)

        if descendants:
            _, alive = await asyncio.to_thread(psutil.wait_procs, descendants, timeout=self.kill_timeout)
            if alive:
                _signal_all(alive, force=True)
                await asyncio.to_thread(psutil.wait_procs, alive, timeout=self.kill_timeout)

    async def _kill_group(self, session: ProcessSession) -> None:
        if not _signal_group(session.pgid, signal.SIGTERM):
            return
        logger.info("process.group_terminating", session=session.name, pgid=session.pgid)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.kill_timeout
        while _group_alive(session.pgid):
            if loop.time() >= deadline:
                logger.warning("process.group_kill_escalated", session=session.name, pgid=session.pgid)
                _signal_group(session.pgid, signal.SIGKILL)
                return
            await asyncio.sleep(GROUP_POLL_SECONDS)
