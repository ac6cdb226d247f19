"""Concurrent stdout/stderr draining with readiness and failure detection.

Each attached session gets two reader tasks. Every line goes to the sink in
receipt order for its stream; the first line on either stream that matches
the readiness signal sets ``StreamMonitor.ready`` exactly once.

.. code-block:: text

    session.stdout ──► reader task ─┐
                                    ├──► sink.emit(stream, line)
    session.stderr ──► reader task ─┤
                                    ├──► readiness latch ──► ready (Event)
                                    └──► failure match  ──► failures (Queue)
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field

from hostspine.core.logging import get_logger
from hostspine.launch.models import FailureSignal, ReadinessSignal, StreamKind
from hostspine.launch.process import ProcessSession
from hostspine.launch.sinks import Sink

logger = get_logger(__name__)


class _ReadinessLatch:
    """Compare-and-set guard: only the first claimant wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._line: str | None = None

    def claim(self, line: str) -> bool:
        with self._lock:
            if self._line is not None:
                return False
            self._line = line
            return True

    @property
    def line(self) -> str | None:
        return self._line


@dataclass
class StreamMonitor:
    """Live view of an attached session's output."""

    session_name: str
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    failures: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    last_error_line: str | None = None
    last_stderr_line: str | None = None
    line_counts: dict[StreamKind, int] = field(
        default_factory=lambda: {StreamKind.STDOUT: 0, StreamKind.STDERR: 0}
    )
    _latch: _ReadinessLatch = field(default_factory=_ReadinessLatch)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def ready_line(self) -> str | None:
        return self._latch.line

    @property
    def is_ready(self) -> bool:
        return self.ready.is_set()

    @property
    def error_line(self) -> str | None:
        """Failure-matched stderr line, else the last non-blank stderr line."""
        return self.last_error_line or self.last_stderr_line

    async def drained(self, timeout: float | None = None) -> bool:
        """Wait until both streams reached EOF.

        With a *timeout*, readers still blocked when it expires are cancelled
        and False is returned. A descendant that inherited the pipes keeps
        them open after the host itself exited.
        """
        if not self._tasks:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*self._tasks), timeout=timeout)
        except TimeoutError:
            self.cancel()
            logger.warning("stream.drain_timeout", session=self.session_name, timeout=timeout)
            return False
        return True

    def cancel(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def _observe(
        self,
        stream: StreamKind,
        line: str,
        readiness: ReadinessSignal,
        failure: FailureSignal,
    ) -> None:
        self.line_counts[stream] += 1
        if self._latch.line is None and readiness.matches(line) and self._latch.claim(line):
            self.ready.set()
            logger.info("stream.ready", session=self.session_name, stream=stream.value, line=line)

        if stream != StreamKind.STDERR:
            return
        if line.strip():
            self.last_stderr_line = line
        if failure.matches(line):
            self.last_error_line = line
            self.failures.put_nowait(line)
            logger.warning("stream.failure_line", session=self.session_name, line=line)


class StreamMultiplexer:
    """Attaches reader tasks to a launched session."""

    def attach(
        self,
        session: ProcessSession,
        sink: Sink,
        readiness: ReadinessSignal | None = None,
        failure: FailureSignal | None = None,
    ) -> StreamMonitor:
        readiness = readiness or ReadinessSignal.never()
        failure = failure or FailureSignal.never()
        monitor = StreamMonitor(session_name=session.name)
        for stream, reader in ((StreamKind.STDOUT, session.stdout), (StreamKind.STDERR, session.stderr)):
            if reader is None:
                continue
            task = asyncio.create_task(
                self._pump(monitor, reader, stream, sink, readiness, failure),
                name=f"{session.name}-{stream.value}",
            )
            monitor._tasks.append(task)
        return monitor

    async def _pump(
        self,
        monitor: StreamMonitor,
        reader: asyncio.StreamReader,
        stream: StreamKind,
        sink: Sink,
        readiness: ReadinessSignal,
        failure: FailureSignal,
    ) -> None:
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # Line longer than the reader limit; the buffer was discarded
                logger.warning("stream.line_too_long", session=monitor.session_name, stream=stream.value)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                sink.emit(stream, line)
            except Exception:
                logger.exception("stream.sink_failed", session=monitor.session_name, stream=stream.value)
            monitor._observe(stream, line, readiness, failure)
        logger.debug(
            "stream.eof",
            session=monitor.session_name,
            stream=stream.value,
            lines=monitor.line_counts[stream],
        )
