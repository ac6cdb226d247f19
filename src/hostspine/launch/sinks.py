"""Output sinks.

A sink is an append-only consumer of host output lines. Lines arrive in
receipt order per stream; no ordering is implied between stdout and stderr.
"""

from __future__ import annotations

import threading
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

from hostspine.core.logging import get_logger
from hostspine.launch.models import StreamKind

logger = get_logger(__name__)


@runtime_checkable
class Sink(Protocol):
    def emit(self, stream: StreamKind, line: str) -> None: ...


class ConsoleSink:
    """Print host output to the terminal, stderr lines highlighted."""

    def __init__(self, console: Console | None = None, *, prefix: str = "") -> None:
        self.console = console or Console(highlight=False, soft_wrap=True)
        self.prefix = prefix

    def emit(self, stream: StreamKind, line: str) -> None:
        text = escape(f"{self.prefix}{line}")
        if stream == StreamKind.STDERR:
            self.console.print(f"[red]{text}[/red]")
        else:
            self.console.print(text)


class LogSink:
    """Forward every line to the structured log."""

    def __init__(self, event: str = "host.output") -> None:
        self.event = event

    def emit(self, stream: StreamKind, line: str) -> None:
        logger.info(self.event, stream=stream.value, line=line)


class MemorySink:
    """Collect lines in memory. Safe to share between reader tasks."""

    def __init__(self) -> None:
        self._lines: list[tuple[StreamKind, str]] = []
        self._lock = threading.Lock()

    def emit(self, stream: StreamKind, line: str) -> None:
        with self._lock:
            self._lines.append((stream, line))

    @property
    def lines(self) -> list[tuple[StreamKind, str]]:
        with self._lock:
            return list(self._lines)

    def stream_lines(self, stream: StreamKind) -> list[str]:
        return [line for kind, line in self.lines if kind == stream]


class TeeSink:
    """Fan a line out to several sinks."""

    def __init__(self, *sinks: Sink) -> None:
        self.sinks = sinks

    def emit(self, stream: StreamKind, line: str) -> None:
        for sink in self.sinks:
            sink.emit(stream, line)
