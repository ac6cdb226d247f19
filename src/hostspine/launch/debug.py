"""Debug port selection and the debugger-attach collaborator."""

from __future__ import annotations

import inspect
import socket
from collections.abc import Awaitable
from typing import Protocol, runtime_checkable

from rich.console import Console

from hostspine.core.errors import ErrorContext, LaunchError

DEFAULT_DEBUG_PORT = 5005
MAX_PORT_PROBES = 200


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(start: int = DEFAULT_DEBUG_PORT, *, host: str = "127.0.0.1", max_probes: int = MAX_PORT_PROBES) -> int:
    """First bindable port at or above *start*.

    The port is only probed, not held, so another process may still take it
    before the host binds it.
    """
    for port in range(start, min(start + max_probes, 65536)):
        if is_port_free(port, host):
            return port
    raise LaunchError(
        f"No free debug port in range {start}-{start + max_probes - 1}",
        context=ErrorContext(stage="debug"),
    )


@runtime_checkable
class DebuggerAttacher(Protocol):
    """Called once when a debug-enabled host reports readiness."""

    def attach(self, port: int) -> Awaitable[None] | None: ...


async def invoke_attacher(attacher: DebuggerAttacher, port: int) -> None:
    result = attacher.attach(port)
    if inspect.isawaitable(result):
        await result


class EchoDebuggerAttacher:
    """Tell the user where to point their IDE."""

    def __init__(self, console: Console | None = None, host: str = "localhost") -> None:
        self.console = console or Console(stderr=True)
        self.host = host
        self.ports: list[int] = []

    def attach(self, port: int) -> None:
        self.ports.append(port)
        self.console.print(
            f"[bold green]Debugger ready[/bold green] attach a remote debugger to {self.host}:{port}"
        )
