"""Host tool version checks run before staging.

Java 9 and later workers only load on recent Functions host tool releases.
The installed ``func`` and ``java`` versions are read and compared:

.. code-block:: text

    func -v          → 4.0.5198
    java -version    → openjdk version "17.0.2" 2022-01-18   (stderr)

    java < 9                          → nothing to check
    func >= 3 and func < 3.0.2630     → LaunchError
    func <  3 and func < 2.7.2628     → LaunchError
    either version unreadable         → warning, the run continues

``java`` comes from ``LauncherSettings.java_path``, else ``$JAVA_HOME/bin``,
else PATH.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path

from hostspine.core.errors import ErrorContext, LaunchError
from hostspine.core.logging import get_logger
from hostspine.core.settings import LauncherSettings
from hostspine.launch.process import resolve_executable

logger = get_logger(__name__)

Version = tuple[int, ...]
RuntimeValidator = Callable[[str, LauncherSettings], Awaitable[list[str]]]

JAVA_VERSION_PATTERN = re.compile(r'version "(.*)"')
JAVA_9: Version = (9,)
FUNC_3: Version = (3,)
FUNC_MIN_FOR_JAVA_9: Version = (3, 0, 2630)
FUNC_V2_MIN_FOR_JAVA_9: Version = (2, 7, 2628)
VERSION_READ_TIMEOUT = 15.0

SKIPPED_WARNING = "Could not read the func or java version; host tool validation skipped"


def parse_version(text: str | None) -> Version | None:
    """Leading dotted numbers of *text*: ``"1.8.0_292"`` → ``(1, 8, 0, 292)``."""
    if not text:
        return None
    match = re.match(r"\s*v?(\d+(?:[._]\d+)*)", text)
    if match is None:
        return None
    return tuple(int(part) for part in re.split(r"[._]", match.group(1)))


def format_version(version: Version) -> str:
    return ".".join(str(part) for part in version)


def minimum_func_version(func_version: Version, java_version: Version) -> Version | None:
    """Oldest usable host tool release for *java_version*; None when any will do."""
    if java_version < JAVA_9:
        return None
    return FUNC_MIN_FOR_JAVA_9 if func_version >= FUNC_3 else FUNC_V2_MIN_FOR_JAVA_9


def find_java(settings: LauncherSettings) -> str | None:
    if settings.java_path:
        return settings.java_path
    java_home = os.environ.get("JAVA_HOME")
    if java_home and Path(java_home).is_dir():
        found = shutil.which("java", path=str(Path(java_home) / "bin"))
        if found is not None:
            return found
    return shutil.which("java")


async def read_output(
    command: list[str],
    *,
    include_stderr: bool = False,
    cwd: str | None = None,
    timeout: float = VERSION_READ_TIMEOUT,
) -> str | None:
    """Output of a short tool invocation, or None when it cannot be read."""
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if include_stderr else asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except OSError as exc:
        logger.info("runtime.version_unavailable", command=command, error=str(exc))
        return None
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        logger.info("runtime.version_timeout", command=command, timeout=timeout)
        return None
    return stdout.decode("utf-8", errors="replace").strip()


async def read_func_version(executable: str) -> Version | None:
    output = await read_output([executable, "-v"], cwd=str(Path(executable).parent))
    if not output:
        return None
    return parse_version(output.splitlines()[0])


async def read_java_version(java: str | None) -> Version | None:
    if java is None:
        return None
    output = await read_output([java, "-version"], include_stderr=True)
    if not output:
        return None
    match = JAVA_VERSION_PATTERN.search(output)
    return parse_version(match.group(1)) if match else None


async def validate_function_runtime(executable: str, settings: LauncherSettings) -> list[str]:
    """Raise ``LaunchError`` when the host tools are too old for the installed Java.

    Returns warnings; an unreadable version skips the check instead of failing.
    """
    func = resolve_executable(executable)
    func_version, java_version = await asyncio.gather(
        read_func_version(func),
        read_java_version(find_java(settings)),
    )
    if func_version is None or java_version is None:
        logger.warning(
            "runtime.validation_skipped",
            executable=func,
            func_version=format_version(func_version) if func_version else None,
            java_version=format_version(java_version) if java_version else None,
        )
        return [SKIPPED_WARNING]

    minimum = minimum_func_version(func_version, java_version)
    if minimum is not None and func_version < minimum:
        raise LaunchError(
            f"Functions host tools {format_version(func_version)} do not support Java "
            f"{format_version(java_version)}; update to {format_version(minimum)} or later",
            context=ErrorContext(
                stage="validate",
                executable=func,
                metadata={
                    "func_version": format_version(func_version),
                    "java_version": format_version(java_version),
                    "minimum_func_version": format_version(minimum),
                },
            ),
        )
    logger.info(
        "runtime.validated",
        func_version=format_version(func_version),
        java_version=format_version(java_version),
    )
    return []
