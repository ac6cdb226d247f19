"""Runtime extension installation before the host starts.

Some hosts need binding extensions installed into the staging directory
before they can load the app. The install helper is skipped when the staged
host configuration already references a self-contained extension bundle,
or when every declared capability works without extensions.
"""

from __future__ import annotations

from pathlib import Path

from hostspine.core.errors import DependencyInstallError, ErrorContext
from hostspine.core.logging import get_logger
from hostspine.launch.capabilities import requires_install
from hostspine.launch.models import ReadinessSignal, RunSpec, StagingManifest
from hostspine.launch.process import ProcessSession, ProcessSupervisor
from hostspine.launch.profiles import HostProfile
from hostspine.launch.sinks import Sink
from hostspine.launch.streams import StreamMultiplexer

logger = get_logger(__name__)

INSTALLER_SESSION_NAME = "dependency-installer"


class DependencyInstaller:
    """Runs the profile's install helper when the manifest calls for it.

    Args:
        profile: Supplies the helper arguments and the skip tables.
        supervisor: Launches and kills the helper process.
        sink: Receives helper output, same as the primary host.
        executable: Helper tool (defaults to the profile's executable).
        drain_timeout: Seconds to wait for helper output EOF after it exits.
    """

    def __init__(
        self,
        profile: HostProfile,
        supervisor: ProcessSupervisor,
        sink: Sink,
        *,
        executable: str | None = None,
        drain_timeout: float | None = None,
    ) -> None:
        self.profile = profile
        self.supervisor = supervisor
        self.sink = sink
        self.executable = executable or profile.default_executable
        self.drain_timeout = drain_timeout
        self._session: ProcessSession | None = None
        self._cancelled = False

    def skip_reason(self, manifest: StagingManifest) -> str | None:
        """Why no install is needed, or None when the helper must run."""
        if not self.profile.has_installer:
            return "profile has no install helper"
        if self.profile.declares_bundle(manifest.host_config):
            return "extension bundle declared in host configuration"
        if not requires_install(manifest.capabilities, self.profile.no_install_capabilities):
            return "all capabilities work without extensions"
        return None

    async def install_if_needed(self, manifest: StagingManifest, staging_dir: Path) -> None:
        reason = self.skip_reason(manifest)
        if reason is not None:
            logger.info("installer.skipped", reason=reason)
            return
        if self._cancelled:
            logger.info("installer.cancelled")
            return

        spec = RunSpec(
            executable=self.executable,
            args=self.profile.install_args,
            name=INSTALLER_SESSION_NAME,
        )
        logger.info("installer.started", command=[self.executable, *self.profile.install_args])
        session = await self.supervisor.launch(spec, staging_dir)
        self._session = session
        if self._cancelled:
            # cancel() ran while the helper was being spawned
            await self.supervisor.kill(session)
        monitor = StreamMultiplexer().attach(session, self.sink, ReadinessSignal.never(), self.profile.failure)
        try:
            result = await self.supervisor.wait(session)
            await monitor.drained(self.drain_timeout)
        finally:
            monitor.cancel()
            # Helper descendants do not outlive the install
            await self.supervisor.kill(session)

        if result.exit_code != 0:
            raise DependencyInstallError(
                f"Extension install failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                context=ErrorContext(
                    stage="install",
                    profile=self.profile.name,
                    staging_dir=str(staging_dir),
                    executable=self.executable,
                    metadata={"last_error_line": monitor.error_line} if monitor.error_line else {},
                ),
            )
        logger.info("installer.completed")

    async def cancel(self) -> None:
        """Kill the helper if it is still running, or as soon as it starts."""
        self._cancelled = True
        if self._session is not None:
            await self.supervisor.kill(self._session)
