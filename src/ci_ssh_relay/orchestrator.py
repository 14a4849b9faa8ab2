"""Runs every available tunnel backend concurrently, isolating failures."""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import structlog

from .models import ErrorInfo, SettledOutcome, SshBringupResult, TunnelOutcome
from .tunnels.base import TunnelPlugin

logger = structlog.get_logger()


def log_dir_for(ssh_result: SshBringupResult, home: Path | None = None) -> Path:
    """Directory tunnel logs and PID files go to (next to the sshd log)."""
    if ssh_result.log_path:
        return Path(ssh_result.log_path).parent
    return (home or Path.home()) / ".ssh"


class TunnelOrchestrator:
    """Fans out install + start across tunnel plugins.

    A plugin that raises is reported as a rejected outcome; it never affects
    its siblings. Results come back in the order the plugins were given.
    """

    def __init__(self) -> None:
        self._started: list[TunnelPlugin] = []

    @property
    def started(self) -> list[TunnelPlugin]:
        return list(self._started)

    async def _run_one(self, plugin: TunnelPlugin, ssh_port: int, log_dir: Path) -> SettledOutcome:
        stage = "install"
        try:
            await plugin.install()
            stage = "start"
            self._started.append(plugin)
            outcome = await plugin.start(ssh_port, log_dir)
        except Exception as e:
            logger.error("Tunnel failed", tunnel=plugin.name, stage=stage, error=str(e))
            return SettledOutcome(
                status="rejected",
                outcome=TunnelOutcome(
                    kind=plugin.kind,
                    succeeded=False,
                    error=ErrorInfo.from_exception(e, stage=stage),
                ),
            )

        logger.info("Tunnel ready", tunnel=plugin.name, endpoint=outcome.endpoint)
        return SettledOutcome(status="fulfilled", outcome=outcome)

    async def run(
        self,
        plugins: Sequence[TunnelPlugin],
        ssh_result: SshBringupResult,
        log_dir: Path | None = None,
    ) -> list[SettledOutcome]:
        """Install and start every available plugin.

        Args:
            plugins: Backends in reporting order.
            ssh_result: The listening SSH daemon the tunnels forward to.
            log_dir: Where plugin logs and PID files go.

        Returns:
            One settled outcome per available plugin, in input order.
        """
        log_dir = log_dir or log_dir_for(ssh_result)
        available = [plugin for plugin in plugins if plugin.is_available()]

        skipped = [plugin.name for plugin in plugins if plugin not in available]
        if skipped:
            logger.debug("Skipping disabled tunnels", tunnels=skipped)
        if not available:
            logger.info("No tunnels enabled")
            return []

        logger.info("Starting tunnels", tunnels=[plugin.name for plugin in available])
        results = await asyncio.gather(
            *(self._run_one(plugin, ssh_result.port, log_dir) for plugin in available)
        )
        return list(results)

    def stop_all(self) -> int:
        """Stop every plugin that was started. Returns how many were signalled."""
        stopped = 0
        for plugin in self._started:
            try:
                if plugin.stop():
                    stopped += 1
            except Exception as e:
                logger.warning("Failed to stop tunnel", tunnel=plugin.name, error=str(e))
        return stopped
