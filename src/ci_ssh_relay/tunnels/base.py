"""Tunnel plugin contract and the process bookkeeping every backend shares."""

import re
from pathlib import Path
from typing import NoReturn, Protocol, runtime_checkable

import structlog

from ..models import HealthStatus, ProcessHandle, TunnelKind, TunnelOutcome
from ..process import ProcessRunner
from ..readiness import wait_for_log_match

logger = structlog.get_logger()

# Options for unattended reverse-forwarding ssh clients
SSH_CLIENT_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "BatchMode=yes",
    "-o", "ServerAliveInterval=30",
    "-o", "ServerAliveCountMax=3",
    "-o", "ExitOnForwardFailure=yes",
]  # fmt: skip


@runtime_checkable
class TunnelPlugin(Protocol):
    """A tunnel backend the orchestrator can install, start and stop."""

    kind: TunnelKind

    @property
    def name(self) -> str: ...

    def is_available(self) -> bool:
        """Whether this backend is enabled and configured (no side effects)."""
        ...

    async def install(self) -> bool:
        """Make sure the backend's client binary is present."""
        ...

    async def start(self, ssh_port: int, log_dir: Path) -> TunnelOutcome:
        """Launch the tunnel and discover its public endpoint."""
        ...

    def get_connect_command(self) -> str | None: ...

    def health_check(self) -> HealthStatus: ...

    def stop(self) -> bool: ...


class TunnelProcess:
    """PID file, log file and signalling for one backgrounded tunnel client."""

    def __init__(self, name: str, runner: ProcessRunner) -> None:
        self.name = name
        self.runner = runner
        self.handle: ProcessHandle | None = None
        self.pid_file: Path | None = None

    def log_path(self, log_dir: Path) -> Path:
        return Path(log_dir) / f"{self.name}.log"

    def pid_path(self, log_dir: Path) -> Path:
        return Path(log_dir) / f"{self.name}.pid"

    def launch(self, args: list[str], log_dir: Path) -> ProcessHandle:
        """Spawn ``args`` detached, appending output to ``<name>.log``."""
        log_dir = Path(log_dir)
        log_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        self.handle = self.runner.spawn_detached(args, self.log_path(log_dir))
        self.pid_file = self.pid_path(log_dir)
        self.pid_file.write_text(str(self.handle.pid), encoding="utf-8")

        logger.info("Tunnel process started", tunnel=self.name, pid=self.handle.pid)
        return self.handle

    def exec_foreground(self, args: list[str]) -> NoReturn:
        logger.info("Running tunnel in foreground", tunnel=self.name)
        self.runner.exec_foreground(args)

    async def discover(self, pattern: str | re.Pattern[str], timeout: float) -> str | None:
        """Wait for ``pattern`` to show up in this process's log."""
        if self.handle is None or self.handle.log_file is None:
            return None

        match = await wait_for_log_match(self.handle.log_file, pattern, timeout)
        if match is None:
            logger.warning("Tunnel endpoint not found in log", tunnel=self.name, timeout=timeout)
        else:
            logger.info("Tunnel endpoint discovered", tunnel=self.name, endpoint=match)
        return match

    def health_check(self) -> HealthStatus:
        if self.handle is None:
            return HealthStatus(healthy=False, message="Not started")
        if self.runner.is_alive(self.handle.pid):
            return HealthStatus(healthy=True, message="Running")
        return HealthStatus(healthy=False, message="Process not found")

    def stop(self) -> bool:
        """Signal the process, remove its PID file and forget the handle. Never raises."""
        if self.handle is None:
            return False

        try:
            stopped = self.runner.terminate(self.handle.pid)
        except OSError as e:
            logger.warning("Failed to stop tunnel", tunnel=self.name, pid=self.handle.pid, error=str(e))
            return False

        if self.pid_file is not None:
            self.pid_file.unlink(missing_ok=True)
        logger.info("Tunnel stopped", tunnel=self.name, pid=self.handle.pid, signalled=stopped)
        self.handle = None
        self.pid_file = None
        return stopped


def read_pid_file(path: Path) -> int | None:
    """PID stored in ``path``, or None if missing or unreadable."""
    try:
        return int(Path(path).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
