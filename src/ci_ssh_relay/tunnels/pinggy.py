"""Pinggy: anonymous TCP tunnel over a plain ``ssh -R``."""

import re
from pathlib import Path

import structlog

from ..errors import TunnelError
from ..models import HealthStatus, TunnelDescriptor, TunnelKind, TunnelOutcome
from ..process import ProcessRunner
from .base import SSH_CLIENT_OPTIONS, TunnelProcess

logger = structlog.get_logger()

ENDPOINT_PATTERN = re.compile(r"tcp://[^\s]+")
_ENDPOINT_PARTS = re.compile(r"^tcp://([^:/\s]+):(\d+)")

PINGGY_SSH_PORT = 443


class PinggyTunnel:
    kind = TunnelKind.PINGGY

    def __init__(
        self,
        descriptor: TunnelDescriptor,
        runner: ProcessRunner,
        region_host: str = "a.pinggy.io",
    ) -> None:
        self.descriptor = descriptor
        self.runner = runner
        self.region_host = region_host
        self.process = TunnelProcess("pinggy", runner)
        self.endpoint: str | None = None

    @property
    def name(self) -> str:
        return self.kind.display_name

    def is_available(self) -> bool:
        return self.descriptor.enabled

    async def install(self) -> bool:
        if self.runner.command_exists("ssh"):
            return True
        raise TunnelError(self.name, "ssh client not found on PATH (install openssh-client)")

    def build_command(self, ssh_port: int) -> list[str]:
        target = f"{self.descriptor.target_host}:{self.descriptor.resolve_port(ssh_port)}"
        return [
            "ssh",
            "-p", str(PINGGY_SSH_PORT),
            *SSH_CLIENT_OPTIONS,
            f"-R0:{target}",
            f"tcp@{self.region_host}",
        ]  # fmt: skip

    async def start(self, ssh_port: int, log_dir: Path) -> TunnelOutcome:
        args = self.build_command(ssh_port)
        logger.info("Starting Pinggy tunnel", target_port=self.descriptor.resolve_port(ssh_port))

        if self.descriptor.foreground:
            self.process.exec_foreground(args)

        handle = self.process.launch(args, log_dir)
        self.endpoint = await self.process.discover(ENDPOINT_PATTERN, self.descriptor.timeouts.tunnel_startup)

        connect = self.get_connect_command()
        pipeline_vars = {}
        if self.endpoint and connect:
            pipeline_vars = {"PINGGY_URL": self.endpoint, "PINGGY_SSH_COMMAND": connect}

        return TunnelOutcome(
            kind=self.kind,
            succeeded=True,
            endpoint=self.endpoint,
            connect_command=connect,
            process_handle=handle,
            pipeline_vars=pipeline_vars,
        )

    def get_connect_command(self) -> str | None:
        if not self.endpoint:
            return None
        parts = _ENDPOINT_PARTS.match(self.endpoint)
        if not parts:
            return None
        host, port = parts.groups()
        return f"ssh -p {port} {self.runner.current_user()}@{host} -i <your-private-key>"

    def health_check(self) -> HealthStatus:
        return self.process.health_check()

    def stop(self) -> bool:
        return self.process.stop()
