"""SSH-J: publish the SSH port as a named device on an ssh-j.com namespace.

Clients reach it with ``ssh -J <namespace>@ssh-j.com <user>@<device>``, so
the connect command is known as soon as the client is launched.
"""

from pathlib import Path

import structlog

from ..ci import CIEnvironment, sanitize_id
from ..errors import TunnelError
from ..models import HealthStatus, TunnelDescriptor, TunnelKind, TunnelOutcome
from ..process import ProcessRunner
from .base import SSH_CLIENT_OPTIONS, TunnelProcess

logger = structlog.get_logger()


def default_namespace(ci: CIEnvironment) -> str:
    repo = sanitize_id(ci.repo_name(), 18)
    runner_id = sanitize_id(ci.runner_id(), 10)
    return sanitize_id(f"{repo}-{runner_id}", 28)


def default_device(ci: CIEnvironment) -> str:
    return sanitize_id(f"{sanitize_id(ci.repo_name(), 18)}-ci", 24)


class SshjTunnel:
    kind = TunnelKind.SSHJ

    def __init__(
        self,
        descriptor: TunnelDescriptor,
        runner: ProcessRunner,
        ci: CIEnvironment,
        host: str = "ssh-j.com",
        namespace: str | None = None,
        device: str | None = None,
        device_port: int = 22,
    ) -> None:
        self.descriptor = descriptor
        self.runner = runner
        self.host = host
        self.namespace = namespace or default_namespace(ci)
        self.device = device or default_device(ci)
        self.device_port = device_port
        self.process = TunnelProcess("sshj", runner)
        self._started = False

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
        local = f"{self.descriptor.target_host}:{self.descriptor.resolve_port(ssh_port)}"
        return [
            "ssh",
            f"{self.namespace}@{self.host}",
            "-N",
            *SSH_CLIENT_OPTIONS,
            "-R", f"{self.device}:{self.device_port}:{local}",
        ]  # fmt: skip

    async def start(self, ssh_port: int, log_dir: Path) -> TunnelOutcome:
        args = self.build_command(ssh_port)
        logger.info("Starting SSH-J tunnel", namespace=self.namespace, device=self.device, host=self.host)

        if self.descriptor.foreground:
            self.process.exec_foreground(args)

        handle = self.process.launch(args, log_dir)
        self._started = True
        connect = self.get_connect_command()

        return TunnelOutcome(
            kind=self.kind,
            succeeded=True,
            connect_command=connect,
            process_handle=handle,
            pipeline_vars={
                "SSHJ_HOST": self.host,
                "SSHJ_NAMESPACE": self.namespace,
                "SSHJ_DEVICE": self.device,
                "SSHJ_DEVICE_PORT": str(self.device_port),
                "SSHJ_CONNECT": connect or "",
            },
        )

    def get_connect_command(self) -> str | None:
        if not self._started:
            return None
        return f"ssh -J {self.namespace}@{self.host} {self.runner.current_user()}@{self.device}"

    def health_check(self) -> HealthStatus:
        return self.process.health_check()

    def stop(self) -> bool:
        return self.process.stop()
