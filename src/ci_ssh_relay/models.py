"""Data model shared by the bring-up state machine, tunnels and reporter.

All values are immutable once built. A ProcessHandle only lets its owner
signal a backgrounded child; it does not own the child's lifetime.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Literal


class TunnelKind(str, Enum):
    """Supported tunnel backends."""

    PINGGY = "Pinggy"
    SSHJ = "SshJ"
    CLOUDFLARE = "Cloudflare"

    @property
    def display_name(self) -> str:
        return "SSH-J" if self is TunnelKind.SSHJ else self.value


class SshMode(str, Enum):
    """How the SSH daemon is brought up."""

    USER = "user"
    ROOT = "root"
    WINDOWS = "windows"


@dataclass(frozen=True)
class Timeouts:
    """Operation timeouts in seconds."""

    port_wait: float = 8.0
    tunnel_startup: float = 10.0
    cf_endpoint: float = 15.0
    http_request: float = 8.0
    download: float = 30.0


@dataclass(frozen=True)
class TunnelDescriptor:
    """Validated, read-only description of one tunnel backend."""

    kind: TunnelKind
    enabled: bool
    target_host: str = "localhost"
    target_port: int | None = None
    foreground: bool = False
    timeouts: Timeouts = field(default_factory=Timeouts)

    def resolve_port(self, ssh_port: int) -> int:
        """Port the tunnel forwards to (defaults to the SSH port)."""
        return self.target_port or ssh_port


@dataclass(frozen=True)
class ProcessHandle:
    """PID of a backgrounded child plus where its output goes."""

    pid: int
    log_file: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class ErrorInfo:
    """Snapshot of an exception for reporting."""

    type: str
    message: str
    stage: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, stage: str | None = None) -> "ErrorInfo":
        return cls(type=type(exc).__name__, message=str(exc), stage=stage)


@dataclass(frozen=True)
class TunnelOutcome:
    """Result of a single tunnel plugin run."""

    kind: TunnelKind
    succeeded: bool
    endpoint: str | None = None
    connect_command: str | None = None
    process_handle: ProcessHandle | None = None
    error: ErrorInfo | None = None
    pipeline_vars: dict[str, str] = field(default_factory=dict)

    @property
    def pid(self) -> int | None:
        return self.process_handle.pid if self.process_handle else None

    @property
    def log_file(self) -> str | None:
        return self.process_handle.log_file if self.process_handle else None


@dataclass(frozen=True)
class SettledOutcome:
    """Per-plugin settlement, in the order plugins were given."""

    status: Literal["fulfilled", "rejected"]
    outcome: TunnelOutcome

    @property
    def value(self) -> TunnelOutcome | None:
        return self.outcome if self.status == "fulfilled" else None

    @property
    def reason(self) -> ErrorInfo | None:
        return self.outcome.error if self.status == "rejected" else None


@dataclass(frozen=True)
class SshBringupResult:
    """A confirmed-listening SSH daemon."""

    mode: SshMode
    port: int
    log_path: str | None = None
    pid: int | None = None
    base_dir: str | None = None


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    message: str
