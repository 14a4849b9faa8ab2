"""Error types raised by ci-ssh-relay.

Bring-up errors (configuration, permission, daemon) are fatal to a run.
Tunnel errors are caught at the orchestrator boundary and reported per tunnel.
"""

from typing import Any


class SetupError(Exception):
    """Base class for all ci-ssh-relay errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logging and reporting."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(SetupError):
    """Raised when required settings are missing or invalid."""

    pass


class SshPermissionError(SetupError, PermissionError):
    """Raised when the requested SSH mode needs more privilege than we have."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Permission error: {message}", context)


class SshDaemonError(SetupError):
    """Raised when the SSH daemon cannot be installed, configured or started."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"SSHD error: {message}", context)


class SshdNotReadyError(SshDaemonError):
    """Raised when the daemon port is not listening after the readiness timeout."""

    pass


class UnsupportedPlatformError(SshDaemonError):
    """Raised when bring-up is attempted on a platform with no SSH mode."""

    pass


class TunnelError(SetupError):
    """Raised when a tunnel backend fails to install or start."""

    def __init__(self, tunnel: str, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"{tunnel} tunnel error: {message}", {"tunnel": tunnel, **(context or {})})
        self.tunnel = tunnel


class NetworkError(SetupError):
    """Raised for failed network operations."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Network error: {message}", context)


class DownloadError(NetworkError):
    """Raised when a binary download fails or produces an empty file."""

    def __init__(self, url: str, cause: BaseException | str) -> None:
        super().__init__(f"Failed to download from {url}: {cause}", {"url": url, "cause": str(cause)})
        self.url = url


class OperationTimeoutError(SetupError, TimeoutError):
    """Raised when a bounded operation exceeds its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"Operation '{operation}' timed out after {timeout:g}s",
            {"operation": operation, "timeout": timeout},
        )
        self.operation = operation
        self.timeout = timeout
