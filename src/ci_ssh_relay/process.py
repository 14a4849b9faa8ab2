"""Process management for ci-ssh-relay.

Runs short foreground commands (capturing output), spawns detached
background processes whose output is appended to a log file, and signals
them later by PID.
"""

import asyncio
import getpass
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import psutil
import structlog

from .errors import OperationTimeoutError
from .models import ProcessHandle

logger = structlog.get_logger()

IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class CommandResult:
    """Output of a finished foreground command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner:
    """Spawns and signals OS processes."""

    def __init__(self, dry_run: bool = False) -> None:
        """Initialize the runner.

        Args:
            dry_run: Log commands that change the system instead of running them.
        """
        self.dry_run = dry_run

    def command_exists(self, command: str) -> bool:
        """Check if a command is on PATH."""
        return shutil.which(command) is not None

    def current_user(self) -> str:
        return getpass.getuser()

    def is_root(self) -> bool:
        """Check if running as root (always False on Windows)."""
        return hasattr(os, "geteuid") and os.geteuid() == 0

    async def has_passwordless_sudo(self) -> bool:
        """Check if ``sudo`` works without prompting."""
        if IS_WINDOWS or not self.command_exists("sudo"):
            return False
        return await self.run_ok(["sudo", "-n", "true"])

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = 60.0,
        check: bool = False,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a command to completion and capture its output.

        Args:
            args: Command and arguments.
            timeout: Seconds before the command is killed.
            check: Raise CalledProcessError on a non-zero exit code.
            input_text: Optional text written to stdin.

        Returns:
            The command's exit code, stdout and stderr.

        Raises:
            FileNotFoundError: If the executable does not exist.
            OperationTimeoutError: If the command exceeds the timeout.
            subprocess.CalledProcessError: If check is set and the command fails.
        """
        logger.debug("Running command", command=shlex.join(args))

        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input_text.encode() if input_text is not None else None),
                timeout=timeout,
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise OperationTimeoutError(shlex.join(args), timeout or 0) from None

        result = CommandResult(
            returncode=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

        if check and not result.ok:
            raise subprocess.CalledProcessError(
                result.returncode, list(args), output=result.stdout, stderr=result.stderr
            )
        return result

    async def run_ok(self, args: Sequence[str], timeout: float | None = 60.0) -> bool:
        """Run a command and report only whether it succeeded."""
        try:
            return (await self.run(args, timeout=timeout)).ok
        except (OSError, OperationTimeoutError):
            return False

    async def run_best_effort(self, args: Sequence[str], timeout: float | None = 120.0) -> bool:
        """Run a system-changing command, logging instead of raising on failure."""
        if self.dry_run:
            logger.info("Dry run, skipping command", command=shlex.join(args))
            return True

        try:
            result = await self.run(args, timeout=timeout)
        except (OSError, OperationTimeoutError) as e:
            logger.warning("Command failed (ignored)", command=shlex.join(args), error=str(e))
            return False

        if not result.ok:
            logger.warning(
                "Command failed (ignored)",
                command=shlex.join(args),
                exit_code=result.returncode,
                stderr=result.stderr.strip()[:500],
            )
        return result.ok

    def spawn_detached(self, args: Sequence[str], log_file: str | Path | None = None) -> ProcessHandle:
        """Start a background process that outlives this invocation.

        Output is appended to ``log_file`` (or discarded). The child gets its
        own session / process group so it survives our exit and can be
        signalled as a group.

        Returns:
            Handle carrying the child's PID and log file.
        """
        logger.debug("Spawning detached process", command=shlex.join(args), log_file=str(log_file))

        kwargs: dict[str, object] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
            )
        else:
            kwargs["start_new_session"] = True

        if log_file is not None:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            with open(path, "ab") as out:
                child = subprocess.Popen(
                    list(args),
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    **kwargs,  # type: ignore[arg-type]
                )
        else:
            child = subprocess.Popen(
                list(args),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                **kwargs,  # type: ignore[arg-type]
            )

        logger.info("Spawned process", pid=child.pid, command=args[0])
        return ProcessHandle(pid=child.pid, log_file=str(log_file) if log_file else None)

    def exec_foreground(self, args: Sequence[str]) -> NoReturn:
        """Replace the current process with ``args`` (inherits stdio)."""
        logger.info("Handing over to foreground process", command=shlex.join(args))
        sys.stdout.flush()
        sys.stderr.flush()
        os.execvp(args[0], list(args))

    def is_alive(self, pid: int) -> bool:
        """Check if a PID refers to a live (non-zombie) process."""
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return psutil.pid_exists(pid)

    def terminate(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        """Send a termination signal to a PID (and its group when it leads one).

        Returns:
            True if a signal was delivered.
        """
        if not IS_WINDOWS:
            try:
                if os.getpgid(pid) == pid:
                    os.killpg(pid, sig)
                    return True
            except ProcessLookupError:
                return False
            except PermissionError as e:
                logger.warning("Cannot signal process group", pid=pid, error=str(e))
                return False

        try:
            psutil.Process(pid).send_signal(sig)
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.warning("Cannot signal process", pid=pid, error=str(e))
            return False
