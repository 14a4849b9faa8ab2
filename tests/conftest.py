"""Pytest fixtures for ci-ssh-relay tests."""

import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import structlog
from pydantic import AliasChoices

from ci_ssh_relay.config import SetupSettings
from ci_ssh_relay.models import ProcessHandle
from ci_ssh_relay.process import CommandResult, ProcessRunner
from ci_ssh_relay.retry import BackoffExecutor, BackoffPolicy

SAMPLE_PUBKEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIKexamplekeyexamplekey developer@laptop"


class ForegroundExec(Exception):
    """Raised by FakeRunner instead of replacing the test process."""


class FakeRunner(ProcessRunner):
    """ProcessRunner that records commands instead of running them.

    ``responses`` maps a substring of the joined command line to the result
    returned for it; anything else succeeds with empty output.
    """

    def __init__(self, commands: Sequence[str] = ("ssh", "sshd", "ssh-keygen")) -> None:
        super().__init__()
        self.available = set(commands)
        self.responses: dict[str, CommandResult] = {}
        self.calls: list[list[str]] = []
        self.spawned: list[list[str]] = []
        self.alive: set[int] = set()
        self.terminated: list[int] = []
        self.on_spawn: Callable[[list[str], Path], None] | None = None
        self.user = "runner"
        self.root = False
        self.sudo = False
        self._next_pid = 4000

    def command_exists(self, command: str) -> bool:
        return command in self.available

    def current_user(self) -> str:
        return self.user

    def is_root(self) -> bool:
        return self.root

    async def has_passwordless_sudo(self) -> bool:
        return self.sudo

    async def run(self, args, *, timeout=60.0, check=False, input_text=None) -> CommandResult:
        args = list(args)
        self.calls.append(args)

        if args and args[0] == "ssh-keygen":
            key = Path(args[args.index("-f") + 1])
            key.write_text("PRIVATE KEY\n")
            key.with_name(key.name + ".pub").write_text("ssh-ed25519 AAAA host\n")

        joined = " ".join(args)
        result = next(
            (response for needle, response in self.responses.items() if needle in joined),
            CommandResult(0, "", ""),
        )
        if check and not result.ok:
            raise subprocess.CalledProcessError(result.returncode, args, result.stdout, result.stderr)
        return result

    def spawn_detached(self, args, log_file=None) -> ProcessHandle:
        args = list(args)
        self.spawned.append(args)
        pid = self._next_pid
        self._next_pid += 1
        self.alive.add(pid)
        if log_file is not None:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            if self.on_spawn:
                self.on_spawn(args, Path(log_file))
        return ProcessHandle(pid=pid, log_file=str(log_file) if log_file else None)

    def exec_foreground(self, args):
        raise ForegroundExec(list(args))

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int, sig: int = 15) -> bool:
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        self.terminated.append(pid)
        return True


def _settings_env_names() -> set[str]:
    names = set()
    for name, field in SetupSettings.model_fields.items():
        names.add(name.upper())
        if isinstance(field.validation_alias, AliasChoices):
            names.update(str(choice).upper() for choice in field.validation_alias.choices)
    return names


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep the host's CI variables and any .env file out of every test."""
    for name in _settings_env_names() | {
        "TF_BUILD",
        "GITHUB_ENV",
        "GITHUB_ACTIONS",
        "SENTRY_DSN",
    }:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield
    structlog.reset_defaults()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def executor() -> BackoffExecutor:
    """Backoff executor that never actually sleeps."""

    async def no_sleep(_: float) -> None:
        return None

    return BackoffExecutor(BackoffPolicy(max_retries=3), sleep=no_sleep)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def sshd_binary(tmp_path: Path) -> Path:
    path = tmp_path / "sshd"
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def make_settings(sshd_binary: Path) -> Callable[..., SetupSettings]:
    def factory(**overrides) -> SetupSettings:
        values = {"ssh_public_key": SAMPLE_PUBKEY, "sshd_path": str(sshd_binary)}
        values.update(overrides)
        return SetupSettings(**values)

    return factory
