"""Tests for SSH server bring-up."""

import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from ci_ssh_relay import sshd
from ci_ssh_relay.ci import CIEnvironment
from ci_ssh_relay.config import SetupSettings
from ci_ssh_relay.errors import (
    ConfigurationError,
    SshDaemonError,
    SshdNotReadyError,
    SshPermissionError,
    UnsupportedPlatformError,
)
from ci_ssh_relay.models import SshMode
from ci_ssh_relay.process import CommandResult
from ci_ssh_relay.sshd import (
    MANAGED_BLOCK_BEGIN,
    BringupState,
    SshServerSetup,
    force_cwd_block,
    parse_public_keys,
    replace_managed_block,
    rewrite_directives,
    select_mode,
)

from .conftest import SAMPLE_PUBKEY, FakeRunner


@pytest.fixture
def port_open(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    """Make every port probe succeed, recording the probed ports."""
    probed: list[int] = []

    async def fake_wait_for_port(port: int, timeout: float, *args, **kwargs) -> bool:
        probed.append(port)
        return True

    monkeypatch.setattr(sshd, "wait_for_port", fake_wait_for_port)
    return probed


@pytest.fixture
def port_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_wait_for_port(port: int, timeout: float, *args, **kwargs) -> bool:
        return False

    monkeypatch.setattr(sshd, "wait_for_port", fake_wait_for_port)


class TestParsePublicKeys:
    """Tests for authorized key filtering."""

    def test_keeps_only_key_lines(self) -> None:
        block = "\n".join(
            [
                "",
                "# team keys",
                f"  {SAMPLE_PUBKEY}  ",
                "not a key",
                "ecdsa-sha2-nistp256 AAAAE2VjZHNh user@host",
                "sk-ssh-ed25519@openssh.com AAAAGnNr user@yubikey",
            ]
        )
        assert parse_public_keys(block) == [
            SAMPLE_PUBKEY,
            "ecdsa-sha2-nistp256 AAAAE2VjZHNh user@host",
            "sk-ssh-ed25519@openssh.com AAAAGnNr user@yubikey",
        ]

    def test_empty(self) -> None:
        assert parse_public_keys(None) == []
        assert parse_public_keys("# only comments\n\n") == []


class TestSelectMode:
    @pytest.mark.parametrize(
        ("platform", "configured", "expected"),
        [
            ("win32", "auto", SshMode.WINDOWS),
            ("win32", "root", SshMode.WINDOWS),
            ("linux", "root", SshMode.ROOT),
            ("linux", "ROOT", SshMode.ROOT),
            ("linux", "user", SshMode.USER),
            ("linux", "auto", SshMode.USER),
        ],
    )
    def test_mode_table(self, platform: str, configured: str, expected: SshMode) -> None:
        assert select_mode(platform, configured) is expected

    def test_unsupported_platform(self) -> None:
        with pytest.raises(UnsupportedPlatformError, match="darwin"):
            select_mode("darwin", "auto")


class TestRewriteDirectives:
    """Tests for idempotent sshd_config directive rewriting."""

    DIRECTIVES = [("Port", "2222"), ("PasswordAuthentication", "no"), ("PubkeyAuthentication", "yes")]

    def test_replaces_commented_and_drops_duplicates(self) -> None:
        text = "#Port 22\nPasswordAuthentication yes\nPort 2200\n"
        assert rewrite_directives(text, self.DIRECTIVES) == (
            "Port 2222\nPasswordAuthentication no\nPubkeyAuthentication yes\n"
        )

    def test_inserts_missing_directive_before_match_block(self) -> None:
        """Match blocks are left alone and new directives stay global."""
        text = "Port 22\nMatch User git\n  PasswordAuthentication yes\n"
        assert rewrite_directives(text, self.DIRECTIVES) == (
            "Port 2222\n"
            "PasswordAuthentication no\n"
            "PubkeyAuthentication yes\n"
            "Match User git\n"
            "  PasswordAuthentication yes\n"
        )

    def test_does_not_match_longer_directive_names(self) -> None:
        text = "PortForwarding yes\n"
        assert rewrite_directives(text, [("Port", "2222")]) == "PortForwarding yes\nPort 2222\n"

    def test_idempotent(self) -> None:
        once = rewrite_directives("#Port 22\nUsePAM yes\n", self.DIRECTIVES)
        assert rewrite_directives(once, self.DIRECTIVES) == once

    def test_empty_config(self) -> None:
        assert rewrite_directives("", [("Port", "2222")]) == "Port 2222\n"


class TestManagedBlock:
    def test_block_is_replaced_not_duplicated(self) -> None:
        text = "Port 2222\n"
        first = replace_managed_block(text, "Match User a\n  ForceCommand x")
        second = replace_managed_block(first, "Match User b\n  ForceCommand y")

        assert second.count(MANAGED_BLOCK_BEGIN) == 1
        assert "Match User b" in second
        assert "Match User a" not in second

    def test_block_removed(self) -> None:
        with_block = replace_managed_block("Port 2222\n", "Match User a\n  ForceCommand x")
        assert replace_managed_block(with_block, None) == "Port 2222\n"

    def test_new_directive_survives_rerun(self) -> None:
        """A directive added on a later run lands in the global section, not in the old block."""
        block = "Match User runner\n  ForceCommand x"
        first = replace_managed_block(rewrite_directives("Port 22\n", [("Port", "2222")]), block)

        second = replace_managed_block(
            rewrite_directives(first, [("Port", "2222"), ("AllowUsers", "alice")]), block
        )

        assert "AllowUsers alice" in second
        assert second.index("AllowUsers alice") < second.index(MANAGED_BLOCK_BEGIN)
        assert second.count(MANAGED_BLOCK_BEGIN) == 1


class TestForceCwdBlock:
    def test_passes_through_remote_commands(self) -> None:
        block = force_cwd_block("runner", "/work/repo")
        assert block == (
            "Match User runner\n"
            "  ForceCommand /bin/bash -lc 'cd /work/repo && "
            'if [ -n "$SSH_ORIGINAL_COMMAND" ]; then exec /bin/bash -lc "$SSH_ORIGINAL_COMMAND"; '
            "else exec /bin/bash -l; fi'"
        )

    def test_quotes_directory_with_spaces(self) -> None:
        block = force_cwd_block("runner", "/work/my repo", pass_through_commands=False)
        assert "cd '\"'\"'/work/my repo'\"'\"' && exec /bin/bash -l" in block


class TestWriteAuthorizedKeys:
    def test_writes_keys_with_permissions(self, make_settings: Callable[..., SetupSettings], home: Path) -> None:
        setup = SshServerSetup(make_settings(), FakeRunner(), CIEnvironment({}), home=home, platform="linux")

        path = setup.write_authorized_keys(f"# comment\n{SAMPLE_PUBKEY}\ngarbage\n")

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert lines[0].startswith(f"{SAMPLE_PUBKEY} # Added by ci-ssh-relay at ")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700

    def test_no_valid_keys(self, make_settings: Callable[..., SetupSettings], home: Path) -> None:
        setup = SshServerSetup(make_settings(), FakeRunner(), CIEnvironment({}), home=home, platform="linux")
        with pytest.raises(ConfigurationError, match="No valid SSH keys"):
            setup.write_authorized_keys("not-a-key")


class TestUserMode:
    """Tests for the private user-mode daemon."""

    @pytest.mark.asyncio
    async def test_brings_up_private_daemon(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        sshd_binary: Path,
        port_open: list[int],
    ) -> None:
        settings = make_settings(ssh_default_cwd="/work/repo")
        setup = SshServerSetup(settings, runner, CIEnvironment({}), home=home, platform="linux")

        result = await setup.bring_up()

        base_dir = home / ".ssh" / "ci-sshd"
        assert result.mode is SshMode.USER
        assert result.port == 2222
        assert result.log_path == str(base_dir / "sshd.log")
        assert setup.state is BringupState.READY
        assert port_open == [2222]

        config = (base_dir / "sshd_config").read_text()
        assert "Port 2222" in config
        assert "ListenAddress 127.0.0.1" in config
        assert "AllowUsers runner" in config
        assert f"AuthorizedKeysFile {home / '.ssh' / 'authorized_keys'}" in config
        assert "Match User runner" in config
        assert "cd /work/repo" in config
        assert "{{" not in config

        keygen = [call for call in runner.calls if call[0] == "ssh-keygen"]
        assert len(keygen) == 2
        assert ["-b", "2048"] == keygen[1][keygen[1].index("-b") : keygen[1].index("-b") + 2]

        assert runner.spawned == [[str(sshd_binary), "-f", str(base_dir / "sshd_config"), "-D"]]
        assert (base_dir / "sshd.pid").read_text() == str(result.pid)

    @pytest.mark.asyncio
    async def test_existing_host_keys_are_reused(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        port_open: list[int],
    ) -> None:
        base_dir = home / ".ssh" / "ci-sshd"
        base_dir.mkdir(parents=True)
        (base_dir / "ssh_host_ed25519_key").write_text("key")
        (base_dir / "ssh_host_rsa_key").write_text("key")

        await SshServerSetup(make_settings(), runner, CIEnvironment({}), home=home, platform="linux").bring_up()

        assert not [call for call in runner.calls if call[0] == "ssh-keygen"]

    @pytest.mark.asyncio
    async def test_force_cwd_can_be_disabled(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        port_open: list[int],
    ) -> None:
        settings = make_settings(ssh_disable_force_cwd=True)
        await SshServerSetup(settings, runner, CIEnvironment({}), home=home, platform="linux").bring_up()

        config = (home / ".ssh" / "ci-sshd" / "sshd_config").read_text()
        assert "ForceCommand" not in config

    @pytest.mark.asyncio
    async def test_port_not_listening_fails(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        port_closed: None,
    ) -> None:
        setup = SshServerSetup(make_settings(), runner, CIEnvironment({}), home=home, platform="linux")

        with pytest.raises(SshdNotReadyError, match="Port 2222 is not listening"):
            await setup.bring_up()

        assert setup.state is BringupState.FAILED

    @pytest.mark.asyncio
    async def test_missing_keys_fail_before_daemon_start(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        port_open: list[int],
    ) -> None:
        setup = SshServerSetup(
            make_settings(ssh_public_key="nothing useful"), runner, CIEnvironment({}), home=home, platform="linux"
        )

        with pytest.raises(ConfigurationError):
            await setup.bring_up()

        assert runner.spawned == []
        assert setup.state is BringupState.FAILED


class TestRootMode:
    """Tests for system sshd reconfiguration."""

    @pytest.mark.asyncio
    async def test_requires_privilege(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        port_open: list[int],
    ) -> None:
        setup = SshServerSetup(make_settings(ssh_mode="root"), runner, CIEnvironment({}), home=home, platform="linux")

        with pytest.raises(SshPermissionError) as exc_info:
            await setup.bring_up()

        assert isinstance(exc_info.value, PermissionError)
        assert setup.state is BringupState.FAILED

    @pytest.mark.asyncio
    async def test_rewrites_system_config_as_root(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        port_open: list[int],
    ) -> None:
        system_config = tmp_path / "sshd_config"
        system_config.write_text("#Port 22\nPasswordAuthentication yes\nUsePAM yes\n")
        monkeypatch.setattr(sshd, "SYSTEM_SSHD_CONFIG", system_config)
        runner.root = True
        runner.user = "root"
        runner.available.add("systemctl")

        settings = make_settings(ssh_mode="root", ssh_allow_users="root,deploy", ssh_default_cwd="/srv")
        setup = SshServerSetup(settings, runner, CIEnvironment({}), home=home, platform="linux")
        result = await setup.bring_up()

        text = system_config.read_text()
        assert result.mode is SshMode.ROOT
        assert text.startswith("Port 2222\nPasswordAuthentication no\nUsePAM yes\n")
        assert "PermitRootLogin yes" in text
        assert "AllowUsers root deploy" in text
        assert text.count(MANAGED_BLOCK_BEGIN) == 1
        assert ["systemctl", "restart", "ssh"] in runner.calls
        assert any(call[0] == "cp" and call[-1].startswith(f"{system_config}.backup-") for call in runner.calls)

        # A second run leaves exactly one managed block
        await SshServerSetup(settings, runner, CIEnvironment({}), home=home, platform="linux").bring_up()
        assert system_config.read_text().count(MANAGED_BLOCK_BEGIN) == 1

    @pytest.mark.asyncio
    async def test_rerun_inserts_newly_configured_directive(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        port_open: list[int],
    ) -> None:
        system_config = tmp_path / "sshd_config"
        system_config.write_text("Port 22\nUsePAM yes\n")
        monkeypatch.setattr(sshd, "SYSTEM_SSHD_CONFIG", system_config)
        runner.root = True
        runner.user = "root"

        first = make_settings(ssh_mode="root", ssh_default_cwd="/srv")
        await SshServerSetup(first, runner, CIEnvironment({}), home=home, platform="linux").bring_up()
        assert "AllowUsers" not in system_config.read_text()

        second = make_settings(ssh_mode="root", ssh_allow_users="alice", ssh_default_cwd="/srv")
        await SshServerSetup(second, runner, CIEnvironment({}), home=home, platform="linux").bring_up()

        text = system_config.read_text()
        assert "AllowUsers alice" in text
        assert text.index("AllowUsers alice") < text.index(MANAGED_BLOCK_BEGIN)
        assert text.count(MANAGED_BLOCK_BEGIN) == 1


class TestWindowsMode:
    """Tests for OpenSSH Server bring-up on Windows."""

    @pytest.fixture
    def windows_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        config = tmp_path / "ProgramData" / "ssh" / "sshd_config"
        config.parent.mkdir(parents=True)
        config.write_text("#Port 22\nPasswordAuthentication yes\nSubsystem sftp sftp-server.exe\n")
        monkeypatch.setattr(sshd, "WINDOWS_SSHD_CONFIG", config)
        monkeypatch.setattr(sshd, "WINDOWS_SSHD_BINARY", tmp_path / "missing" / "sshd.exe")
        monkeypatch.setattr(sshd.shutil, "which", lambda _: None)
        return config

    @staticmethod
    def _powershell_commands(runner: FakeRunner) -> list[str]:
        return [call[-1] for call in runner.calls if call[0] == "powershell"]

    @pytest.mark.asyncio
    async def test_configures_and_restarts_service(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        windows_config: Path,
        port_open: list[int],
    ) -> None:
        setup = SshServerSetup(make_settings(ssh_port=2022), runner, CIEnvironment({}), home=home, platform="win32")

        result = await setup.bring_up()

        assert result.mode is SshMode.WINDOWS
        assert result.port == 2022
        assert setup.state is BringupState.READY
        assert self._powershell_commands(runner) == [
            "Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0",
            "Set-Service -Name sshd -StartupType Automatic",
            "Start-Service sshd",
            "Restart-Service sshd",
        ]
        assert windows_config.read_text() == (
            "Port 2022\n"
            "PasswordAuthentication no\n"
            "Subsystem sftp sftp-server.exe\n"
            "PubkeyAuthentication yes\n"
        )
        assert port_open == [2022]
        assert runner.spawned == []

    @pytest.mark.asyncio
    async def test_restart_failure(
        self,
        make_settings: Callable[..., SetupSettings],
        runner: FakeRunner,
        home: Path,
        windows_config: Path,
        port_open: list[int],
    ) -> None:
        runner.responses["Restart-Service"] = CommandResult(1, "", "Access is denied")
        setup = SshServerSetup(make_settings(), runner, CIEnvironment({}), home=home, platform="win32")

        with pytest.raises(SshDaemonError, match="Restart-Service sshd failed"):
            await setup.bring_up()

        assert setup.state is BringupState.FAILED
        assert port_open == []
