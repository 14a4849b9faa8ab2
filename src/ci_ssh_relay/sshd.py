"""SSH server bring-up.

Gets a local sshd listening on the configured port, in one of three modes:

- user: a private sshd instance under ``~/.ssh/ci-sshd`` (no privilege needed)
- root: the system sshd, reconfigured in place and restarted
- windows: the OpenSSH Server Windows capability

Authorized keys are always written before any daemon is started, and every
mode finishes with the same port-readiness probe.
"""

import re
import shlex
import shutil
import sys
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import structlog

from .ci import CIEnvironment
from .config import SetupSettings, render_template
from .errors import (
    ConfigurationError,
    SshDaemonError,
    SshdNotReadyError,
    SshPermissionError,
    UnsupportedPlatformError,
)
from .models import SshBringupResult, SshMode
from .process import ProcessRunner
from .readiness import wait_for_port

logger = structlog.get_logger()

KEY_TYPE_PREFIXES = ("ssh-", "ecdsa-sha2-", "sk-ssh-", "sk-ecdsa-sha2-")

MANAGED_BLOCK_BEGIN = "# >>> ci-ssh-relay managed block >>>"
MANAGED_BLOCK_END = "# <<< ci-ssh-relay managed block <<<"

SYSTEM_SSHD_CONFIG = Path("/etc/ssh/sshd_config")
WINDOWS_SSHD_CONFIG = Path(r"C:\ProgramData\ssh\sshd_config")
WINDOWS_SSHD_BINARY = Path(r"C:\Windows\System32\OpenSSH\sshd.exe")


class BringupState(str, Enum):
    UNINITIALIZED = "uninitialized"
    KEYS_WRITTEN = "keys_written"
    USER_MODE = "user_mode"
    ROOT_MODE = "root_mode"
    WINDOWS_MODE = "windows_mode"
    READY = "ready"
    FAILED = "failed"


_MODE_STATES = {
    SshMode.USER: BringupState.USER_MODE,
    SshMode.ROOT: BringupState.ROOT_MODE,
    SshMode.WINDOWS: BringupState.WINDOWS_MODE,
}


def parse_public_keys(pubkey_block: str | None) -> list[str]:
    """Keep the non-comment lines of a key blob that start with a key type."""
    keys = []
    for raw in (pubkey_block or "").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(KEY_TYPE_PREFIXES):
            keys.append(line)
    return keys


def select_mode(platform: str, configured_mode: str) -> SshMode:
    """Choose the bring-up mode for a platform and the SSH_MODE setting.

    Raises:
        UnsupportedPlatformError: For anything other than Windows or Linux.
    """
    if platform == "win32":
        return SshMode.WINDOWS
    if platform.startswith("linux"):
        if configured_mode.strip().lower() == "root":
            return SshMode.ROOT
        return SshMode.USER
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}", {"platform": platform})


def rewrite_directives(text: str, directives: list[tuple[str, str]]) -> str:
    """Set global sshd directives, idempotently.

    For each directive the first line naming it (commented out or not) in the
    global section is replaced; later active duplicates are dropped. A
    directive that does not appear at all is inserted before the first
    ``Match`` block (or the managed block marker), or appended. Lines inside
    ``Match`` blocks are left alone.
    """
    lines = text.splitlines()

    for name, value in directives:
        pattern = re.compile(rf"^\s*(#\s*)?{re.escape(name)}(\s|$)", re.IGNORECASE)
        replacement = f"{name} {value}"
        result: list[str] = []
        replaced = False
        in_match = False
        first_match_index: int | None = None

        for line in lines:
            stripped = line.strip()
            if stripped == MANAGED_BLOCK_BEGIN or re.match(r"^match\s", stripped, re.IGNORECASE):
                in_match = True
                if first_match_index is None:
                    first_match_index = len(result)

            found = pattern.match(line)
            if found and not in_match:
                if not replaced:
                    result.append(replacement)
                    replaced = True
                    continue
                if not found.group(1):
                    # active duplicate
                    continue
            result.append(line)

        if not replaced:
            if first_match_index is None:
                result.append(replacement)
            else:
                result.insert(first_match_index, replacement)

        lines = result

    return "\n".join(lines) + "\n"


def replace_managed_block(text: str, block: str | None) -> str:
    """Remove any previous managed block and append ``block`` (if given)."""
    pattern = re.compile(
        rf"\n?{re.escape(MANAGED_BLOCK_BEGIN)}.*?{re.escape(MANAGED_BLOCK_END)}\n?", re.DOTALL
    )
    cleaned = pattern.sub("\n", text).rstrip("\n") + "\n"
    if not block:
        return cleaned
    return f"{cleaned}\n{MANAGED_BLOCK_BEGIN}\n{block.rstrip()}\n{MANAGED_BLOCK_END}\n"


def force_cwd_block(user: str, cwd: str, pass_through_commands: bool = True) -> str:
    """``Match User`` block forcing sessions to start in ``cwd``."""
    if pass_through_commands:
        script = (
            f"cd {shlex.quote(cwd)} && "
            'if [ -n "$SSH_ORIGINAL_COMMAND" ]; then exec /bin/bash -lc "$SSH_ORIGINAL_COMMAND"; '
            "else exec /bin/bash -l; fi"
        )
    else:
        script = f"cd {shlex.quote(cwd)} && exec /bin/bash -l"
    return f"Match User {user}\n  ForceCommand /bin/bash -lc {shlex.quote(script)}"


@dataclass(frozen=True)
class SshPaths:
    ssh_dir: Path
    authorized_keys: Path

    @classmethod
    def for_home(cls, home: Path) -> "SshPaths":
        ssh_dir = home / ".ssh"
        return cls(ssh_dir=ssh_dir, authorized_keys=ssh_dir / "authorized_keys")


class SshServerSetup:
    """State machine that brings an SSH daemon up to a listening port."""

    def __init__(
        self,
        settings: SetupSettings,
        runner: ProcessRunner,
        ci: CIEnvironment,
        home: Path | None = None,
        platform: str | None = None,
    ) -> None:
        """Initialize the bring-up.

        Args:
            settings: Validated run settings.
            runner: Process runner for sshd, ssh-keygen and service commands.
            ci: CI context (default working directory).
            home: Home directory holding ``.ssh`` (defaults to the user's).
            platform: ``sys.platform`` override.
        """
        self.settings = settings
        self.runner = runner
        self.ci = ci
        self.home = home or Path.home()
        self.platform = platform or sys.platform
        self.paths = SshPaths.for_home(self.home)
        self._state = BringupState.UNINITIALIZED
        self.result: SshBringupResult | None = None

    @property
    def state(self) -> BringupState:
        return self._state

    def _transition(self, state: BringupState) -> None:
        logger.debug("SSH bring-up state change", previous=self._state.value, state=state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Authorized keys
    # ------------------------------------------------------------------

    def write_authorized_keys(self, pubkey_block: str | None) -> Path:
        """Write the pipeline's public keys to ``~/.ssh/authorized_keys``.

        Raises:
            ConfigurationError: If the blob holds no usable key.
        """
        keys = parse_public_keys(pubkey_block)
        if not keys:
            raise ConfigurationError("No valid SSH keys found in PIPELINE_SSH_PUBKEY")

        logger.info("Writing SSH authorized keys", keys=len(keys))

        self.paths.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).isoformat()
        content = "".join(f"{key} # Added by ci-ssh-relay at {timestamp}\n" for key in keys)

        self.paths.authorized_keys.write_text(content, encoding="utf-8")
        if self.platform != "win32":
            self.paths.ssh_dir.chmod(0o700)
            self.paths.authorized_keys.chmod(0o600)

        logger.info("Authorized keys written", path=str(self.paths.authorized_keys))
        return self.paths.authorized_keys

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def bring_up(self) -> SshBringupResult:
        """Write keys, start the daemon for the selected mode and wait for it.

        Raises:
            ConfigurationError, SshPermissionError, SshDaemonError: Fatal to the run.
        """
        try:
            mode = select_mode(self.platform, self.settings.ssh_mode)
            self.write_authorized_keys(self.settings.ssh_public_key)
            self._transition(BringupState.KEYS_WRITTEN)

            self._transition(_MODE_STATES[mode])
            logger.info("Setting up SSH", mode=mode.value, port=self.settings.ssh_port)

            if mode is SshMode.USER:
                result = await self._user_mode()
            elif mode is SshMode.ROOT:
                result = await self._root_mode()
            else:
                result = await self._windows_mode()
        except BaseException:
            self._transition(BringupState.FAILED)
            raise

        self.result = result
        self._transition(BringupState.READY)
        logger.info("SSH server is ready", mode=result.mode.value, port=result.port)
        return result

    def _default_cwd(self) -> str:
        return self.settings.ssh_default_cwd or self.ci.default_cwd()

    async def _await_port(self, mode: SshMode, log_path: Path | None = None) -> None:
        port = self.settings.ssh_port
        timeout = self.settings.timeouts.port_wait
        logger.info("Waiting for SSH port", port=port, timeout=timeout)

        if await wait_for_port(port, timeout):
            return

        context: dict[str, object] = {"mode": mode.value, "port": port}
        if log_path is not None and log_path.exists():
            context["log_tail"] = log_path.read_text(errors="replace")[-2000:]
        raise SshdNotReadyError(f"Port {port} is not listening after {timeout:g}s ({mode.value} mode)", context)

    # ------------------------------------------------------------------
    # User mode
    # ------------------------------------------------------------------

    def _find_sshd(self) -> str | None:
        if self.settings.sshd_path:
            return self.settings.sshd_path if Path(self.settings.sshd_path).exists() else None
        found = shutil.which("sshd")
        if found:
            return found
        for candidate in ("/usr/sbin/sshd", "/usr/local/sbin/sshd"):
            if Path(candidate).exists():
                return candidate
        return None

    async def _ensure_sshd(self) -> str:
        sshd = self._find_sshd()
        if sshd:
            return sshd

        logger.warning("sshd not found, attempting to install openssh-server")
        privileged = self.runner.is_root() or await self.runner.has_passwordless_sudo()
        if not privileged:
            raise SshDaemonError("sshd not found and no privilege to install openssh-server")

        sudo = [] if self.runner.is_root() else ["sudo", "-n"]
        if self.runner.command_exists("apt-get"):
            await self.runner.run_best_effort([*sudo, "apt-get", "update"])
            await self.runner.run_best_effort([*sudo, "apt-get", "install", "-y", "openssh-server"])
        elif self.runner.command_exists("dnf"):
            await self.runner.run_best_effort([*sudo, "dnf", "install", "-y", "openssh-server"])
        elif self.runner.command_exists("yum"):
            await self.runner.run_best_effort([*sudo, "yum", "install", "-y", "openssh-server"])
        else:
            raise SshDaemonError("sshd not found and no supported package manager to install it")

        sshd = self._find_sshd()
        if not sshd:
            raise SshDaemonError("sshd still not found after installing openssh-server")
        return sshd

    async def _generate_host_key(self, path: Path, key_type: str) -> None:
        if path.exists():
            return

        logger.info("Generating host key", key_type=key_type, path=str(path))
        args = ["ssh-keygen", "-q", "-t", key_type, "-f", str(path), "-N", ""]
        if key_type == "rsa":
            args[4:4] = ["-b", "2048"]
        try:
            result = await self.runner.run(args)
        except OSError as e:
            raise SshDaemonError(f"ssh-keygen failed: {e}") from e
        if not result.ok:
            raise SshDaemonError(f"ssh-keygen failed: {result.stderr.strip()}")

        path.chmod(0o600)
        public = path.with_name(path.name + ".pub")
        if public.exists():
            public.chmod(0o644)

    def _stop_stale_daemon(self, pid_path: Path) -> None:
        try:
            pid = int(pid_path.read_text().strip())
        except (OSError, ValueError):
            return
        if self.runner.is_alive(pid):
            logger.info("Stopping sshd from a previous run", pid=pid)
            self.runner.terminate(pid)

    async def _user_mode(self) -> SshBringupResult:
        sshd = await self._ensure_sshd()
        user = self.runner.current_user()

        base_dir = self.paths.ssh_dir / "ci-sshd"
        cfg_path = base_dir / "sshd_config"
        pid_path = base_dir / "sshd.pid"
        log_path = base_dir / "sshd.log"
        host_key_ed = base_dir / "ssh_host_ed25519_key"
        host_key_rsa = base_dir / "ssh_host_rsa_key"

        base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        await self._generate_host_key(host_key_ed, "ed25519")
        await self._generate_host_key(host_key_rsa, "rsa")

        force_block = ""
        if not self.settings.ssh_disable_force_cwd:
            force_block = force_cwd_block(user, self._default_cwd())

        config_text = render_template(
            self.settings.sshd_template,
            {
                "PORT": self.settings.ssh_port,
                "LISTEN_ADDRESS": self.settings.ssh_listen_address,
                "AUTHORIZED_KEYS_FILE": self.paths.authorized_keys,
                "ALLOW_USERS": " ".join(self.settings.allowed_users) or user,
                "PID_FILE": pid_path,
                "HOSTKEY_ED25519": host_key_ed,
                "HOSTKEY_RSA": host_key_rsa,
                "FORCE_CWD_BLOCK": force_block,
            },
        )
        cfg_path.write_text(config_text, encoding="utf-8")
        cfg_path.chmod(0o600)
        logger.info("SSHD config written", path=str(cfg_path))

        self._stop_stale_daemon(pid_path)

        logger.info("Starting SSHD in user mode", sshd=sshd)
        handle = self.runner.spawn_detached([sshd, "-f", str(cfg_path), "-D"], log_path)
        pid_path.write_text(str(handle.pid), encoding="utf-8")

        await self._await_port(SshMode.USER, log_path)

        return SshBringupResult(
            mode=SshMode.USER,
            port=self.settings.ssh_port,
            log_path=str(log_path),
            pid=handle.pid,
            base_dir=str(base_dir),
        )

    # ------------------------------------------------------------------
    # Root mode
    # ------------------------------------------------------------------

    def _root_directives(self, user: str) -> list[tuple[str, str]]:
        directives = [
            ("Port", str(self.settings.ssh_port)),
            ("PubkeyAuthentication", "yes"),
            ("PasswordAuthentication", "no"),
            ("PermitRootLogin", "yes" if user == "root" else "no"),
        ]
        if self.settings.allowed_users:
            directives.append(("AllowUsers", " ".join(self.settings.allowed_users)))
        return directives

    async def _read_system_file(self, path: Path, sudo: list[str]) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except PermissionError:
            result = await self.runner.run([*sudo, "cat", str(path)])
            if not result.ok:
                raise SshDaemonError(f"Cannot read {path}: {result.stderr.strip()}") from None
            return result.stdout

    async def _write_system_file(self, path: Path, content: str, sudo: list[str]) -> None:
        if self.runner.dry_run:
            logger.info("Dry run, not writing", path=str(path))
            return

        if not sudo:
            path.write_text(content, encoding="utf-8")
            path.chmod(0o600)
            return

        with tempfile.NamedTemporaryFile("w", delete=False, suffix=".sshd_config", encoding="utf-8") as tmp:
            tmp.write(content)
        try:
            result = await self.runner.run([*sudo, "install", "-m", "600", tmp.name, str(path)])
            if not result.ok:
                raise SshDaemonError(f"Cannot write {path}: {result.stderr.strip()}")
        finally:
            Path(tmp.name).unlink(missing_ok=True)

    async def _restart_system_service(self, sudo: list[str]) -> bool:
        candidates: list[list[str]] = []
        if self.runner.command_exists("systemctl"):
            candidates += [[*sudo, "systemctl", "restart", name] for name in ("ssh", "sshd")]
        if self.runner.command_exists("service"):
            candidates += [[*sudo, "service", name, "restart"] for name in ("ssh", "sshd")]

        for args in candidates:
            if await self.runner.run_ok(args):
                logger.info("SSHD service restarted", command=shlex.join(args))
                return True

        logger.warning("Could not restart the SSHD service with any init system")
        return False

    async def _root_mode(self) -> SshBringupResult:
        is_root = self.runner.is_root()
        if not is_root and not await self.runner.has_passwordless_sudo():
            raise SshPermissionError("Root mode requires root user or sudo without password")

        sudo = [] if is_root else ["sudo", "-n"]
        user = self.runner.current_user()
        cfg = SYSTEM_SSHD_CONFIG

        if cfg.exists():
            backup = f"{cfg}.backup-{int(datetime.now(UTC).timestamp() * 1000)}"
            if await self.runner.run_best_effort([*sudo, "cp", str(cfg), backup]):
                logger.info("Backed up sshd config", backup=backup)

        logger.info("Modifying system sshd_config", path=str(cfg))
        text = await self._read_system_file(cfg, sudo)
        text = replace_managed_block(text, None)
        text = rewrite_directives(text, self._root_directives(user))

        block = None
        if not self.settings.ssh_disable_force_cwd:
            block = force_cwd_block(user, self._default_cwd(), pass_through_commands=False)
        text = replace_managed_block(text, block)

        await self._write_system_file(cfg, text, sudo)

        sshd = self._find_sshd()
        if sshd:
            check = await self.runner.run([*sudo, sshd, "-t", "-f", str(cfg)])
            if not check.ok:
                raise SshDaemonError(
                    f"sshd rejected the rewritten config: {check.stderr.strip()}", {"config": str(cfg)}
                )

        await self._restart_system_service(sudo)
        await self._await_port(SshMode.ROOT)

        return SshBringupResult(mode=SshMode.ROOT, port=self.settings.ssh_port)

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    async def _powershell(self, command: str) -> bool:
        return await self.runner.run_best_effort(["powershell", "-NoProfile", "-Command", command])

    async def _windows_mode(self) -> SshBringupResult:
        if not shutil.which("sshd") and not WINDOWS_SSHD_BINARY.exists():
            logger.info("Installing OpenSSH Server capability")
            await self._powershell("Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0")

        await self._powershell("Set-Service -Name sshd -StartupType Automatic")
        await self._powershell("Start-Service sshd")

        logger.info("Configuring SSHD", path=str(WINDOWS_SSHD_CONFIG))
        directives = [
            ("Port", str(self.settings.ssh_port)),
            ("PubkeyAuthentication", "yes"),
            ("PasswordAuthentication", "no"),
        ]
        try:
            current = WINDOWS_SSHD_CONFIG.read_text(encoding="utf-8")
        except FileNotFoundError:
            current = ""
        if not self.runner.dry_run:
            WINDOWS_SSHD_CONFIG.parent.mkdir(parents=True, exist_ok=True)
            WINDOWS_SSHD_CONFIG.write_text(rewrite_directives(current, directives), encoding="utf-8")

        logger.info("Restarting SSHD service")
        if not await self._powershell("Restart-Service sshd"):
            raise SshDaemonError("Restart-Service sshd failed")

        await self._await_port(SshMode.WINDOWS)
        return SshBringupResult(mode=SshMode.WINDOWS, port=self.settings.ssh_port)
