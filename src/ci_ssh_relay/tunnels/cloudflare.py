"""Cloudflare named tunnel (cloudflared) exposing the SSH port over TCP."""

import json
import re
import shutil
from pathlib import Path

import structlog

from ..ci import CIEnvironment, sanitize_id
from ..config import render_template
from ..downloads import cloudflared_download_url, default_cloudflared_path, download_binary
from ..errors import DownloadError, TunnelError
from ..models import HealthStatus, TunnelDescriptor, TunnelKind, TunnelOutcome
from ..process import IS_WINDOWS, ProcessRunner
from ..retry import BackoffExecutor
from .base import TunnelProcess

logger = structlog.get_logger()

ENDPOINT_PATTERN = re.compile(r"https://[a-f0-9-]+\.cfargotunnel\.com", re.IGNORECASE)
CREATED_PATTERN = re.compile(r"Created tunnel .+ with id ([a-f0-9-]+)", re.IGNORECASE)


def default_tunnel_name(ci: CIEnvironment) -> str:
    return f"{sanitize_id(ci.repo_name(), 18)}-{sanitize_id(ci.runner_id(), 10)}"


class CloudflareTunnel:
    kind = TunnelKind.CLOUDFLARE

    def __init__(
        self,
        descriptor: TunnelDescriptor,
        runner: ProcessRunner,
        ci: CIEnvironment,
        executor: BackoffExecutor,
        api_key: str | None,
        config_template: str,
        tunnel_name: str | None = None,
        binary_path: str | None = None,
        download_url: str | None = None,
        home: Path | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.runner = runner
        self.executor = executor
        self.api_key = api_key
        self.config_template = config_template
        self.tunnel_name = tunnel_name or default_tunnel_name(ci)
        self.binary_path = binary_path
        self.download_url = download_url
        self.config_dir = (home or Path.home()) / ".cloudflared"
        self.process = TunnelProcess("cloudflared", runner)
        self.tunnel_id: str | None = None
        self.endpoint: str | None = None
        self._binary: str | None = None

    @property
    def name(self) -> str:
        return self.kind.display_name

    def is_available(self) -> bool:
        return self.descriptor.enabled and bool(self.api_key)

    def _find_binary(self) -> str | None:
        if self.binary_path:
            return self.binary_path if Path(self.binary_path).exists() else None
        found = shutil.which("cloudflared")
        if found:
            return found
        default = default_cloudflared_path()
        return str(default) if default.exists() else None

    async def install(self) -> bool:
        """Download cloudflared unless it is already installed."""
        self._binary = self._find_binary()
        if self._binary:
            return True

        url = cloudflared_download_url(self.download_url)
        if not url:
            raise TunnelError(
                self.name,
                "cloudflared not on PATH and no release asset for this platform "
                "(set CLOUDFLARED_DOWNLOAD_URL or install cloudflared)",
            )

        dest = self.binary_path or str(default_cloudflared_path())
        logger.info("Installing cloudflared", url=url, dest=dest)
        try:
            installed = await download_binary(
                url,
                dest,
                timeout=self.descriptor.timeouts.download,
                executor=self.executor,
                runner=self.runner,
            )
        except DownloadError as e:
            raise TunnelError(self.name, f"cloudflared install failed: {e.message}") from e

        self._binary = str(installed)
        return True

    def _write_origin_cert(self) -> None:
        cert = self.config_dir / "cert.pem"
        if cert.exists():
            return
        self.config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        cert.write_text(self.api_key or "", encoding="utf-8")
        if not IS_WINDOWS:
            cert.chmod(0o600)
        logger.info("Wrote cloudflared origin certificate", path=str(cert))

    async def _find_tunnel(self, binary: str) -> str | None:
        result = await self.runner.run([binary, "tunnel", "list", "--output", "json"])
        if not result.ok:
            logger.warning("cloudflared tunnel list failed", stderr=result.stderr.strip()[:500])
            return None
        try:
            tunnels = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            logger.warning("Unexpected cloudflared tunnel list output")
            return None

        for tunnel in tunnels or []:
            if tunnel.get("name") == self.tunnel_name:
                return tunnel.get("id")
        return None

    async def get_or_create_tunnel(self, binary: str) -> str:
        """ID of the named tunnel, creating it only when it does not exist."""
        existing = await self._find_tunnel(binary)
        if existing:
            logger.info("Reusing Cloudflare tunnel", name=self.tunnel_name, tunnel_id=existing)
            return existing

        logger.info("Creating Cloudflare tunnel", name=self.tunnel_name)
        result = await self.runner.run([binary, "tunnel", "create", self.tunnel_name])
        created = CREATED_PATTERN.search(result.stdout + result.stderr)
        if not result.ok or not created:
            raise TunnelError(
                self.name,
                f"could not create tunnel {self.tunnel_name}: {result.stderr.strip() or result.stdout.strip()}",
            )
        return created.group(1)

    async def start(self, ssh_port: int, log_dir: Path) -> TunnelOutcome:
        binary = self._binary or self._find_binary()
        if not binary:
            raise TunnelError(self.name, "cloudflared is not installed")

        self._write_origin_cert()
        self.tunnel_id = await self.get_or_create_tunnel(binary)

        config_path = self.config_dir / "config.yml"
        config_path.write_text(
            render_template(
                self.config_template,
                {
                    "TUNNEL_ID": self.tunnel_id,
                    "TARGET_HOST": self.descriptor.target_host,
                    "TARGET_PORT": self.descriptor.resolve_port(ssh_port),
                },
            ),
            encoding="utf-8",
        )

        args = [binary, "tunnel", "--config", str(config_path), "run", "--token", self.api_key or ""]
        logger.info("Starting Cloudflare tunnel", name=self.tunnel_name, tunnel_id=self.tunnel_id)

        if self.descriptor.foreground:
            self.process.exec_foreground(args)

        handle = self.process.launch(args, log_dir)
        self.endpoint = await self.process.discover(ENDPOINT_PATTERN, self.descriptor.timeouts.cf_endpoint)

        connect = self.get_connect_command()
        pipeline_vars = {}
        if self.endpoint and connect:
            pipeline_vars = {"CF_TUNNEL_URL": self.endpoint, "CF_SSH_COMMAND": connect}

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
        # ssh needs a bare host as the destination; the URL goes to --hostname
        host = re.sub(r"^https?://", "", self.endpoint)
        return (
            f'ssh -o ProxyCommand="cloudflared access tcp --hostname {self.endpoint}" '
            f"{self.runner.current_user()}@{host}"
        )

    def health_check(self) -> HealthStatus:
        return self.process.health_check()

    def stop(self) -> bool:
        return self.process.stop()
