"""Download and install tunnel client binaries.

Resolution mirrors the way operators install cloudflared by hand: pick the
release asset for this OS/arch, stream it with httpx, unpack archives, mark
it executable and move it into place (through ``sudo install`` when the
destination is not writable).
"""

import os
import platform
import shutil
import stat
import tarfile
import tempfile
from pathlib import Path

import httpx
import structlog

from .errors import DownloadError
from .process import IS_WINDOWS, ProcessRunner
from .retry import BackoffExecutor

logger = structlog.get_logger()

CLOUDFLARED_RELEASE_BASE = "https://github.com/cloudflare/cloudflared/releases/latest/download"

_CLOUDFLARED_ASSETS: dict[tuple[str, str], str] = {
    ("linux", "x86_64"): "cloudflared-linux-amd64",
    ("linux", "amd64"): "cloudflared-linux-amd64",
    ("linux", "aarch64"): "cloudflared-linux-arm64",
    ("linux", "arm64"): "cloudflared-linux-arm64",
    ("linux", "armv7l"): "cloudflared-linux-arm",
    ("linux", "armv6l"): "cloudflared-linux-arm",
    ("darwin", "x86_64"): "cloudflared-darwin-amd64.tgz",
    ("darwin", "arm64"): "cloudflared-darwin-arm64.tgz",
    ("windows", "amd64"): "cloudflared-windows-amd64.exe",
    ("windows", "x86_64"): "cloudflared-windows-amd64.exe",
    ("windows", "x86"): "cloudflared-windows-386.exe",
    ("windows", "i386"): "cloudflared-windows-386.exe",
}


def cloudflared_asset_name(system: str | None = None, machine: str | None = None) -> str | None:
    """Release asset for the given (or current) platform, if one exists."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    return _CLOUDFLARED_ASSETS.get((system, machine))


def cloudflared_download_url(override: str | None = None) -> str | None:
    if override:
        return override
    asset = cloudflared_asset_name()
    if not asset:
        return None
    return f"{CLOUDFLARED_RELEASE_BASE}/{asset}"


def default_cloudflared_path() -> Path:
    if IS_WINDOWS:
        return Path.home() / ".cloudflared" / "cloudflared.exe"
    return Path("/usr/local/bin/cloudflared")


async def _fetch(url: str, dest: Path, timeout: float) -> None:
    """Stream ``url`` into ``dest``."""
    logger.info("Downloading", url=url, dest=str(dest))
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
    except httpx.HTTPError as e:
        raise DownloadError(url, e) from e

    if not dest.exists() or dest.stat().st_size == 0:
        raise DownloadError(url, "downloaded file is empty or missing")


def extract_tgz(src: Path, dest_bin: Path) -> None:
    """Extract the single executable from a release tarball."""
    with tarfile.open(src, "r:gz") as archive:
        member = next((m for m in archive.getmembers() if m.isfile()), None)
        if member is None:
            raise DownloadError(str(src), "archive contains no files")
        extracted = archive.extractfile(member)
        if extracted is None:
            raise DownloadError(str(src), f"cannot read {member.name} from archive")
        with extracted, open(dest_bin, "wb") as out:
            shutil.copyfileobj(extracted, out)


def _make_executable(path: Path) -> None:
    if not IS_WINDOWS:
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


async def download_binary(
    url: str,
    dest: str | Path,
    *,
    timeout: float,
    executor: BackoffExecutor,
    runner: ProcessRunner,
) -> Path:
    """Download an executable to ``dest``, retrying transient failures.

    Args:
        url: Asset URL (``.tgz`` archives are unpacked).
        dest: Final install path.
        timeout: Per-attempt HTTP timeout in seconds.
        executor: Backoff policy for the download.
        runner: Used for ``sudo install`` when ``dest`` is not writable.

    Returns:
        The installed path.

    Raises:
        DownloadError: If the last attempt fails or the binary cannot be installed.
    """
    dest_path = Path(dest)

    with tempfile.TemporaryDirectory(prefix="ci-ssh-relay-") as tmp:
        archive = Path(tmp) / url.rsplit("/", 1)[-1]
        binary = Path(tmp) / dest_path.name

        await executor.run(
            lambda: _fetch(url, archive, timeout),
            operation_name=f"download {archive.name}",
            retry_on=(DownloadError, OSError),
        )

        if archive.name.endswith(".tgz"):
            extract_tgz(archive, binary)
        elif archive != binary:
            archive.replace(binary)

        _make_executable(binary)

        parent = dest_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            pass

        if os.access(parent, os.W_OK):
            shutil.move(str(binary), dest_path)
        elif await runner.has_passwordless_sudo():
            result = await runner.run(["sudo", "-n", "install", "-m", "755", str(binary), str(dest_path)])
            if not result.ok:
                raise DownloadError(url, f"sudo install failed: {result.stderr.strip()}")
        else:
            raise DownloadError(url, f"{parent} is not writable and sudo is unavailable")

    logger.info("Binary installed", path=str(dest_path))
    return dest_path
