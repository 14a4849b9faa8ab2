"""Readiness probes: wait for a local port to listen or a log line to appear."""

import asyncio
import re
import time
from pathlib import Path

import psutil
import structlog

logger = structlog.get_logger()

POLL_INTERVAL = 0.25  # seconds
CONNECT_TIMEOUT = 0.5  # seconds


async def _can_connect(host: str, port: int) -> bool:
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=CONNECT_TIMEOUT
        )
    except (OSError, TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def _is_listening(port: int) -> bool:
    """Look for ``port`` in the local listening-socket table."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except (psutil.AccessDenied, OSError):
        return False

    return any(
        conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        for conn in connections
    )


async def wait_for_port(
    port: int,
    timeout: float,
    interval: float = POLL_INTERVAL,
    host: str = "127.0.0.1",
) -> bool:
    """Poll until ``port`` accepts connections on localhost.

    A raw connect is tried first; the socket table is consulted when the
    connect fails (e.g. the daemon listens on another local address).

    Returns:
        True once the port is open, False after ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout

    while True:
        if await _can_connect(host, port) or await asyncio.to_thread(_is_listening, port):
            logger.debug("Port is listening", port=port)
            return True

        if time.monotonic() >= deadline:
            logger.debug("Port not listening before timeout", port=port, timeout=timeout)
            return False

        await asyncio.sleep(interval)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.debug("Error reading log file", path=str(path), error=str(e))
        return None


async def wait_for_log_match(
    path: str | Path,
    pattern: str | re.Pattern[str],
    timeout: float,
    interval: float = POLL_INTERVAL,
) -> str | None:
    """Poll a log file until its content matches ``pattern``.

    The whole file is re-read every cycle, and a file that does not exist
    yet is treated as empty.

    Returns:
        The matched substring, or None after ``timeout`` seconds.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    log_path = Path(path)
    deadline = time.monotonic() + timeout

    while True:
        content = _read_text(log_path)
        if content:
            match = regex.search(content)
            if match:
                return match.group(0)

        if time.monotonic() >= deadline:
            return None

        await asyncio.sleep(interval)
