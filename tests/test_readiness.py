"""Tests for port and log readiness probes."""

import asyncio
import socket
import threading
import time
from pathlib import Path

import pytest

from ci_ssh_relay import readiness
from ci_ssh_relay.readiness import CONNECT_TIMEOUT, wait_for_log_match, wait_for_port


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWaitForPort:
    """Tests for wait_for_port."""

    @pytest.mark.asyncio
    async def test_port_opens_during_wait(self) -> None:
        """Returns True soon after a listener appears."""
        port = _free_port()

        async def handle(_reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.close()

        async def listen_later() -> asyncio.AbstractServer:
            await asyncio.sleep(0.3)
            return await asyncio.start_server(handle, "127.0.0.1", port)

        server_task = asyncio.create_task(listen_later())
        started = time.monotonic()
        try:
            assert await wait_for_port(port, timeout=3.0, interval=0.05) is True
            assert time.monotonic() - started < 2.0
        finally:
            server = await server_task
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_port_already_open(self) -> None:
        server = await asyncio.start_server(lambda _r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            assert await wait_for_port(port, timeout=1.0) is True
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_port_never_opens(self) -> None:
        """Returns False, and only after the timeout has elapsed."""
        port = _free_port()
        started = time.monotonic()

        assert await wait_for_port(port, timeout=0.5, interval=0.1) is False
        elapsed = time.monotonic() - started
        assert 0.5 <= elapsed < 0.5 + 0.1 + CONNECT_TIMEOUT

    @pytest.mark.asyncio
    async def test_socket_table_fallback_runs_off_the_loop(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A port found only in the socket table counts, and the scan never blocks the loop."""
        port = _free_port()
        scanned_on: list[int] = []

        def fake_is_listening(checked: int) -> bool:
            scanned_on.append(threading.get_ident())
            return checked == port

        monkeypatch.setattr(readiness, "_is_listening", fake_is_listening)

        assert await wait_for_port(port, timeout=1.0) is True
        assert scanned_on
        assert threading.get_ident() not in scanned_on


class TestWaitForLogMatch:
    """Tests for wait_for_log_match."""

    @pytest.mark.asyncio
    async def test_match_written_mid_wait(self, tmp_path: Path) -> None:
        """The exact matched substring is returned once it is logged."""
        log = tmp_path / "pinggy.log"

        async def write_later() -> None:
            await asyncio.sleep(0.2)
            log.write_text("Allocated port\n")
            await asyncio.sleep(0.2)
            with open(log, "a") as f:
                f.write("You can access at tcp://abc.a.free.pinggy.link:40123 now\n")

        writer = asyncio.create_task(write_later())
        result = await wait_for_log_match(log, r"tcp://[^\s]+", timeout=3.0, interval=0.05)
        await writer

        assert result == "tcp://abc.a.free.pinggy.link:40123"

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self, tmp_path: Path) -> None:
        log = tmp_path / "cloudflared.log"
        log.write_text("INF Starting tunnel\n")

        assert await wait_for_log_match(log, r"https://\S+", timeout=0.3, interval=0.05) is None

    @pytest.mark.asyncio
    async def test_missing_file_is_tolerated(self, tmp_path: Path) -> None:
        assert await wait_for_log_match(tmp_path / "absent.log", "x", timeout=0.2, interval=0.05) is None
