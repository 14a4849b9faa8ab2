"""Publish tunnel endpoints to a Firebase Realtime Database and ntfy.

Both sinks are optional and best-effort: failures are logged and reported as
False, never raised to the caller.
"""

import getpass
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from .config import SetupSettings
from .errors import NetworkError
from .log_filter import mask_auth_in_url, sanitize_url
from .models import SettledOutcome, TunnelOutcome
from .retry import BackoffExecutor

logger = structlog.get_logger()

NTFY_HEADERS = {
    "X-Title": "SSH Tunnel Ready",
    "X-Priority": "3",
    "X-Tags": "ssh,tunnel,ci",
    "Content-Type": "text/plain; charset=utf-8",
}


def build_rtdb_url(base: str | None, record_id: str | None) -> str:
    """``<base>/<id>.json``, keeping any query string that follows ``.json`` in ``base``."""
    base = sanitize_url(base)
    record = quote(str(record_id or "").strip(), safe="")
    if not base or not record:
        return ""

    idx = base.find(".json")
    if idx != -1:
        return f"{base[:idx]}/{record}.json{base[idx + 5:]}"
    return f"{base.rstrip('/')}/{record}.json"


def _fulfilled(results: Sequence[SettledOutcome]) -> list[TunnelOutcome]:
    return [r.outcome for r in results if r.status == "fulfilled"]


def build_rtdb_payload(results: Sequence[SettledOutcome], user: str) -> dict[str, Any]:
    payload: dict[str, Any] = {"timestamp": datetime.now(UTC).isoformat(), "user": user}
    for outcome in _fulfilled(results):
        if outcome.endpoint:
            payload[outcome.kind.value] = outcome.endpoint
        if outcome.connect_command:
            payload[f"{outcome.kind.value}_connect"] = outcome.connect_command
    return payload


def build_ntfy_message(results: Sequence[SettledOutcome]) -> str | None:
    lines = []
    for outcome in _fulfilled(results):
        if outcome.endpoint:
            lines.append(f"{outcome.kind.value}: {outcome.endpoint}")
        if outcome.connect_command:
            lines.append(f"Connect: {outcome.connect_command}")
    if not lines:
        return None
    return "\n".join(["🔐 SSH Tunnel URLs", "", *lines])


@dataclass
class PersistResult:
    rtdb: bool = False
    ntfy: bool = False


class ResultPersister:
    """Sends tunnel endpoints to the configured sinks."""

    def __init__(self, settings: SetupSettings, executor: BackoffExecutor, user: str | None = None) -> None:
        self.settings = settings
        self.executor = executor
        self.user = user or getpass.getuser()
        self.timeout = settings.timeouts.http_request

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, url, **kwargs)
        if response.is_error:
            raise NetworkError(
                f"{method} {mask_auth_in_url(url)} returned HTTP {response.status_code}",
                {"status": response.status_code, "body": response.text[:200]},
            )
        return response

    async def save_to_rtdb(self, results: Sequence[SettledOutcome]) -> bool:
        if not self.settings.rtdb_enabled:
            logger.debug("RTDB persistence disabled")
            return False

        payload = build_rtdb_payload(results, self.user)
        if len(payload) <= 2:
            logger.warning("No tunnel endpoints to persist")
            return False

        url = build_rtdb_url(self.settings.rtdb_url, self.settings.rtdb_id)
        if not url:
            logger.error("Failed to build RTDB URL")
            return False

        logger.info("Persisting tunnel URLs to RTDB", url=mask_auth_in_url(url))
        try:
            await self.executor.run(
                lambda: self._send("PATCH", url, json=payload),
                operation_name="rtdb persist",
                retry_on=(httpx.HTTPError, NetworkError),
            )
        except (httpx.HTTPError, NetworkError) as e:
            logger.error("RTDB persist failed", error=str(e))
            return False

        logger.info("Tunnel URLs saved to RTDB")
        return True

    async def notify_ntfy(self, results: Sequence[SettledOutcome]) -> bool:
        if not self.settings.ntfy_enabled:
            logger.debug("ntfy notifications disabled")
            return False

        message = build_ntfy_message(results)
        if message is None:
            logger.warning("No tunnel info to notify")
            return False

        url = f"{sanitize_url(self.settings.ntfy_url).rstrip('/')}/{quote(self.settings.ntfy_topic or '', safe='')}"
        logger.info("Sending ntfy notification", topic=self.settings.ntfy_topic)
        try:
            await self.executor.run(
                lambda: self._send("POST", url, content=message.encode("utf-8"), headers=NTFY_HEADERS),
                operation_name="ntfy notify",
                retry_on=(httpx.HTTPError, NetworkError),
            )
        except (httpx.HTTPError, NetworkError) as e:
            logger.error("ntfy notification failed", error=str(e))
            return False

        logger.info("Notification sent via ntfy")
        return True

    async def persist(self, results: Sequence[SettledOutcome]) -> PersistResult:
        return PersistResult(
            rtdb=await self.save_to_rtdb(results),
            ntfy=await self.notify_ntfy(results),
        )
