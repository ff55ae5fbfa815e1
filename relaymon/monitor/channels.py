"""Notification channels — Gotify push delivery."""

from __future__ import annotations

import abc

import aiohttp
import structlog

from relaymon.monitor.types import AlertMessage

logger = structlog.get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels."""

    @abc.abstractmethod
    async def send(self, msg: AlertMessage) -> bool:
        """Send an alert message. Returns True on success."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class GotifyChannel(NotificationChannel):
    """Delivers alerts to a Gotify server as markdown messages.

    A shared ``session`` may be passed in; the channel then never closes it.
    """

    def __init__(
        self,
        url: str,
        token: str,
        session: aiohttp.ClientSession | None = None,
        timeout_secs: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_secs)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    @staticmethod
    def build_payload(msg: AlertMessage) -> dict[str, object]:
        extras: dict[str, object] = {
            "client::display": {"contentType": "text/markdown"},
        }
        if msg.click_url:
            extras["client::notification"] = {"click": {"url": msg.click_url}}
        return {
            "title": msg.title,
            "message": msg.body,
            "priority": msg.priority,
            "extras": extras,
        }

    async def send(self, msg: AlertMessage) -> bool:
        headers = {"X-Gotify-Key": self._token}
        try:
            session = self._get_session()
            async with session.post(
                f"{self._url}/message",
                json=self.build_payload(msg),
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if 200 <= resp.status < 300:
                    return True
                body = await resp.text()
                logger.warning(
                    "gotify_send_failed",
                    url=self._url,
                    status=resp.status,
                    body=body[:200],
                )
                return False
        except Exception:
            logger.exception("gotify_send_error", url=self._url, alert_type=msg.alert_type)
            return False

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
