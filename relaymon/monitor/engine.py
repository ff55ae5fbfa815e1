"""Alert engine — persist, deduplicate, route and deliver alert conditions."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from pydantic import ValidationError

from relaymon.core.config import AlertsConfig, get_settings
from relaymon.core.types import (
    AlertCondition,
    AlertDetails,
    AlertRecord,
    Identity,
    NotificationPreference,
    Role,
    Severity,
    Subscriber,
)
from relaymon.hub.messages import Channel, ServerEvent
from relaymon.monitor.channels import GotifyChannel, NotificationChannel
from relaymon.monitor.dedup import DedupWindow, dedup_key
from relaymon.monitor.exceptions import InvalidAlertError
from relaymon.monitor.formatters import (
    alert_event_payload,
    format_alert,
    format_test_notification,
)
from relaymon.monitor.routing import should_deliver
from relaymon.storage.base import Storage

if TYPE_CHECKING:
    from relaymon.hub.broadcast import BroadcastHub

# Dedicated structured logger for alert decisions.
alert_logger = structlog.get_logger("alert_log")

logger = structlog.get_logger(__name__)

ChannelFactory = Callable[[NotificationPreference], NotificationChannel]


class AlertEngine:
    """Turns AlertConditions into persisted records, live events and push notifications.

    - Every condition is persisted (``evaluate``), duplicates included.
    - A condition whose dedup key was dispatched inside the window is
      suppressed: persisted, but not broadcast or delivered.
    - Fresh records are broadcast on the ``alerts`` channel; critical ones are
      also pushed to admins. Subscribers passing the routing gates get a push.
    - Delivery failures are isolated per subscriber.
    """

    def __init__(
        self,
        storage: Storage,
        hub: BroadcastHub | None = None,
        config: AlertsConfig | None = None,
        dedup: DedupWindow | None = None,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self._storage = storage
        self._hub = hub
        self._config = config or get_settings().alerts
        self._dedup = dedup or DedupWindow(self._config.dedup_window_secs)
        self._channel_factory = channel_factory or self._gotify_channel
        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def dedup(self) -> DedupWindow:
        return self._dedup

    @property
    def running(self) -> bool:
        return self._running

    # ── Pipeline ────────────────────────────────────────────────

    async def evaluate(self, condition: AlertCondition) -> AlertRecord | None:
        """Persist ``condition``; return the record unless it is a duplicate."""
        key = dedup_key(condition)
        record = await self._storage.append_alert(AlertRecord.from_condition(condition))
        # Mark only after the record is stored.
        fresh = self._dedup.check_and_mark(key)

        alert_logger.info(
            "alert_decision",
            alert_id=record.id,
            alert_type=record.type,
            chain=record.chain_name,
            severity=record.severity.label,
            key=key,
            dispatched=fresh,
            message=record.message,
        )
        return record if fresh else None

    async def dispatch(self, record: AlertRecord) -> int:
        """Broadcast ``record`` and deliver it to subscribers. Returns deliveries made."""
        await self._broadcast(record)

        try:
            subscribers = await self._storage.list_subscribers()
        except Exception:
            logger.exception("alert_subscribers_lookup_error", alert_id=record.id)
            return 0

        delivered = 0
        for sub in subscribers:
            if not should_deliver(record, sub.preference):
                continue
            if await self._deliver(record, sub):
                delivered += 1
        return delivered

    async def process(self, condition: AlertCondition) -> AlertRecord | None:
        """Evaluate then, if fresh, dispatch. Returns the dispatched record or None."""
        record = await self.evaluate(condition)
        if record is not None:
            await self.dispatch(record)
        return record

    async def trigger(self, payload: dict[str, Any]) -> AlertRecord | None:
        """Manual alert ``{type, chain?, severity, message, data?}``.

        Raises:
            InvalidAlertError: The payload is incomplete or malformed.
        """
        try:
            condition = AlertCondition(
                type=payload["type"],
                severity=payload["severity"],
                message=payload["message"],
                chain=payload.get("chain"),
                details=AlertDetails.model_validate(payload.get("data") or {}),
            )
        except KeyError as exc:
            raise InvalidAlertError(f"Missing field: {exc.args[0]}") from exc
        except (ValidationError, ValueError) as exc:
            raise InvalidAlertError(str(exc)) from exc
        return await self.process(condition)

    async def acknowledge(self, alert_id: int, identity: Identity) -> AlertRecord:
        """Mark an alert acknowledged. Unknown ids raise NotFoundError."""
        record = await self._storage.acknowledge_alert(alert_id, identity.user_id)
        alert_logger.info(
            "alert_acknowledged",
            alert_id=alert_id,
            user_id=identity.user_id,
            username=identity.username,
        )
        return record

    def history(self) -> list[dict[str, object]]:
        return [{"key": k, "timestamp": ts} for k, ts in self._dedup.entries()]

    # ── Delivery ────────────────────────────────────────────────

    async def _broadcast(self, record: AlertRecord) -> None:
        if self._hub is None:
            return
        payload = alert_event_payload(record, self._config.base_url)
        try:
            await self._hub.broadcast(ServerEvent.NEW_ALERT, payload, channels=[Channel.ALERTS])
            if record.severity == Severity.CRITICAL:
                await self._hub.broadcast_to_role(ServerEvent.CRITICAL_ALERT, payload, Role.ADMIN)
        except Exception:
            logger.exception("alert_broadcast_error", alert_id=record.id)

    def _gotify_channel(self, pref: NotificationPreference) -> NotificationChannel:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return GotifyChannel(
            pref.gotify_url,
            pref.gotify_token,
            session=self._session,
            timeout_secs=self._config.delivery_timeout_secs,
        )

    async def _deliver(self, record: AlertRecord, sub: Subscriber) -> bool:
        pref = sub.preference
        if pref is None:
            return False
        msg = format_alert(record, self._config.base_url)
        try:
            channel = self._channel_factory(pref)
            ok = await channel.send(msg)
        except Exception:
            logger.exception(
                "alert_delivery_error",
                alert_id=record.id,
                user_id=sub.user_id,
                username=sub.username,
            )
            return False
        if ok:
            logger.debug("alert_delivered", alert_id=record.id, username=sub.username)
        else:
            logger.warning("alert_delivery_failed", alert_id=record.id, username=sub.username)
        return ok

    async def send_test(self, pref: NotificationPreference, identity: Identity) -> bool:
        """Push a test message through the caller's own channel settings."""
        msg = format_test_notification(identity.username, time.time())
        try:
            ok = await self._channel_factory(pref).send(msg)
        except Exception:
            logger.exception("test_notification_error", username=identity.username)
            return False
        log = logger.info if ok else logger.warning
        log("test_notification_sent", username=identity.username, delivered=ok)
        return ok

    # ── Cleanup loop ────────────────────────────────────────────

    def cleanup(self) -> int:
        """Evict dedup entries older than the configured history age."""
        evicted = self._dedup.evict_older_than(self._config.history_max_age_secs)
        logger.debug("alert_history_cleanup", evicted=evicted, remaining=len(self._dedup))
        return evicted

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("alert_engine_started")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("alert_engine_stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.cleanup_interval_secs)
            except asyncio.CancelledError:
                break
            try:
                self.cleanup()
            except Exception:
                logger.exception("alert_history_cleanup_error")
