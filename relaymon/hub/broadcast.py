"""Broadcast hub — live connection registry, channel subscriptions and fan-out."""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

import structlog

from relaymon.core.config import HubConfig, get_settings
from relaymon.core.types import Identity, Role
from relaymon.hub.messages import (
    ADMIN_CHANNELS,
    ALL_CHANNELS,
    FORBIDDEN_CHANNEL,
    INVALID_CHANNEL,
    UNKNOWN_REQUEST,
    MessageError,
    PingMessage,
    RequestDataMessage,
    ServerEvent,
    SubscribeMessage,
    UnsubscribeMessage,
    encode_frame,
    error_frame,
    parse_client_message,
)

logger = structlog.get_logger(__name__)

# (request_type, params) -> payload, or None when the request type is unknown.
DataProvider = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]


class LiveSocket(Protocol):
    """The subset of ``aiohttp.web.WebSocketResponse`` the hub relies on."""

    async def send_str(self, data: str) -> None: ...

    async def ping(self, message: bytes = b"") -> None: ...

    async def close(self, *, code: int = ..., message: bytes = ...) -> bool: ...


class Connection:
    """One authenticated live connection."""

    def __init__(self, socket: LiveSocket, identity: Identity, now: float) -> None:
        self.id = secrets.token_hex(6)
        self.socket = socket
        self.identity = identity
        self.subscriptions: set[str] = set()
        self.connected_at = now
        self.last_seen = now

    async def send(self, frame: str) -> None:
        await self.socket.send_str(frame)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user": {
                "id": self.identity.user_id,
                "username": self.identity.username,
                "role": self.identity.role.value,
            },
            "connected": self.connected_at,
            "subscriptions": sorted(self.subscriptions),
        }


class BroadcastHub:
    """Registry of live connections with channel-filtered fan-out.

    Sends run concurrently, each bounded by ``send_timeout_secs``; a
    connection whose send fails or times out is removed at once and then
    closed, with closes also bounded by ``send_timeout_secs``. The
    heartbeat closes connections silent for longer than
    ``liveness_timeout_secs`` and pings the rest concurrently.
    """

    def __init__(
        self,
        config: HubConfig | None = None,
        data_provider: DataProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or get_settings().hub
        self._data_provider = data_provider
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def connections(self) -> dict[str, Connection]:
        return dict(self._connections)

    def set_data_provider(self, provider: DataProvider) -> None:
        self._data_provider = provider

    def connected_clients(self) -> list[dict[str, Any]]:
        return [c.describe() for c in self._connections.values()]

    # ── Registration ────────────────────────────────────────────

    async def register(self, socket: LiveSocket, identity: Identity) -> Connection:
        """Add a connection and greet it with a ``welcome`` frame."""
        conn = Connection(socket, identity, self._clock())
        self._connections[conn.id] = conn
        logger.info("hub_connected", connection_id=conn.id, username=identity.username)
        await conn.send(encode_frame(ServerEvent.WELCOME, {
            "clientId": conn.id,
            "user": {
                "id": identity.user_id,
                "username": identity.username,
                "role": identity.role.value,
            },
            "timestamp": conn.connected_at,
        }))
        return conn

    def unregister(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is not None:
            logger.info(
                "hub_disconnected",
                connection_id=connection_id,
                username=conn.identity.username,
            )

    def mark_alive(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.last_seen = self._clock()

    async def _close(self, conn: Connection, reason: str) -> None:
        try:
            await asyncio.wait_for(conn.socket.close(), self._config.send_timeout_secs)
        except Exception as exc:
            logger.debug("hub_close_failed", connection_id=conn.id, error=repr(exc))
        logger.info("hub_connection_pruned", connection_id=conn.id, reason=reason)

    async def _drop(self, dropped: list[tuple[Connection, str]]) -> None:
        """Unregister every connection first, then close them concurrently."""
        for conn, _ in dropped:
            self.unregister(conn.id)
        if dropped:
            await asyncio.gather(*(self._close(conn, reason) for conn, reason in dropped))

    # ── Client messages ─────────────────────────────────────────

    async def handle_message(self, conn: Connection, raw: str | bytes) -> None:
        """Single dispatch point for every client frame."""
        self.mark_alive(conn.id)
        try:
            msg = parse_client_message(raw)
        except MessageError as exc:
            logger.warning(
                "hub_invalid_message",
                connection_id=conn.id,
                username=conn.identity.username,
                reason=exc.reason,
            )
            await conn.send(error_frame(exc.reason))
            return

        if isinstance(msg, SubscribeMessage):
            await self._subscribe(conn, msg.data.channel)
        elif isinstance(msg, UnsubscribeMessage):
            conn.subscriptions.discard(msg.data.channel)
            await conn.send(encode_frame(
                ServerEvent.SUBSCRIPTION_CONFIRMED,
                {"channel": msg.data.channel, "subscribed": False},
            ))
        elif isinstance(msg, PingMessage):
            await conn.send(encode_frame(ServerEvent.PONG, {"timestamp": self._clock()}))
        elif isinstance(msg, RequestDataMessage):
            await self._data_request(conn, msg)

    async def _subscribe(self, conn: Connection, channel: str) -> None:
        if channel not in ALL_CHANNELS:
            await conn.send(error_frame(INVALID_CHANNEL))
            return
        if channel in ADMIN_CHANNELS and not conn.identity.is_admin:
            logger.warning(
                "hub_subscription_forbidden",
                connection_id=conn.id,
                username=conn.identity.username,
                channel=channel,
            )
            await conn.send(error_frame(FORBIDDEN_CHANNEL))
            return
        conn.subscriptions.add(channel)
        await conn.send(encode_frame(
            ServerEvent.SUBSCRIPTION_CONFIRMED,
            {"channel": channel, "subscribed": True},
        ))
        logger.debug("hub_subscribed", username=conn.identity.username, channel=channel)

    async def _data_request(self, conn: Connection, msg: RequestDataMessage) -> None:
        request_type = msg.data.request_type
        payload: dict[str, Any] | None = None
        if self._data_provider is not None:
            try:
                payload = await self._data_provider(request_type, msg.data.params)
            except Exception:
                logger.exception("hub_data_request_error", request_type=request_type)
                payload = None
        if payload is None:
            await conn.send(error_frame(UNKNOWN_REQUEST))
            return
        await conn.send(encode_frame(ServerEvent.DATA_RESPONSE, {
            "requestType": request_type,
            "timestamp": self._clock(),
            **payload,
        }))

    # ── Fan-out ─────────────────────────────────────────────────

    async def _send_all(self, targets: list[Connection], frame: str) -> int:
        if not targets:
            return 0
        timeout = self._config.send_timeout_secs
        results = await asyncio.gather(
            *(asyncio.wait_for(c.send(frame), timeout) for c in targets),
            return_exceptions=True,
        )
        failed = [
            (conn, f"send failed: {result!r}")
            for conn, result in zip(targets, results)
            if isinstance(result, BaseException)
        ]
        await self._drop(failed)
        return len(targets) - len(failed)

    async def broadcast(
        self,
        event: str,
        data: dict[str, Any],
        channels: Iterable[str] | None = None,
    ) -> int:
        """Send to connections subscribed to any of ``channels`` (all when None)."""
        wanted = set(channels) if channels is not None else None
        targets = [
            c for c in self._connections.values()
            if wanted is None or c.subscriptions & wanted
        ]
        return await self._send_all(targets, encode_frame(event, data))

    async def broadcast_to_role(self, event: str, data: dict[str, Any], role: Role) -> int:
        """Send to connections whose role matches ``role``; admins always receive."""
        targets = [
            c for c in self._connections.values()
            if c.identity.role == role or c.identity.is_admin
        ]
        return await self._send_all(targets, encode_frame(event, data))

    # ── Heartbeat ───────────────────────────────────────────────

    async def heartbeat(self) -> int:
        """One liveness sweep. Returns the number of connections removed."""
        now = self._clock()
        dropped: list[tuple[Connection, str]] = []
        alive: list[Connection] = []
        for conn in self._connections.values():
            if now - conn.last_seen > self._config.liveness_timeout_secs:
                dropped.append((conn, "stale"))
            else:
                alive.append(conn)

        timeout = self._config.send_timeout_secs
        results = await asyncio.gather(
            *(asyncio.wait_for(c.socket.ping(), timeout) for c in alive),
            return_exceptions=True,
        )
        dropped.extend(
            (conn, f"ping failed: {result!r}")
            for conn, result in zip(alive, results)
            if isinstance(result, BaseException)
        )
        await self._drop(dropped)
        return len(dropped)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info("hub_started", heartbeat_secs=self._config.heartbeat_interval_secs)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._drop([(conn, "shutdown") for conn in self._connections.values()])
        logger.info("hub_stopped")

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.heartbeat_interval_secs)
            except asyncio.CancelledError:
                break
            try:
                await self.heartbeat()
            except Exception:
                logger.exception("hub_heartbeat_error")
