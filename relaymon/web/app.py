"""HTTP route layer and live websocket endpoint.

Exposes:
- ``GET  /health``                          → service health (no auth)
- ``GET  /api/dashboard``                   → per-source snapshot + recent alerts
- ``GET  /api/wallets/balances?chain=``     → latest balances grouped by chain
- ``GET  /api/wallets/health``              → collector health
- ``GET  /api/wallets/addresses?chain=``    → tracked wallets
- ``POST /api/wallets/addresses``           → register a wallet (admin)
- ``GET  /api/wallets/{id}/history``        → balance history for one wallet
- ``GET  /api/alerts``                      → alert history, newest first
- ``GET  /api/alerts/stats?timeframe=``     → alert counts (24h, 7d or 30d)
- ``POST /api/alerts/{id}/acknowledge``     → acknowledge an alert
- ``POST /api/alerts/trigger``              → manual alert (admin)
- ``GET|PUT /api/alerts/notifications``     → caller's push preferences
- ``POST /api/alerts/notifications/test``   → push a test message to the caller
- ``GET  /api/sources``                     → metrics sources
- ``POST /api/sources``                     → add a source (admin)
- ``PUT  /api/sources/{id}``                → update a source (admin)
- ``POST /api/sources/{id}/test``           → one-off fetch against a source (admin)
- ``DELETE /api/sources/{id}``              → deactivate a source (admin)
- ``GET  /api/system/connections``          → live channel clients (admin)
- ``GET  /ws``                              → live channel

Every route but ``/health`` takes a token via ``Authorization: Bearer`` or
``?token=``.
"""

from __future__ import annotations

import time
from typing import Any

import aiohttp
import structlog
from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from relaymon.collector.credentials import SourceCredentials, encrypt_credentials
from relaymon.collector.scheduler import CollectionScheduler
from relaymon.core.types import (
    AddressKind,
    AlertThresholds,
    AuthMode,
    Identity,
    MetricSource,
    NotificationPreference,
    SourceKind,
)
from relaymon.hub.broadcast import BroadcastHub
from relaymon.hub.messages import dumps
from relaymon.monitor.engine import AlertEngine
from relaymon.monitor.exceptions import InvalidAlertError
from relaymon.storage.base import Storage
from relaymon.storage.exceptions import NotFoundError
from relaymon.web.auth import Authenticator, UnauthorizedError, extract_token

logger = structlog.get_logger(__name__)

PUBLIC_PATHS = frozenset({"/health"})

MAX_PAGE = 100
MASKED_TOKEN = "***"


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=dumps)


def _error(message: str, status: int) -> web.Response:
    return _json({"success": False, "error": message}, status=status)


class ForbiddenError(Exception):
    """Authenticated, but the role does not allow the action."""


def _identity(request: web.Request) -> Identity:
    return request["identity"]


def _require_admin(request: web.Request) -> Identity:
    identity = _identity(request)
    if not identity.is_admin:
        raise ForbiddenError("Admin access required")
    return identity


def _int_param(request: web.Request, name: str, default: int, upper: int | None = None) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {name}") from exc
    value = max(0, value)
    return min(value, upper) if upper is not None else value


def _path_id(request: web.Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {name}") from exc


async def _body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="Expected a JSON object")
    return body


# ── Middleware ──────────────────────────────────────────────────


@web.middleware
async def _access_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """One structured line per request; 4xx and 5xx at warning level."""
    start = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as exc:
        status = exc.status
        raise
    finally:
        log = logger.warning if status >= 400 else logger.info
        log(
            "http_request",
            method=request.method,
            path=request.path,
            status=status,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
            remote=request.remote,
        )


@web.middleware
async def _auth_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Resolve the caller's identity on every non-public route."""
    if request.path in PUBLIC_PATHS:
        return await handler(request)
    authenticator: Authenticator = request.app["authenticator"]
    try:
        request["identity"] = await authenticator.verify(extract_token(request))
    except UnauthorizedError as exc:
        logger.info("auth_rejected", path=request.path, reason=str(exc))
        return _error("Unauthorized", 401)
    return await handler(request)


@web.middleware
async def _error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map domain errors to JSON responses."""
    try:
        return await handler(request)
    except NotFoundError as exc:
        return _error(str(exc), 404)
    except ForbiddenError as exc:
        return _error(str(exc), 403)
    except InvalidAlertError as exc:
        return _error(str(exc), 400)
    except ValidationError as exc:
        return _error(exc.errors(include_url=False)[0]["msg"], 400)
    except web.HTTPBadRequest as exc:
        return _error(exc.text or "Bad request", 400)


# ── Health & dashboard ──────────────────────────────────────────


async def _handle_health(request: web.Request) -> web.Response:
    scheduler: CollectionScheduler = request.app["scheduler"]
    hub: BroadcastHub = request.app["hub"]
    collector = await scheduler.health()
    return _json({
        "status": "ok" if scheduler.running else "degraded",
        "timestamp": time.time(),
        "collector": collector,
        "connections": len(hub.connections),
    })


async def _handle_dashboard(request: web.Request) -> web.Response:
    scheduler: CollectionScheduler = request.app["scheduler"]
    storage: Storage = request.app["storage"]
    hub: BroadcastHub = request.app["hub"]
    recent = await storage.get_alerts(limit=10)
    return _json({
        "success": True,
        "timestamp": time.time(),
        **scheduler.snapshot(),
        "alerts": {
            "recent": [r.to_dict() for r in recent],
            "unacknowledged": await storage.count_unacknowledged(),
        },
        "connections": len(hub.connections),
    })


# ── Wallets ─────────────────────────────────────────────────────


async def _handle_balances(request: web.Request) -> web.Response:
    scheduler: CollectionScheduler = request.app["scheduler"]
    chain = request.query.get("chain") or None
    refresh = request.query.get("refresh", "").lower() in ("1", "true", "yes")
    formatted = await scheduler.formatted_balances(chain, refresh=refresh)
    return _json({"success": True, **formatted})


async def _handle_wallet_health(request: web.Request) -> web.Response:
    scheduler: CollectionScheduler = request.app["scheduler"]
    return _json({"success": True, "health": await scheduler.health()})


async def _handle_addresses(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    wallets = await storage.get_wallets(chain_id=request.query.get("chain") or None)
    return _json({"success": True, "addresses": [w.model_dump(mode="json") for w in wallets]})


class _NewWallet(BaseModel):
    chain_id: str
    chain_name: str = ""
    address: str
    address_kind: AddressKind = AddressKind.RELAYER


async def _handle_add_address(request: web.Request) -> web.Response:
    identity = _require_admin(request)
    storage: Storage = request.app["storage"]
    body = _NewWallet.model_validate(await _body(request))
    if not 20 <= len(body.address) <= 100:
        return _error("Invalid address format", 400)
    if await storage.find_wallet(body.chain_id, body.address, body.address_kind):
        return _error("Wallet address already exists for this chain", 409)
    wallet, _ = await storage.upsert_wallet(
        body.chain_id, body.chain_name, body.address, body.address_kind
    )
    logger.info(
        "wallet_registered",
        chain=wallet.chain_id,
        address=wallet.address,
        username=identity.username,
    )
    return _json({"success": True, "walletId": wallet.id})


async def _handle_history(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    wallet_id = _path_id(request, "wallet_id")
    limit = _int_param(request, "limit", 100, upper=1000)
    history = await storage.get_history(wallet_id, request.query.get("denom") or None, limit)
    return _json({
        "success": True,
        "walletId": wallet_id,
        "history": [h.model_dump(mode="json") for h in history],
    })


# ── Alerts ──────────────────────────────────────────────────────


async def _handle_alerts(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    limit = _int_param(request, "limit", 50, upper=MAX_PAGE)
    offset = _int_param(request, "offset", 0)
    alerts = await storage.get_alerts(limit=limit, offset=offset)
    return _json({
        "success": True,
        "alerts": [a.to_dict() for a in alerts],
        "unacknowledged": await storage.count_unacknowledged(),
        "pagination": {"limit": limit, "offset": offset},
    })


STATS_TIMEFRAMES: dict[str, float] = {
    "24h": 24 * 3600.0,
    "7d": 7 * 24 * 3600.0,
    "30d": 30 * 24 * 3600.0,
}


async def _handle_alert_stats(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    engine: AlertEngine = request.app["engine"]
    timeframe = request.query.get("timeframe", "24h")
    if timeframe not in STATS_TIMEFRAMES:
        timeframe = "24h"
    stats = await storage.alert_stats(since=time.time() - STATS_TIMEFRAMES[timeframe])
    return _json({
        "success": True,
        "timeframe": timeframe,
        "stats": stats,
        "recentlyDispatched": engine.history(),
    })


async def _handle_acknowledge(request: web.Request) -> web.Response:
    engine: AlertEngine = request.app["engine"]
    record = await engine.acknowledge(_path_id(request, "alert_id"), _identity(request))
    return _json({"success": True, "alert": record.to_dict()})


async def _handle_trigger(request: web.Request) -> web.Response:
    identity = _require_admin(request)
    engine: AlertEngine = request.app["engine"]
    record = await engine.trigger(await _body(request))
    logger.info("alert_triggered_manually", username=identity.username, dispatched=record is not None)
    return _json({
        "success": True,
        "dispatched": record is not None,
        "alertId": record.id if record is not None else None,
    })


def _masked(pref: NotificationPreference) -> dict[str, Any]:
    data = pref.model_dump(mode="json")
    data["gotify_token"] = MASKED_TOKEN if pref.gotify_token else ""
    return data


async def _handle_get_notifications(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    identity = _identity(request)
    pref = await storage.get_notification_preferences(identity.user_id)
    if pref is None:
        pref = NotificationPreference(user_id=identity.user_id)
    return _json({"success": True, "settings": _masked(pref)})


class _NotificationSettings(BaseModel):
    gotify_url: str = ""
    gotify_token: str = ""
    enabled: bool = False
    thresholds: AlertThresholds | None = None


async def _handle_put_notifications(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    identity = _identity(request)
    body = _NotificationSettings.model_validate(await _body(request))
    current = await storage.get_notification_preferences(identity.user_id)

    token = body.gotify_token
    if not token or token == MASKED_TOKEN:
        token = current.gotify_token if current is not None else ""

    pref = NotificationPreference(
        user_id=identity.user_id,
        gotify_url=body.gotify_url,
        gotify_token=token,
        enabled=body.enabled,
        thresholds=body.thresholds or AlertThresholds(),
    )
    if pref.gotify_url and not pref.gotify_url.startswith(("http://", "https://")):
        return _error("Invalid Gotify URL format", 400)
    await storage.set_notification_preferences(pref)
    logger.info("notification_settings_updated", username=identity.username)
    return _json({"success": True, "settings": _masked(pref)})


async def _handle_test_notification(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    engine: AlertEngine = request.app["engine"]
    identity = _identity(request)
    pref = await storage.get_notification_preferences(identity.user_id)
    if pref is None or not pref.enabled or not pref.gotify_url or not pref.gotify_token:
        return _error("Gotify notifications not configured or disabled", 400)
    if not await engine.send_test(pref, identity):
        return _error("Failed to send test notification", 502)
    return _json({"success": True, "message": "Test notification sent"})


# ── Sources ─────────────────────────────────────────────────────


def _source_view(source: MetricSource) -> dict[str, Any]:
    return source.model_dump(mode="json", exclude={"encrypted_credentials"}) | {
        "hasCredentials": bool(source.encrypted_credentials),
    }


async def _handle_sources(request: web.Request) -> web.Response:
    storage: Storage = request.app["storage"]
    sources = await storage.list_sources(active_only=False)
    return _json({"success": True, "sources": [_source_view(s) for s in sources]})


class _NewSource(BaseModel):
    name: str
    url: str
    kind: SourceKind = SourceKind.PROMETHEUS
    auth_mode: AuthMode = AuthMode.NONE
    credentials: SourceCredentials | None = None
    refresh_interval_secs: float = 30.0
    timeout_secs: float = 10.0


async def _handle_add_source(request: web.Request) -> web.Response:
    identity = _require_admin(request)
    storage: Storage = request.app["storage"]
    scheduler: CollectionScheduler = request.app["scheduler"]
    body = _NewSource.model_validate(await _body(request))
    if not body.url.startswith(("http://", "https://")):
        return _error("Invalid source URL", 400)

    encrypted = ""
    if body.credentials is not None:
        encrypted = encrypt_credentials(body.credentials, request.app["credentials_key"])
    source = await storage.create_source(MetricSource(
        name=body.name,
        url=body.url,
        kind=body.kind,
        auth_mode=body.auth_mode,
        encrypted_credentials=encrypted,
        refresh_interval_secs=body.refresh_interval_secs,
        timeout_secs=body.timeout_secs,
    ))
    await scheduler.sync_sources()
    logger.info("source_added", source=source.name, username=identity.username)
    return _json({"success": True, "source": _source_view(source)})


class _SourceUpdate(BaseModel):
    name: str | None = None
    url: str | None = None
    kind: SourceKind | None = None
    auth_mode: AuthMode | None = None
    credentials: SourceCredentials | None = None
    refresh_interval_secs: float | None = Field(default=None, gt=0)
    timeout_secs: float | None = Field(default=None, ge=1, le=300)
    active: bool | None = None


async def _handle_update_source(request: web.Request) -> web.Response:
    identity = _require_admin(request)
    storage: Storage = request.app["storage"]
    scheduler: CollectionScheduler = request.app["scheduler"]
    source_id = _path_id(request, "source_id")
    body = _SourceUpdate.model_validate(await _body(request))
    if body.url is not None and not body.url.startswith(("http://", "https://")):
        return _error("Invalid source URL", 400)

    changes = body.model_dump(exclude_none=True, exclude={"credentials"})
    if body.credentials is not None:
        changes["encrypted_credentials"] = encrypt_credentials(
            body.credentials, request.app["credentials_key"]
        )
    if not changes:
        return _json({"success": True, "source": _source_view(await storage.get_source(source_id))})

    source = await storage.update_source(source_id, **changes)
    await scheduler.sync_sources()
    logger.info(
        "source_updated",
        source=source.name,
        fields=sorted(changes),
        username=identity.username,
    )
    return _json({"success": True, "source": _source_view(source)})


async def _handle_test_source(request: web.Request) -> web.Response:
    _require_admin(request)
    storage: Storage = request.app["storage"]
    scheduler: CollectionScheduler = request.app["scheduler"]
    source = await storage.get_source(_path_id(request, "source_id"))
    result = await scheduler.check_source(source)
    status = 200 if result["reachable"] else 400
    return _json({"success": result["reachable"], "source": source.name, **result}, status=status)


async def _handle_delete_source(request: web.Request) -> web.Response:
    identity = _require_admin(request)
    storage: Storage = request.app["storage"]
    scheduler: CollectionScheduler = request.app["scheduler"]
    source = await storage.deactivate_source(_path_id(request, "source_id"))
    await scheduler.sync_sources()
    logger.info("source_deactivated", source=source.name, username=identity.username)
    return _json({"success": True, "source": _source_view(source)})


# ── Live channel ────────────────────────────────────────────────


async def _handle_connections(request: web.Request) -> web.Response:
    _require_admin(request)
    hub: BroadcastHub = request.app["hub"]
    clients = hub.connected_clients()
    return _json({"success": True, "count": len(clients), "clients": clients})


async def _handle_ws(request: web.Request) -> web.WebSocketResponse:
    hub: BroadcastHub = request.app["hub"]
    ws = web.WebSocketResponse(autoping=False)
    await ws.prepare(request)
    conn = await hub.register(ws, _identity(request))
    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await hub.handle_message(conn, msg.data)
            elif msg.type == aiohttp.WSMsgType.PONG:
                hub.mark_alive(conn.id)
            elif msg.type == aiohttp.WSMsgType.PING:
                hub.mark_alive(conn.id)
                await ws.pong(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("ws_error", connection_id=conn.id, error=str(ws.exception()))
                break
    finally:
        hub.unregister(conn.id)
    return ws


# ── App factory ─────────────────────────────────────────────────


def create_web_app(
    storage: Storage,
    scheduler: CollectionScheduler,
    engine: AlertEngine,
    hub: BroadcastHub,
    authenticator: Authenticator,
    credentials_key: str = "",
) -> web.Application:
    """Create the aiohttp web application."""
    app = web.Application(middlewares=[_access_middleware, _auth_middleware, _error_middleware])
    app["storage"] = storage
    app["scheduler"] = scheduler
    app["engine"] = engine
    app["hub"] = hub
    app["authenticator"] = authenticator
    app["credentials_key"] = credentials_key

    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/dashboard", _handle_dashboard)
    app.router.add_get("/api/wallets/balances", _handle_balances)
    app.router.add_get("/api/wallets/health", _handle_wallet_health)
    app.router.add_get("/api/wallets/addresses", _handle_addresses)
    app.router.add_post("/api/wallets/addresses", _handle_add_address)
    app.router.add_get("/api/wallets/{wallet_id}/history", _handle_history)
    app.router.add_get("/api/alerts", _handle_alerts)
    app.router.add_get("/api/alerts/stats", _handle_alert_stats)
    app.router.add_post("/api/alerts/trigger", _handle_trigger)
    app.router.add_get("/api/alerts/notifications", _handle_get_notifications)
    app.router.add_put("/api/alerts/notifications", _handle_put_notifications)
    app.router.add_post("/api/alerts/notifications/test", _handle_test_notification)
    app.router.add_post("/api/alerts/{alert_id}/acknowledge", _handle_acknowledge)
    app.router.add_get("/api/sources", _handle_sources)
    app.router.add_post("/api/sources", _handle_add_source)
    app.router.add_put("/api/sources/{source_id}", _handle_update_source)
    app.router.add_post("/api/sources/{source_id}/test", _handle_test_source)
    app.router.add_delete("/api/sources/{source_id}", _handle_delete_source)
    app.router.add_get("/api/system/connections", _handle_connections)
    app.router.add_get("/ws", _handle_ws)
    return app


async def start_web_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 3000,
) -> web.AppRunner:
    """Start serving ``app``. Returns the runner for cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("web_server_started", host=host, port=port)
    return runner
