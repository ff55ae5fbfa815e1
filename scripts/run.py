#!/usr/bin/env python3
"""Service entrypoint — wires collection, alerting, the hub and the web layer.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Any

import structlog

from relaymon.collector.credentials import SourceCredentials, encrypt_credentials
from relaymon.collector.decimals import DecimalResolver
from relaymon.collector.fetcher import MetricsFetcher
from relaymon.collector.scheduler import CollectionScheduler
from relaymon.core.config import Settings, load_settings
from relaymon.core.logging import setup_logging
from relaymon.core.types import AuthMode, MetricSource, SourceKind
from relaymon.hub.broadcast import BroadcastHub
from relaymon.monitor.engine import AlertEngine
from relaymon.storage.memory import MemoryStorage
from relaymon.web.app import create_web_app, start_web_server
from relaymon.web.auth import TokenAuthenticator

logger = structlog.get_logger(__name__)


async def seed_storage(storage: MemoryStorage, settings: Settings) -> None:
    """Load configured sources and users into a fresh store."""
    key = settings.auth.credentials_key.get_secret_value()
    for cfg in settings.sources:
        raw = cfg.credentials.get_secret_value()
        encrypted = ""
        if raw:
            encrypted = encrypt_credentials(SourceCredentials.model_validate_json(raw), key)
        await storage.create_source(MetricSource(
            name=cfg.name,
            url=cfg.url,
            kind=SourceKind(cfg.kind),
            auth_mode=AuthMode(cfg.auth_mode),
            encrypted_credentials=encrypted,
            refresh_interval_secs=cfg.refresh_interval_secs,
            timeout_secs=cfg.timeout_secs,
            active=cfg.active,
        ))

    if not settings.sources:
        await storage.create_source(MetricSource(
            name="default",
            url=settings.metrics.endpoint,
            kind=SourceKind.PROMETHEUS,
            refresh_interval_secs=settings.metrics.refresh_interval_secs,
            timeout_secs=settings.metrics.request_timeout_secs,
        ))

    for entry in settings.auth.tokens:
        storage.add_user(entry.user_id, entry.username)


async def run(args: argparse.Namespace) -> int:
    """Start all components and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    if not settings.auth.tokens:
        logger.error("no_api_tokens_configured")
        print(
            "No API tokens configured. Add at least one entry under auth.tokens "
            "in config/settings.yaml.",
            file=sys.stderr,
        )
        return 1

    storage = MemoryStorage()
    await seed_storage(storage, settings)

    logger.info(
        "service_starting",
        sources=len(await storage.list_sources()),
        users=len(settings.auth.tokens),
        port=settings.web.port,
    )

    # ── Collaborators ────────────────────────────────────────────
    fetcher = MetricsFetcher(settings.metrics)
    resolver = DecimalResolver(storage=storage, config=settings.decimals)
    hub = BroadcastHub(settings.hub)
    engine = AlertEngine(storage, hub=hub, config=settings.alerts)
    scheduler = CollectionScheduler(
        storage, fetcher, resolver, engine=engine, hub=hub, settings=settings
    )

    async def _data_provider(request_type: str, params: dict[str, Any]) -> dict[str, Any] | None:
        if request_type == "current_status":
            return scheduler.snapshot()
        if request_type == "wallet_balances":
            return await scheduler.formatted_balances(params.get("chain"))
        return None

    hub.set_data_provider(_data_provider)

    # ── Web layer ────────────────────────────────────────────────
    app = create_web_app(
        storage=storage,
        scheduler=scheduler,
        engine=engine,
        hub=hub,
        authenticator=TokenAuthenticator.from_config(settings.auth),
        credentials_key=settings.auth.credentials_key.get_secret_value(),
    )

    # ── Start everything ─────────────────────────────────────────
    await hub.start()
    await engine.start()
    await scheduler.start()
    runner = await start_web_server(app, settings.web.host, settings.web.port)

    logger.info("service_running", sources=len(scheduler.orchestrators))

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("service_shutting_down")

    await scheduler.stop()
    await hub.stop()
    await runner.cleanup()
    await engine.stop()
    await resolver.close()
    await fetcher.close()

    logger.info(
        "service_stopped",
        requests=fetcher.request_count,
        decimals_lookups=resolver.network_calls,
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the IBC relayer monitoring service.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
