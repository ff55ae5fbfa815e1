"""Collection scheduler — one orchestrator and one timer task per active source."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from relaymon.collector.credentials import decode_credentials
from relaymon.collector.decimals import DecimalResolver
from relaymon.collector.exceptions import FetchError
from relaymon.collector.fetcher import MetricsFetcher
from relaymon.collector.normalizer import BalanceNormalizer, group_by_chain, summarize
from relaymon.collector.orchestrator import CollectionOrchestrator
from relaymon.core.config import Settings, get_settings
from relaymon.core.types import MetricSource, NormalizedBalance
from relaymon.storage.base import Storage

if TYPE_CHECKING:
    from relaymon.hub.broadcast import BroadcastHub
    from relaymon.monitor.engine import AlertEngine

logger = structlog.stdlib.get_logger()

OrchestratorFactory = Callable[[MetricSource], CollectionOrchestrator]


class CollectionScheduler:
    """Polls every active source on its own refresh interval.

    Usage::

        scheduler = CollectionScheduler(storage, fetcher, resolver, engine, hub)
        await scheduler.start()
        # ...
        await scheduler.stop()

    Distinct sources run concurrently; each source stays single-flight.
    """

    def __init__(
        self,
        storage: Storage,
        fetcher: MetricsFetcher,
        resolver: DecimalResolver,
        engine: AlertEngine | None = None,
        hub: BroadcastHub | None = None,
        settings: Settings | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
        wait_for_sources: bool = True,
    ) -> None:
        self._settings = settings or get_settings()
        self._storage = storage
        self._fetcher = fetcher
        self._resolver = resolver
        self._engine = engine
        self._hub = hub
        self._normalizer = BalanceNormalizer(resolver)
        self._factory = orchestrator_factory or self._default_orchestrator
        self._wait_for_sources = wait_for_sources
        self._orchestrators: dict[int, CollectionOrchestrator] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def orchestrators(self) -> dict[int, CollectionOrchestrator]:
        return dict(self._orchestrators)

    @property
    def normalizer(self) -> BalanceNormalizer:
        return self._normalizer

    def _default_orchestrator(self, source: MetricSource) -> CollectionOrchestrator:
        return CollectionOrchestrator(
            source,
            fetcher=self._fetcher,
            normalizer=self._normalizer,
            storage=self._storage,
            engine=self._engine,
            hub=self._hub,
            settings=self._settings,
        )

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.sync_sources()
        logger.info("collection_scheduler_started", sources=len(self._orchestrators))

    async def stop(self) -> None:
        self._running = False
        for source_id in list(self._tasks):
            await self._cancel(source_id)
        logger.info("collection_scheduler_stopped")

    async def sync_sources(self) -> None:
        """Start timers for new active sources and stop those deactivated."""
        sources = {s.id: s for s in await self._storage.list_sources(active_only=True)}

        for source_id in [sid for sid in self._orchestrators if sid not in sources]:
            await self._cancel(source_id)
            del self._orchestrators[source_id]
            logger.info("collection_source_removed", source_id=source_id)

        for source_id, source in sources.items():
            existing = self._orchestrators.get(source_id)
            if existing is not None:
                existing.update_source(source)
            else:
                self._orchestrators[source_id] = self._factory(source)
                logger.info("collection_source_added", source=source.name, url=source.url)
            if self._running and source_id not in self._tasks:
                self._tasks[source_id] = asyncio.create_task(self._source_loop(source_id))

    async def _cancel(self, source_id: int) -> None:
        task = self._tasks.pop(source_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _source_loop(self, source_id: int) -> None:
        """Background loop that collects one source at its refresh interval."""
        orch = self._orchestrators[source_id]
        if self._wait_for_sources:
            try:
                await orch.wait_until_reachable()
            except asyncio.CancelledError:
                return

        while self._running:
            try:
                await orch.collect()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("collection_cycle_error", source=orch.source.name)

            try:
                await asyncio.sleep(orch.source.refresh_interval_secs)
            except asyncio.CancelledError:
                break

    # ── Aggregates ──────────────────────────────────────────────

    async def collect_all(self) -> list[NormalizedBalance]:
        """Run one cycle on every source concurrently and merge the balances."""
        results = await asyncio.gather(
            *(o.collect() for o in self._orchestrators.values()),
            return_exceptions=True,
        )
        balances: list[NormalizedBalance] = []
        for orch, result in zip(self._orchestrators.values(), results):
            if isinstance(result, BaseException):
                logger.error("collection_cycle_error", source=orch.source.name, error=str(result))
                continue
            balances.extend(result.balances if result.balances else orch.last_balances)
        return balances

    def latest_balances(self, chain: str | None = None) -> list[NormalizedBalance]:
        balances = [b for o in self._orchestrators.values() for b in o.last_balances]
        if chain:
            balances = [b for b in balances if b.chain == chain]
        return balances

    async def formatted_balances(self, chain: str | None = None, refresh: bool = False) -> dict[str, Any]:
        """Balances grouped by chain, with a summary block.

        With ``refresh`` a fresh cycle is run first; any failure degrades to
        the last good balances (possibly empty), never to an error.
        """
        if refresh:
            try:
                await self.collect_all()
            except Exception:
                logger.exception("formatted_balances_refresh_error")
        balances = self.latest_balances(chain)
        return {
            "chains": group_by_chain(balances),
            "summary": summarize(balances),
            "count": len(balances),
        }

    async def check_source(self, source: MetricSource) -> dict[str, Any]:
        """One unretried fetch against ``source``; failures are reported, not raised."""
        auth = decode_credentials(source, self._settings.auth.credentials_key.get_secret_value())
        started = time.monotonic()
        try:
            text = await self._fetcher.fetch_raw(source.url, auth, source.timeout_secs)
        except FetchError as exc:
            elapsed = round((time.monotonic() - started) * 1000, 1)
            logger.warning("source_check_failed", source=source.name, error=str(exc))
            return {"reachable": False, "responseTimeMs": elapsed, "error": str(exc)}
        elapsed = round((time.monotonic() - started) * 1000, 1)
        logger.info("source_check_ok", source=source.name, duration_ms=elapsed)
        return {"reachable": True, "responseTimeMs": elapsed, "bytes": len(text)}

    async def health(self) -> dict[str, Any]:
        sources = [await o.health() for o in self._orchestrators.values()]
        status = "healthy" if sources and all(s["status"] == "healthy" for s in sources) else "unhealthy"
        return {"status": status, "running": self._running, "sources": sources}

    def snapshot(self) -> dict[str, Any]:
        """Dashboard snapshot across every source."""
        relayers: list[dict[str, Any]] = []
        for orch in self._orchestrators.values():
            analysis = orch.last_analysis
            if analysis is not None:
                relayers.append({
                    "source": {"id": orch.source.id, "name": orch.source.name},
                    **analysis.to_dict(),
                })
        balances = self.latest_balances()
        return {
            "sources": [
                {
                    "id": o.source.id,
                    "name": o.source.name,
                    "kind": o.source.kind,
                    "state": o.state.value,
                    "errorCount": o.error_count,
                    "circuitBreakerOpen": o.breaker.is_open,
                }
                for o in self._orchestrators.values()
            ],
            "relayers": relayers,
            "balances": summarize(balances),
        }
