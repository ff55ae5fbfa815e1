"""Tests for CollectionScheduler — source sync, loop lifecycle, aggregates."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from relaymon.collector.orchestrator import CollectionResult, CollectorState
from relaymon.collector.scheduler import CollectionScheduler
from relaymon.core.config import Settings
from relaymon.core.types import MetricSource, NormalizedBalance
from relaymon.storage.memory import MemoryStorage


# ── Helpers ─────────────────────────────────────────────────────


def _balance(**kw: object) -> NormalizedBalance:
    defaults: dict[str, object] = {
        "account": "osmo1abc",
        "chain": "osmosis-1",
        "chain_name": "Osmosis",
        "denom": "uosmo",
        "symbol": "OSMO",
        "raw_value": "12261010",
        "balance": Decimal("12.26101"),
        "decimals": 6,
        "timestamp": 100.0,
    }
    defaults.update(kw)
    return NormalizedBalance(**defaults)  # type: ignore[arg-type]


def _fake_orch(source: MetricSource, balances: list[NormalizedBalance] | None = None) -> MagicMock:
    orch = MagicMock()
    orch.source = source
    orch.state = CollectorState.IDLE
    orch.error_count = 0
    orch.breaker.is_open = False
    orch.last_analysis = None
    orch.last_balances = balances or []
    orch.wait_until_reachable = AsyncMock(return_value=True)
    orch.collect = AsyncMock(
        return_value=CollectionResult(source=source.name, balances=balances or [])
    )
    orch.health = AsyncMock(return_value={"status": "healthy", "source": source.name})
    return orch


class _Factory:
    def __init__(self, balances: dict[str, list[NormalizedBalance]] | None = None) -> None:
        self.balances = balances or {}
        self.built: dict[int, MagicMock] = {}

    def __call__(self, source: MetricSource) -> MagicMock:
        orch = _fake_orch(source, self.balances.get(source.name))
        self.built[source.id] = orch
        return orch


async def _storage_with(*names: str, refresh: float = 30.0) -> MemoryStorage:
    storage = MemoryStorage()
    for name in names:
        await storage.create_source(
            MetricSource(name=name, url=f"http://{name}.test/metrics", refresh_interval_secs=refresh)
        )
    return storage


def _scheduler(storage: MemoryStorage, factory: _Factory, **kw: object) -> CollectionScheduler:
    return CollectionScheduler(
        storage,
        fetcher=MagicMock(),
        resolver=MagicMock(),
        settings=Settings(),
        orchestrator_factory=factory,
        **kw,  # type: ignore[arg-type]
    )


# ── Source sync ─────────────────────────────────────────────────


class TestSyncSources:
    async def test_builds_one_orchestrator_per_active_source(self) -> None:
        storage = await _storage_with("a", "b")
        factory = _Factory()
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()
        assert sorted(scheduler.orchestrators) == [1, 2]

    async def test_deactivated_source_removed(self) -> None:
        storage = await _storage_with("a", "b")
        scheduler = _scheduler(storage, _Factory())
        await scheduler.sync_sources()
        await storage.deactivate_source(1)
        await scheduler.sync_sources()
        assert list(scheduler.orchestrators) == [2]

    async def test_existing_orchestrator_gets_updated_source(self) -> None:
        storage = await _storage_with("a")
        factory = _Factory()
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()
        await storage.update_source(1, refresh_interval_secs=5.0)
        await scheduler.sync_sources()
        factory.built[1].update_source.assert_called_once()
        assert len(factory.built) == 1


# ── Lifecycle ───────────────────────────────────────────────────


class TestLifecycle:
    async def test_start_runs_cycles_and_stop_cancels(self) -> None:
        storage = await _storage_with("a", refresh=0.01)
        factory = _Factory()
        scheduler = _scheduler(storage, factory)

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        orch = factory.built[1]
        orch.wait_until_reachable.assert_awaited_once()
        assert orch.collect.await_count >= 2
        assert not scheduler.running

    async def test_skip_startup_wait(self) -> None:
        storage = await _storage_with("a", refresh=0.01)
        factory = _Factory()
        scheduler = _scheduler(storage, factory, wait_for_sources=False)
        await scheduler.start()
        await asyncio.sleep(0.02)
        await scheduler.stop()
        factory.built[1].wait_until_reachable.assert_not_awaited()

    async def test_cycle_errors_do_not_kill_loop(self) -> None:
        storage = await _storage_with("a", refresh=0.01)
        factory = _Factory()
        scheduler = _scheduler(storage, factory, wait_for_sources=False)
        await scheduler.sync_sources()
        factory.built[1].collect = AsyncMock(side_effect=RuntimeError("boom"))

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert factory.built[1].collect.await_count >= 2

    async def test_start_is_idempotent(self) -> None:
        storage = await _storage_with("a")
        scheduler = _scheduler(storage, _Factory(), wait_for_sources=False)
        await scheduler.start()
        tasks = dict(scheduler._tasks)
        await scheduler.start()
        assert scheduler._tasks == tasks
        await scheduler.stop()


# ── Aggregates ──────────────────────────────────────────────────


class TestAggregates:
    async def test_collect_all_merges(self) -> None:
        storage = await _storage_with("a", "b")
        factory = _Factory({
            "a": [_balance()],
            "b": [_balance(account="cosmos1x", chain="cosmoshub-4", chain_name="Cosmos Hub")],
        })
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()
        balances = await scheduler.collect_all()
        assert {b.chain for b in balances} == {"osmosis-1", "cosmoshub-4"}

    async def test_collect_all_survives_failing_source(self) -> None:
        storage = await _storage_with("a", "b")
        factory = _Factory({"b": [_balance()]})
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()
        factory.built[1].collect = AsyncMock(side_effect=RuntimeError("boom"))
        balances = await scheduler.collect_all()
        assert len(balances) == 1

    async def test_formatted_balances_filters_chain(self) -> None:
        storage = await _storage_with("a")
        factory = _Factory({
            "a": [_balance(), _balance(account="cosmos1x", chain="cosmoshub-4", chain_name="Cosmos Hub")],
        })
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()

        everything = await scheduler.formatted_balances()
        assert everything["count"] == 2
        only_hub = await scheduler.formatted_balances("cosmoshub-4")
        assert only_hub["count"] == 1
        assert only_hub["chains"][0]["chainName"] == "Cosmos Hub"

    async def test_formatted_balances_refresh_never_raises(self) -> None:
        storage = await _storage_with("a")
        factory = _Factory()
        scheduler = _scheduler(storage, factory)
        await scheduler.sync_sources()
        factory.built[1].collect = AsyncMock(side_effect=RuntimeError("boom"))
        result = await scheduler.formatted_balances(refresh=True)
        assert result["count"] == 0
        assert result["chains"] == []

    async def test_health_and_snapshot(self) -> None:
        storage = await _storage_with("a")
        scheduler = _scheduler(storage, _Factory({"a": [_balance()]}))
        await scheduler.sync_sources()

        health = await scheduler.health()
        assert health["status"] == "healthy"
        assert len(health["sources"]) == 1

        snap = scheduler.snapshot()
        assert snap["sources"][0]["name"] == "a"
        assert snap["sources"][0]["state"] == "idle"
        assert snap["balances"]["totalWallets"] == 1

    async def test_health_without_sources(self) -> None:
        scheduler = _scheduler(MemoryStorage(), _Factory())
        assert (await scheduler.health())["status"] == "unhealthy"
