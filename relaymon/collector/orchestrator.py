"""Collection orchestrator — one single-flight polling pipeline per metrics source.

Each cycle: fetch (with retries) → parse → normalize → persist → alert → push.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from relaymon.collector.circuit import CircuitBreaker
from relaymon.collector.credentials import SourceAuth, decode_credentials
from relaymon.collector.exceptions import RetriesExhaustedError
from relaymon.collector.fetcher import MetricsFetcher, ParseResult, parse_wallet_balances
from relaymon.collector.normalizer import BalanceNormalizer, group_by_chain, summarize
from relaymon.collector.relayer import (
    RelayerAnalysis,
    RelayerSnapshot,
    analyze_relayer,
    fetch_relayer_snapshot,
)
from relaymon.collector.retry import RetryPolicy, retry_async
from relaymon.core.config import Settings, get_settings
from relaymon.core.types import (
    AlertRecord,
    BalanceDirection,
    BalanceHistoryEntry,
    MetricSource,
    NormalizedBalance,
    RawBalance,
    SourceKind,
)
from relaymon.monitor.conditions import (
    low_balance_condition,
    source_connectivity_condition,
    value_equivalent,
)
from relaymon.hub.messages import Channel, ServerEvent
from relaymon.storage.base import Storage

if TYPE_CHECKING:
    from relaymon.hub.broadcast import BroadcastHub
    from relaymon.monitor.engine import AlertEngine

logger = structlog.stdlib.get_logger()

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]

# Balance moves at or below this size are not recorded as history.
HISTORY_EPSILON = 1e-6


class CollectorState(StrEnum):
    IDLE = "idle"
    COLLECTING = "collecting"
    BACKOFF = "backoff"


@dataclass
class CollectionFailure:
    """One record that could not be processed in a cycle."""

    item: str
    stage: str
    error: str


@dataclass
class CollectionResult:
    """Outcome of one ``collect()`` call."""

    source: str
    balances: list[NormalizedBalance] = field(default_factory=list)
    failures: list[CollectionFailure] = field(default_factory=list)
    wallets_created: int = 0
    alerts: list[AlertRecord] = field(default_factory=list)
    malformed: int = 0
    skipped: bool = False
    from_cache: bool = False
    error: str | None = None
    analysis: RelayerAnalysis | None = None


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


class CollectionOrchestrator:
    """Runs collection cycles for a single :class:`MetricSource`.

    - Single-flight: a ``collect()`` while a cycle is in flight returns an
      empty, ``skipped`` result without touching the network.
    - The fetch stage is retried with capped exponential backoff.
    - The circuit breaker short-circuits to the last good balances.
    - Records are processed in fixed-size batches; a failing record never
      aborts its batch.
    """

    def __init__(
        self,
        source: MetricSource,
        fetcher: MetricsFetcher,
        normalizer: BalanceNormalizer,
        storage: Storage,
        engine: AlertEngine | None = None,
        hub: BroadcastHub | None = None,
        settings: Settings | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._source = source
        self._fetcher = fetcher
        self._normalizer = normalizer
        self._storage = storage
        self._engine = engine
        self._hub = hub
        self._clock = clock
        self._sleep = sleep
        self._breaker = breaker or CircuitBreaker(
            self._settings.circuit_breaker, clock=clock, name=source.name
        )
        self._policy = retry_policy or RetryPolicy.from_config(self._settings.retry)
        self._state = CollectorState.IDLE
        self._error_count = 0
        self._last_success: float | None = None
        self._last_balances: list[NormalizedBalance] = []
        self._last_analysis: RelayerAnalysis | None = None
        self._started_at = clock()

    # ── Properties ──────────────────────────────────────────────

    @property
    def source(self) -> MetricSource:
        return self._source

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def last_balances(self) -> list[NormalizedBalance]:
        return list(self._last_balances)

    @property
    def last_analysis(self) -> RelayerAnalysis | None:
        return self._last_analysis

    def update_source(self, source: MetricSource) -> None:
        self._source = source

    # ── Startup gating ──────────────────────────────────────────

    async def wait_until_reachable(
        self,
        budget_secs: float | None = None,
        interval_secs: float | None = None,
    ) -> bool:
        """Probe the source until it answers or the budget is spent.

        Returns whether it became reachable; callers proceed either way.
        """
        budget = budget_secs if budget_secs is not None else self._settings.startup.wait_budget_secs
        interval = interval_secs if interval_secs is not None else self._settings.startup.check_interval_secs
        checks = max(1, int(budget // interval) + 1) if interval > 0 else 1

        for attempt in range(1, checks + 1):
            if await self._fetcher.is_reachable(self._source.url):
                logger.info("source_reachable", source=self._source.name, attempt=attempt)
                return True
            if attempt < checks:
                await self._sleep(interval)

        logger.warning(
            "source_unreachable_at_startup",
            source=self._source.name,
            url=self._source.url,
            budget_secs=budget,
        )
        return False

    # ── Collection cycle ────────────────────────────────────────

    async def collect(self) -> CollectionResult:
        """Run one collection cycle."""
        name = self._source.name
        if self._state != CollectorState.IDLE:
            logger.debug("collection_in_flight", source=name, state=self._state)
            return CollectionResult(source=name, skipped=True)

        if self._breaker.is_open:
            logger.warning(
                "circuit_breaker_open_serving_cache",
                source=name,
                cached=len(self._last_balances),
            )
            return CollectionResult(source=name, balances=self.last_balances, from_cache=True)

        self._state = CollectorState.COLLECTING
        started = self._clock()
        try:
            auth = decode_credentials(
                self._source, self._settings.auth.credentials_key.get_secret_value()
            )
            try:
                payload = await retry_async(
                    lambda: self._fetch(auth),
                    self._policy,
                    operation=f"collect:{name}",
                    sleep=self._sleep,
                    on_retry=self._on_retry,
                )
            except RetriesExhaustedError as exc:
                return await self._fail(exc)

            if isinstance(payload, RelayerSnapshot):
                result = await self._process_relayer(payload)
            else:
                result = await self._process_balances(payload)

            self._error_count = 0
            self._last_success = self._clock()
            self._breaker.record_success()
            logger.info(
                "collection_complete",
                source=name,
                balances=len(result.balances),
                failures=len(result.failures),
                wallets_created=result.wallets_created,
                duration_secs=round(self._clock() - started, 3),
            )
            return result
        finally:
            self._state = CollectorState.IDLE

    def _on_retry(self, attempt: int, exc: BaseException, delay: float) -> None:
        self._state = CollectorState.BACKOFF
        logger.info(
            "collection_backoff",
            source=self._source.name,
            attempt=attempt,
            delay_secs=delay,
            error=str(exc),
        )

    async def _fetch(self, auth: SourceAuth | None) -> ParseResult | RelayerSnapshot:
        self._state = CollectorState.COLLECTING
        if self._source.kind == SourceKind.RELAYER:
            return await fetch_relayer_snapshot(self._fetcher, self._source, auth)
        text = await self._fetcher.fetch_raw(self._source.url, auth, self._source.timeout_secs)
        return parse_wallet_balances(text, timestamp=self._clock())

    async def _fail(self, exc: RetriesExhaustedError) -> CollectionResult:
        self._error_count += 1
        self._breaker.record_failure()
        reason = exc.last_error or exc
        logger.error(
            "collection_failed",
            source=self._source.name,
            attempts=exc.attempts,
            error_count=self._error_count,
            error=str(reason),
        )

        result = CollectionResult(source=self._source.name, error=str(reason))
        if self._engine is not None:
            record = await self._engine.process(source_connectivity_condition(self._source, reason))
            if record is not None:
                result.alerts.append(record)
        await self._push(
            ServerEvent.SOURCE_ERROR,
            {
                "source": {"id": self._source.id, "name": self._source.name},
                "error": str(reason),
                "timestamp": self._clock(),
            },
            [Channel.METRICS, Channel.SYSTEM_STATUS],
        )
        return result

    # ── Wallet balances ─────────────────────────────────────────

    async def _process_balances(self, parsed: ParseResult) -> CollectionResult:
        result = CollectionResult(source=self._source.name, malformed=parsed.malformed)
        batching = self._settings.batching
        batches = chunked(parsed.balances, batching.batch_size)

        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self._process_one(raw, result) for raw in batch),
                return_exceptions=True,
            )
            for raw, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "balance_processing_failed",
                        source=self._source.name,
                        account=raw.account,
                        chain=raw.chain,
                        denom=raw.denom,
                        error=str(outcome),
                    )
                    result.failures.append(CollectionFailure(
                        item=f"{raw.chain}/{raw.account}/{raw.denom}",
                        stage="process",
                        error=str(outcome),
                    ))
                elif outcome is not None:
                    result.balances.append(outcome)
            if index < len(batches) - 1 and batching.inter_batch_delay_secs > 0:
                await self._sleep(batching.inter_batch_delay_secs)

        if result.balances:
            self._last_balances = list(result.balances)
            await self._push(
                ServerEvent.WALLET_BALANCES_UPDATE,
                {
                    "timestamp": self._clock(),
                    "chains": group_by_chain(result.balances),
                    "totalWallets": len(result.balances),
                    "summary": summarize(result.balances),
                },
                [Channel.WALLETS],
            )
        return result

    async def _process_one(self, raw: RawBalance, result: CollectionResult) -> NormalizedBalance:
        normalized = await self._normalizer.normalize(raw)
        try:
            wallet_id = await self._persist(normalized, result)
        except Exception as exc:
            logger.warning(
                "balance_persist_failed",
                source=self._source.name,
                account=raw.account,
                chain=raw.chain,
                error=str(exc),
            )
            result.failures.append(CollectionFailure(
                item=f"{raw.chain}/{raw.account}/{raw.denom}",
                stage="persist",
                error=str(exc),
            ))
            wallet_id = None
        try:
            await self._check_low_balance(normalized, wallet_id, result)
        except Exception as exc:
            logger.warning(
                "balance_alert_failed",
                source=self._source.name,
                account=raw.account,
                chain=raw.chain,
                error=str(exc),
            )
            result.failures.append(CollectionFailure(
                item=f"{raw.chain}/{raw.account}/{raw.denom}",
                stage="alert",
                error=str(exc),
            ))
        return normalized

    async def _persist(self, b: NormalizedBalance, result: CollectionResult) -> int:
        wallet, created = await self._storage.upsert_wallet(b.chain, b.chain_name, b.account)
        if created:
            result.wallets_created += 1
            logger.info("wallet_created", chain=b.chain, address=b.account, wallet_id=wallet.id)

        change = await self._storage.upsert_balance(wallet.id, b.denom, b.balance)
        if abs(change.delta) > HISTORY_EPSILON:
            await self._storage.append_history(BalanceHistoryEntry(
                wallet_id=wallet.id,
                denom=b.denom,
                old_balance=change.old_balance,
                new_balance=change.new_balance,
                delta=change.delta,
                direction=(
                    BalanceDirection.INCREASE if change.delta > 0 else BalanceDirection.DECREASE
                ),
                timestamp=self._clock(),
            ))
            await self._push(
                ServerEvent.BALANCE_UPDATE,
                {
                    "walletId": wallet.id,
                    "chain": b.chain,
                    "chainName": b.chain_name,
                    "address": b.account,
                    "denom": b.denom,
                    "symbol": b.symbol,
                    "oldBalance": float(change.old_balance),
                    "newBalance": float(change.new_balance),
                    "change": float(change.delta),
                    "timestamp": self._clock(),
                },
                [Channel.WALLETS],
            )
        return wallet.id

    async def _check_low_balance(
        self, b: NormalizedBalance, wallet_id: int | None, result: CollectionResult
    ) -> None:
        if self._engine is None:
            return
        cfg = self._settings.alerts.balance
        value = value_equivalent(b, cfg.unit_values)
        condition = low_balance_condition(
            b, value, cfg.critical_below, cfg.warning_below, wallet_id=wallet_id
        )
        if condition is None:
            return
        record = await self._engine.process(condition)
        if record is None:
            return
        result.alerts.append(record)
        await self._push(
            ServerEvent.WALLET_ALERT,
            {
                "alert": record.to_dict(),
                "wallet": b.to_wallet_entry(),
                "chain": b.chain,
                "chainName": b.chain_name,
            },
            [Channel.WALLETS, Channel.ALERTS],
        )

    # ── Relayer state ───────────────────────────────────────────

    async def _process_relayer(self, snapshot: RelayerSnapshot) -> CollectionResult:
        analysis = analyze_relayer(
            self._source,
            snapshot,
            self._normalizer.chain_names,
            self._settings.alerts.pending_packets,
        )
        self._last_analysis = analysis
        result = CollectionResult(source=self._source.name, analysis=analysis)
        source_info = {"id": self._source.id, "name": self._source.name, "kind": self._source.kind}

        await self._push(
            ServerEvent.METRICS_UPDATE,
            {
                "source": source_info,
                "timestamp": analysis.timestamp,
                "analysis": analysis.to_dict(),
                "raw": {
                    "chainsCount": len(analysis.chains),
                    "workersCount": analysis.total_workers,
                },
            },
            [Channel.METRICS, Channel.CHAIN_UPDATES],
        )
        if analysis.workers:
            await self._push(
                ServerEvent.WORKER_UPDATE,
                {"source": source_info, "workers": analysis.workers},
                [Channel.WORKER_UPDATES],
            )

        if analysis.conditions:
            await self._push(
                ServerEvent.ALERTS_UPDATE,
                {
                    "source": self._source.name,
                    "alerts": [c.model_dump(mode="json") for c in analysis.conditions],
                    "timestamp": analysis.timestamp,
                },
                [Channel.ALERTS],
            )
            if self._engine is not None:
                for condition in analysis.conditions:
                    try:
                        record = await self._engine.process(condition)
                    except Exception:
                        logger.exception(
                            "relayer_alert_failed", source=self._source.name, alert_type=condition.type
                        )
                        continue
                    if record is not None:
                        result.alerts.append(record)
        return result

    # ── Health ──────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        now = self._clock()
        healthy = (
            self._error_count < 3
            and self._last_success is not None
            and (now - self._last_success) < self._source.refresh_interval_secs * 2
        )
        try:
            cache_size = await self._storage.count_decimals()
        except Exception as exc:
            logger.debug("decimals_cache_count_failed", error=str(exc))
            cache_size = 0
        return {
            "status": "healthy" if healthy else "unhealthy",
            "source": self._source.name,
            "lastSuccessfulFetch": self._last_success,
            "errorCount": self._error_count,
            "cacheSize": cache_size,
            "circuitBreakerOpen": self._breaker.is_open,
            "uptime": now - self._started_at,
            "state": self._state.value,
        }

    # ── Push helper ─────────────────────────────────────────────

    async def _push(self, event: str, data: dict[str, Any], channels: list[str]) -> None:
        if self._hub is None:
            return
        try:
            await self._hub.broadcast(event, data, channels=channels)
        except Exception:
            logger.exception("collector_broadcast_error", source=self._source.name, event_name=event)
