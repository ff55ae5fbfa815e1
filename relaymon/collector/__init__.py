"""Metrics collection — fetch, decimals, normalize, orchestrate."""

from relaymon.collector.circuit import CircuitBreaker
from relaymon.collector.decimals import DecimalResolver, heuristic_decimals
from relaymon.collector.exceptions import (
    CollectorError,
    FetchAuthError,
    FetchConnectionError,
    FetchError,
    FetchHTTPStatusError,
    FetchParseError,
    FetchTimeoutError,
    RetriesExhaustedError,
)
from relaymon.collector.fetcher import MetricsFetcher, ParseResult, parse_wallet_balances
from relaymon.collector.normalizer import BalanceNormalizer, ChainNames, group_by_chain, summarize
from relaymon.collector.orchestrator import (
    CollectionOrchestrator,
    CollectionResult,
    CollectorState,
)
from relaymon.collector.retry import RetryPolicy, retry_async
from relaymon.collector.scheduler import CollectionScheduler

__all__ = [
    "BalanceNormalizer",
    "ChainNames",
    "CircuitBreaker",
    "CollectionOrchestrator",
    "CollectionResult",
    "CollectionScheduler",
    "CollectorError",
    "CollectorState",
    "DecimalResolver",
    "FetchAuthError",
    "FetchConnectionError",
    "FetchError",
    "FetchHTTPStatusError",
    "FetchParseError",
    "FetchTimeoutError",
    "MetricsFetcher",
    "ParseResult",
    "RetriesExhaustedError",
    "RetryPolicy",
    "group_by_chain",
    "heuristic_decimals",
    "parse_wallet_balances",
    "retry_async",
    "summarize",
]
