"""Balance normalizer — raw integer amounts to display units, grouping, summaries."""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from relaymon.collector.decimals import DecimalResolver
from relaymon.collector.exceptions import FetchParseError
from relaymon.core.config import get_settings
from relaymon.core.types import NormalizedBalance, RawBalance

CHAIN_DISPLAY_NAMES: dict[str, str] = {
    "osmosis-1": "Osmosis",
    "planq_7070-2": "Planq",
    "gitopia": "Gitopia",
    "atomone-1": "AtomOne",
    "vota-ash": "Dora Vota",
    "cosmoshub-4": "Cosmos Hub",
    "juno-1": "Juno",
    "stargaze-1": "Stargaze",
    "akashnet-2": "Akash",
}


def to_display_units(raw_value: str, decimals: int) -> Decimal:
    """``raw / 10**decimals`` in Decimal arithmetic.

    >>> to_display_units("12261010", 6)
    Decimal('12.261010')
    """
    try:
        raw = Decimal(raw_value)
    except InvalidOperation as exc:
        raise FetchParseError(f"Not a numeric balance: {raw_value!r}") from exc
    return raw.scaleb(-decimals)


def display_symbol(denom: str) -> str:
    """Strip one leading micro marker ``u`` and upper-case. Display only."""
    if len(denom) > 1 and denom.startswith("u"):
        denom = denom[1:]
    return denom.upper()


class ChainNames:
    """Chain id → display name, with configured overrides."""

    def __init__(self, overrides: dict[str, str] | None = None) -> None:
        self._names = {**CHAIN_DISPLAY_NAMES, **(overrides or {})}

    def get(self, chain_id: str) -> str:
        return self._names.get(chain_id, chain_id)


class BalanceNormalizer:
    """Converts :class:`RawBalance` samples into :class:`NormalizedBalance`."""

    def __init__(self, resolver: DecimalResolver, chain_names: ChainNames | None = None) -> None:
        self._resolver = resolver
        self._chain_names = chain_names or ChainNames(get_settings().chains.display_names)

    @property
    def chain_names(self) -> ChainNames:
        return self._chain_names

    async def normalize(self, raw: RawBalance) -> NormalizedBalance:
        decimals = await self._resolver.resolve(raw.chain, raw.denom)
        return NormalizedBalance(
            account=raw.account,
            chain=raw.chain,
            chain_name=self._chain_names.get(raw.chain),
            denom=raw.denom,
            symbol=display_symbol(raw.denom),
            raw_value=raw.raw_value,
            balance=to_display_units(raw.raw_value, decimals),
            decimals=decimals,
            timestamp=raw.timestamp,
            scope=raw.scope,
        )


def group_by_chain(balances: Iterable[NormalizedBalance]) -> list[dict[str, Any]]:
    """Group balances per chain, preserving first-seen chain order."""
    groups: dict[str, dict[str, Any]] = {}
    for b in balances:
        group = groups.setdefault(
            b.chain, {"chain": b.chain, "chainName": b.chain_name, "wallets": []}
        )
        group["wallets"].append(b.to_wallet_entry())
    return list(groups.values())


def summarize(balances: Iterable[NormalizedBalance]) -> dict[str, Any]:
    items = list(balances)
    per_chain: dict[str, dict[str, Any]] = {}
    for b in items:
        entry = per_chain.setdefault(
            b.chain, {"chainName": b.chain_name, "wallets": set(), "tokens": set()}
        )
        entry["wallets"].add(b.account)
        entry["tokens"].add(b.denom)

    return {
        "totalChains": len({b.chain for b in items}),
        "totalWallets": len({b.account for b in items}),
        "totalTokens": len({b.denom for b in items}),
        "chainSummary": {
            chain: {
                "chainName": e["chainName"],
                "walletCount": len(e["wallets"]),
                "tokenCount": len(e["tokens"]),
            }
            for chain, e in per_chain.items()
        },
    }
