"""Tests for balance normalization — Decimal scaling, symbols, grouping, summaries."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from relaymon.collector.exceptions import FetchParseError
from relaymon.collector.normalizer import (
    BalanceNormalizer,
    ChainNames,
    display_symbol,
    group_by_chain,
    summarize,
    to_display_units,
)
from relaymon.core.types import NormalizedBalance, RawBalance


def _raw(**kw: object) -> RawBalance:
    defaults: dict[str, object] = {
        "account": "osmo1abc",
        "chain": "osmosis-1",
        "denom": "uosmo",
        "raw_value": "12261010",
        "timestamp": 100.0,
    }
    defaults.update(kw)
    return RawBalance(**defaults)  # type: ignore[arg-type]


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


def _normalizer(decimals: int = 6, names: dict[str, str] | None = None) -> BalanceNormalizer:
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=decimals)
    return BalanceNormalizer(resolver, ChainNames(names))


# ── Scaling ─────────────────────────────────────────────────────


class TestToDisplayUnits:
    def test_six_decimals(self) -> None:
        assert to_display_units("12261010", 6) == Decimal("12.26101")

    def test_eighteen_decimals_keeps_precision(self) -> None:
        value = to_display_units("103061216687315320000", 18)
        assert value == Decimal("103.06121668731532")
        assert float(value) == 103.06121668731532

    def test_zero_decimals(self) -> None:
        assert to_display_units("42", 0) == Decimal(42)

    def test_fractional_raw_value(self) -> None:
        assert to_display_units("1500.5", 3) == Decimal("1.5005")

    def test_non_numeric(self) -> None:
        with pytest.raises(FetchParseError):
            to_display_units("abc", 6)


class TestDisplaySymbol:
    def test_strips_micro_prefix(self) -> None:
        assert display_symbol("uosmo") == "OSMO"

    def test_atto_kept(self) -> None:
        assert display_symbol("aplanq") == "APLANQ"

    def test_single_u(self) -> None:
        assert display_symbol("u") == "U"


class TestChainNames:
    def test_known_chain(self) -> None:
        assert ChainNames().get("cosmoshub-4") == "Cosmos Hub"

    def test_unknown_chain_falls_back_to_id(self) -> None:
        assert ChainNames().get("mystery-9") == "mystery-9"

    def test_override(self) -> None:
        assert ChainNames({"osmosis-1": "Osmo"}).get("osmosis-1") == "Osmo"


# ── BalanceNormalizer ───────────────────────────────────────────


class TestBalanceNormalizer:
    async def test_normalize(self) -> None:
        b = await _normalizer(6).normalize(_raw())
        assert b.balance == Decimal("12.26101")
        assert b.decimals == 6
        assert b.symbol == "OSMO"
        assert b.chain_name == "Osmosis"
        assert b.raw_value == "12261010"
        assert b.timestamp == 100.0

    async def test_uses_resolved_decimals(self) -> None:
        normalizer = _normalizer(18)
        b = await normalizer.normalize(
            _raw(chain="planq_7070-2", denom="aplanq", raw_value="103061216687315320000")
        )
        assert float(b.balance) == 103.06121668731532
        normalizer._resolver.resolve.assert_awaited_once_with("planq_7070-2", "aplanq")

    async def test_wallet_entry_is_json_ready(self) -> None:
        b = await _normalizer(6).normalize(_raw())
        entry = b.to_wallet_entry()
        assert entry["balance"] == pytest.approx(12.26101)
        assert entry["rawBalance"] == "12261010"
        assert entry["address"] == "osmo1abc"


# ── Grouping & summary ──────────────────────────────────────────


class TestGrouping:
    def test_group_by_chain(self) -> None:
        balances = [
            _balance(),
            _balance(account="cosmos1x", chain="cosmoshub-4", chain_name="Cosmos Hub", denom="uatom"),
            _balance(account="osmo1def"),
        ]
        groups = group_by_chain(balances)
        assert [g["chain"] for g in groups] == ["osmosis-1", "cosmoshub-4"]
        assert len(groups[0]["wallets"]) == 2
        assert groups[1]["chainName"] == "Cosmos Hub"

    def test_summarize(self) -> None:
        balances = [
            _balance(),
            _balance(denom="uion"),
            _balance(account="cosmos1x", chain="cosmoshub-4", chain_name="Cosmos Hub", denom="uatom"),
        ]
        summary = summarize(balances)
        assert summary["totalChains"] == 2
        assert summary["totalWallets"] == 2
        assert summary["totalTokens"] == 3
        assert summary["chainSummary"]["osmosis-1"] == {
            "chainName": "Osmosis",
            "walletCount": 1,
            "tokenCount": 2,
        }

    def test_empty(self) -> None:
        assert group_by_chain([]) == []
        assert summarize([])["totalChains"] == 0
