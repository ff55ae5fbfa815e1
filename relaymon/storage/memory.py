"""In-memory reference implementation of the storage protocol."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import Counter
from decimal import Decimal
from typing import Any

from relaymon.core.types import (
    AddressKind,
    AlertRecord,
    BalanceChange,
    BalanceHistoryEntry,
    BalanceObservation,
    DecimalsCacheEntry,
    MetricSource,
    NotificationPreference,
    Subscriber,
    WalletRecord,
)
from relaymon.storage.exceptions import NotFoundError

_WalletKey = tuple[str, str, AddressKind]


class MemoryStorage:
    """Process-local store. Not durable; safe for concurrent asyncio tasks.

    A single lock serializes writes, standing in for the write serialization a
    relational store gives for free.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids = {
            "wallet": itertools.count(1),
            "alert": itertools.count(1),
            "source": itertools.count(1),
        }
        self._wallets: dict[int, WalletRecord] = {}
        self._wallet_index: dict[_WalletKey, int] = {}
        self._balances: dict[tuple[int, str], BalanceObservation] = {}
        self._history: list[BalanceHistoryEntry] = []
        self._decimals: dict[tuple[str, str], DecimalsCacheEntry] = {}
        self._alerts: dict[int, AlertRecord] = {}
        self._users: dict[int, Subscriber] = {}
        self._prefs: dict[int, NotificationPreference] = {}
        self._config: dict[str, Any] = {}
        self._sources: dict[int, MetricSource] = {}

    # ── Wallets & balances ──────────────────────────────────────

    async def upsert_wallet(
        self,
        chain_id: str,
        chain_name: str,
        address: str,
        address_kind: AddressKind = AddressKind.RELAYER,
    ) -> tuple[WalletRecord, bool]:
        async with self._lock:
            key = (chain_id, address, address_kind)
            existing = self._wallet_index.get(key)
            if existing is not None:
                return self._wallets[existing], False
            wallet = WalletRecord(
                id=next(self._ids["wallet"]),
                chain_id=chain_id,
                chain_name=chain_name or chain_id,
                address=address,
                address_kind=address_kind,
            )
            self._wallets[wallet.id] = wallet
            self._wallet_index[key] = wallet.id
            return wallet, True

    async def find_wallet(
        self,
        chain_id: str,
        address: str,
        address_kind: AddressKind = AddressKind.RELAYER,
    ) -> WalletRecord | None:
        wallet_id = self._wallet_index.get((chain_id, address, address_kind))
        return self._wallets.get(wallet_id) if wallet_id is not None else None

    async def get_wallets(
        self, chain_id: str | None = None, active_only: bool = True
    ) -> list[WalletRecord]:
        return [
            w
            for w in self._wallets.values()
            if (chain_id is None or w.chain_id == chain_id)
            and (w.active or not active_only)
        ]

    async def set_wallet_active(self, wallet_id: int, active: bool) -> WalletRecord:
        async with self._lock:
            wallet = self._wallets.get(wallet_id)
            if wallet is None:
                raise NotFoundError("wallet", wallet_id)
            updated = wallet.model_copy(update={"active": active})
            self._wallets[wallet_id] = updated
            return updated

    async def delete_wallet(self, wallet_id: int) -> None:
        async with self._lock:
            wallet = self._wallets.pop(wallet_id, None)
            if wallet is None:
                raise NotFoundError("wallet", wallet_id)
            self._wallet_index.pop((wallet.chain_id, wallet.address, wallet.address_kind), None)
            for key in [k for k in self._balances if k[0] == wallet_id]:
                del self._balances[key]

    async def upsert_balance(
        self,
        wallet_id: int,
        denom: str,
        balance: Decimal,
        block_height: int | None = None,
    ) -> BalanceChange:
        async with self._lock:
            if wallet_id not in self._wallets:
                raise NotFoundError("wallet", wallet_id)
            current = self._balances.get((wallet_id, denom))
            old = current.balance if current is not None else Decimal(0)
            self._balances[(wallet_id, denom)] = BalanceObservation(
                wallet_id=wallet_id,
                denom=denom,
                balance=balance,
                last_updated=time.time(),
                block_height=block_height,
            )
            return BalanceChange(old_balance=old, new_balance=balance, delta=balance - old)

    async def get_balances(
        self, chain_id: str | None = None
    ) -> list[tuple[WalletRecord, BalanceObservation]]:
        rows: list[tuple[WalletRecord, BalanceObservation]] = []
        for (wallet_id, _denom), obs in self._balances.items():
            wallet = self._wallets[wallet_id]
            if chain_id is None or wallet.chain_id == chain_id:
                rows.append((wallet, obs))
        return rows

    async def append_history(self, entry: BalanceHistoryEntry) -> None:
        async with self._lock:
            self._history.append(entry)

    async def get_history(
        self, wallet_id: int, denom: str | None = None, limit: int = 100
    ) -> list[BalanceHistoryEntry]:
        rows = [
            e
            for e in self._history
            if e.wallet_id == wallet_id and (denom is None or e.denom == denom)
        ]
        return list(reversed(rows))[:limit]

    # ── Decimals cache ──────────────────────────────────────────

    async def get_decimals(self, chain_id: str, denom: str) -> int | None:
        entry = self._decimals.get((chain_id, denom))
        return entry.decimals if entry is not None else None

    async def get_decimals_entry(
        self, chain_id: str, denom: str
    ) -> DecimalsCacheEntry | None:
        return self._decimals.get((chain_id, denom))

    async def set_decimals(self, chain_id: str, denom: str, decimals: int) -> None:
        self._decimals[(chain_id, denom)] = DecimalsCacheEntry(
            chain_id=chain_id, denom=denom, decimals=decimals
        )

    async def delete_decimals(self, chain_id: str, denom: str) -> bool:
        return self._decimals.pop((chain_id, denom), None) is not None

    async def count_decimals(self) -> int:
        return len(self._decimals)

    # ── Alerts ──────────────────────────────────────────────────

    async def append_alert(self, record: AlertRecord) -> AlertRecord:
        async with self._lock:
            stored = record.model_copy(
                update={"id": next(self._ids["alert"]), "created_at": time.time()}
            )
            self._alerts[stored.id] = stored
            return stored

    async def get_alert(self, alert_id: int) -> AlertRecord:
        record = self._alerts.get(alert_id)
        if record is None:
            raise NotFoundError("alert", alert_id)
        return record

    async def get_alerts(self, limit: int = 100, offset: int = 0) -> list[AlertRecord]:
        ordered = sorted(self._alerts.values(), key=lambda r: r.id, reverse=True)
        return ordered[offset : offset + limit]

    async def acknowledge_alert(self, alert_id: int, user_id: int) -> AlertRecord:
        async with self._lock:
            record = self._alerts.get(alert_id)
            if record is None:
                raise NotFoundError("alert", alert_id)
            if record.acknowledged:
                return record
            updated = record.model_copy(
                update={
                    "acknowledged": True,
                    "acknowledged_by": user_id,
                    "acknowledged_at": time.time(),
                }
            )
            self._alerts[alert_id] = updated
            return updated

    async def count_unacknowledged(self) -> int:
        return sum(1 for r in self._alerts.values() if not r.acknowledged)

    async def alert_stats(self, since: float = 0.0) -> dict[str, Any]:
        records = [r for r in self._alerts.values() if r.created_at >= since]
        acknowledged = sum(1 for r in records if r.acknowledged)
        return {
            "total": len(records),
            "acknowledged": acknowledged,
            "unacknowledged": len(records) - acknowledged,
            "bySeverity": dict(Counter(r.severity.label for r in records)),
            "byType": dict(Counter(r.type for r in records)),
            "byChain": dict(Counter(r.chain_name for r in records if r.chain_name)),
        }

    # ── Users & notification preferences ────────────────────────

    def add_user(self, user_id: int, username: str, active: bool = True) -> None:
        self._users[user_id] = Subscriber(user_id=user_id, username=username, active=active)

    async def get_notification_preferences(
        self, user_id: int
    ) -> NotificationPreference | None:
        return self._prefs.get(user_id)

    async def set_notification_preferences(self, pref: NotificationPreference) -> None:
        if pref.user_id not in self._users:
            raise NotFoundError("user", pref.user_id)
        self._prefs[pref.user_id] = pref

    async def list_subscribers(self) -> list[Subscriber]:
        return [
            user.model_copy(update={"preference": self._prefs.get(user.user_id)})
            for user in self._users.values()
            if user.active
        ]

    # ── Config key/value ────────────────────────────────────────

    async def get_config(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    async def set_config(self, key: str, value: Any) -> None:
        self._config[key] = value

    # ── Metrics sources ─────────────────────────────────────────

    async def create_source(self, source: MetricSource) -> MetricSource:
        async with self._lock:
            stored = source.model_copy(update={"id": next(self._ids["source"])})
            self._sources[stored.id] = stored
            return stored

    async def get_source(self, source_id: int) -> MetricSource:
        source = self._sources.get(source_id)
        if source is None:
            raise NotFoundError("source", source_id)
        return source

    async def list_sources(self, active_only: bool = True) -> list[MetricSource]:
        return [s for s in self._sources.values() if s.active or not active_only]

    async def update_source(self, source_id: int, **changes: Any) -> MetricSource:
        async with self._lock:
            source = self._sources.get(source_id)
            if source is None:
                raise NotFoundError("source", source_id)
            changes.pop("id", None)
            updated = source.model_copy(update=changes)
            self._sources[source_id] = updated
            return updated

    async def deactivate_source(self, source_id: int) -> MetricSource:
        return await self.update_source(source_id, active=False)
