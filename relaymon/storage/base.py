"""Storage protocol consumed by the collection and alerting pipeline.

The persistent store is an external collaborator. Anything implementing this
protocol can back relaymon; :class:`relaymon.storage.memory.MemoryStorage` is
the reference implementation used by the runner and the test-suite.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

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


@runtime_checkable
class Storage(Protocol):
    """Async CRUD surface used by relaymon.

    Implementations must:
    - keep (chain_id, address, address_kind) unique for wallets
    - keep one BalanceObservation per (wallet_id, denom)
    - cascade-delete observations when a wallet is deleted
    - treat alert history as append-only (acknowledgment aside)

    Missing ids raise :class:`relaymon.storage.exceptions.NotFoundError`.
    """

    # ── Wallets & balances ──────────────────────────────────────

    async def upsert_wallet(
        self,
        chain_id: str,
        chain_name: str,
        address: str,
        address_kind: AddressKind = AddressKind.RELAYER,
    ) -> tuple[WalletRecord, bool]:
        """Return the wallet, creating it if absent. Second item is True if created."""
        ...

    async def find_wallet(
        self,
        chain_id: str,
        address: str,
        address_kind: AddressKind = AddressKind.RELAYER,
    ) -> WalletRecord | None: ...

    async def get_wallets(
        self, chain_id: str | None = None, active_only: bool = True
    ) -> list[WalletRecord]: ...

    async def set_wallet_active(self, wallet_id: int, active: bool) -> WalletRecord: ...

    async def delete_wallet(self, wallet_id: int) -> None: ...

    async def upsert_balance(
        self,
        wallet_id: int,
        denom: str,
        balance: Decimal,
        block_height: int | None = None,
    ) -> BalanceChange:
        """Overwrite the current balance and return old/new/delta."""
        ...

    async def get_balances(
        self, chain_id: str | None = None
    ) -> list[tuple[WalletRecord, BalanceObservation]]: ...

    async def append_history(self, entry: BalanceHistoryEntry) -> None: ...

    async def get_history(
        self, wallet_id: int, denom: str | None = None, limit: int = 100
    ) -> list[BalanceHistoryEntry]: ...

    # ── Decimals cache ──────────────────────────────────────────

    async def get_decimals(self, chain_id: str, denom: str) -> int | None: ...

    async def get_decimals_entry(
        self, chain_id: str, denom: str
    ) -> DecimalsCacheEntry | None: ...

    async def set_decimals(self, chain_id: str, denom: str, decimals: int) -> None: ...

    async def delete_decimals(self, chain_id: str, denom: str) -> bool: ...

    async def count_decimals(self) -> int: ...

    # ── Alerts ──────────────────────────────────────────────────

    async def append_alert(self, record: AlertRecord) -> AlertRecord:
        """Persist and return the record with its assigned id."""
        ...

    async def get_alert(self, alert_id: int) -> AlertRecord: ...

    async def get_alerts(self, limit: int = 100, offset: int = 0) -> list[AlertRecord]: ...

    async def acknowledge_alert(self, alert_id: int, user_id: int) -> AlertRecord: ...

    async def count_unacknowledged(self) -> int: ...

    async def alert_stats(self, since: float = 0.0) -> dict[str, Any]:
        """Counts of alerts created at or after ``since``.

        Keys: ``total``, ``acknowledged``, ``unacknowledged`` and the
        ``bySeverity`` / ``byType`` / ``byChain`` breakdowns.
        """
        ...

    # ── Users & notification preferences ────────────────────────

    async def get_notification_preferences(
        self, user_id: int
    ) -> NotificationPreference | None: ...

    async def set_notification_preferences(self, pref: NotificationPreference) -> None: ...

    async def list_subscribers(self) -> list[Subscriber]:
        """Active users, each with their preference (or None)."""
        ...

    # ── Config key/value ────────────────────────────────────────

    async def get_config(self, key: str, default: Any = None) -> Any: ...

    async def set_config(self, key: str, value: Any) -> None: ...

    # ── Metrics sources ─────────────────────────────────────────

    async def create_source(self, source: MetricSource) -> MetricSource: ...

    async def get_source(self, source_id: int) -> MetricSource: ...

    async def list_sources(self, active_only: bool = True) -> list[MetricSource]: ...

    async def update_source(self, source_id: int, **changes: Any) -> MetricSource: ...

    async def deactivate_source(self, source_id: int) -> MetricSource: ...
