"""Domain types shared across collection, alerting and the live hub.

Balances are Decimal end to end; floats only appear at the JSON boundary.
Timestamps are Unix epoch seconds (``time.time()``).
"""

from __future__ import annotations

import time
from decimal import Decimal
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


class Severity(IntEnum):
    """Alert severity — ordered so comparisons work naturally."""

    INFO = 1
    WARNING = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: object) -> Severity:
        """Accept a Severity, its int value, or a case-insensitive name."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise ValueError(f"Unknown severity: {value!r}")


class Role(StrEnum):
    """User role as reported by the auth collaborator."""

    ADMIN = "admin"
    MONITORING = "monitoring"


class SourceKind(StrEnum):
    """What a metrics source speaks."""

    RELAYER = "relayer"  # Hermes-style REST (/chains, /state)
    PROMETHEUS = "prometheus"  # line-oriented exposition text
    CUSTOM = "custom"


class AuthMode(StrEnum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


class AddressKind(StrEnum):
    RELAYER = "relayer"
    FEE = "fee"
    GAS = "gas"


class BalanceDirection(StrEnum):
    INCREASE = "increase"
    DECREASE = "decrease"


# ── Sources & wallets ──────────────────────────────────────────


class MetricSource(BaseModel):
    """A polled metrics endpoint."""

    id: int = 0
    name: str
    url: str
    kind: SourceKind = SourceKind.PROMETHEUS
    auth_mode: AuthMode = AuthMode.NONE
    encrypted_credentials: str = ""
    refresh_interval_secs: float = 30.0
    timeout_secs: float = 10.0
    active: bool = True


class WalletRecord(BaseModel):
    """A tracked wallet address. Unique on (chain_id, address, address_kind)."""

    id: int = 0
    chain_id: str
    chain_name: str = ""
    address: str
    address_kind: AddressKind = AddressKind.RELAYER
    active: bool = True
    created_at: float = Field(default_factory=time.time)


class BalanceObservation(BaseModel):
    """Current balance of one denom in one wallet."""

    wallet_id: int
    denom: str
    balance: Decimal
    last_updated: float = Field(default_factory=time.time)
    block_height: int | None = None


class BalanceChange(BaseModel):
    """Result of an upsert-balance call."""

    old_balance: Decimal
    new_balance: Decimal
    delta: Decimal


class BalanceHistoryEntry(BaseModel):
    """Append-only audit row for a material balance change."""

    wallet_id: int
    denom: str
    old_balance: Decimal
    new_balance: Decimal
    delta: Decimal
    direction: BalanceDirection
    timestamp: float = Field(default_factory=time.time)


class DecimalsCacheEntry(BaseModel):
    chain_id: str
    denom: str
    decimals: int
    updated_at: float = Field(default_factory=time.time)


# ── Parsed / normalized balances ───────────────────────────────


class RawBalance(BaseModel):
    """One ``wallet_balance`` line from the metrics exposition text."""

    account: str
    chain: str
    denom: str
    scope: str = ""
    raw_value: str
    timestamp: float = Field(default_factory=time.time)


class NormalizedBalance(BaseModel):
    """A raw balance converted to display units."""

    account: str
    chain: str
    chain_name: str
    denom: str
    symbol: str
    raw_value: str
    balance: Decimal
    decimals: int
    timestamp: float
    scope: str = ""

    def to_wallet_entry(self) -> dict[str, Any]:
        return {
            "address": self.account,
            "denom": self.denom,
            "symbol": self.symbol,
            "rawBalance": self.raw_value,
            "balance": float(self.balance),
            "decimals": self.decimals,
            "timestamp": self.timestamp,
        }


# ── Alerts ─────────────────────────────────────────────────────


class AlertDetails(BaseModel):
    """Structured alert payload. Unknown keys are kept as extras."""

    model_config = ConfigDict(extra="allow")

    source: str | None = None
    url: str | None = None
    error: str | None = None
    count: int | None = None
    threshold: float | None = None
    client_id: str | None = None
    src_chain_id: str | None = None
    dst_chain_id: str | None = None
    address: str | None = None
    denom: str | None = None
    balance: float | None = None
    value_equivalent: float | None = None
    wallet_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AlertCondition(BaseModel):
    """A detected condition, before persistence and dedup."""

    type: str
    severity: Severity
    message: str
    chain: str | None = None
    discriminator: str | None = None
    details: AlertDetails = Field(default_factory=AlertDetails)

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> Severity:
        return Severity.parse(v)


class AlertRecord(BaseModel):
    """Persisted alert. Only the acknowledgment fields ever change."""

    id: int = 0
    type: str
    chain_name: str | None = None
    severity: Severity
    message: str
    data: AlertDetails = Field(default_factory=AlertDetails)
    discriminator: str | None = None
    acknowledged: bool = False
    acknowledged_by: int | None = None
    acknowledged_at: float | None = None
    created_at: float = Field(default_factory=time.time)

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> Severity:
        return Severity.parse(v)

    @field_serializer("severity")
    def _dump_severity(self, v: Severity) -> str:
        return v.label

    @classmethod
    def from_condition(cls, condition: AlertCondition) -> AlertRecord:
        return cls(
            type=condition.type,
            chain_name=condition.chain,
            severity=condition.severity,
            message=condition.message,
            data=condition.details,
            discriminator=condition.discriminator,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "chain": self.chain_name,
            "severity": self.severity.label,
            "message": self.message,
            "data": self.data.to_dict(),
            "acknowledged": self.acknowledged,
            "acknowledgedBy": self.acknowledged_by,
            "acknowledgedAt": self.acknowledged_at,
            "createdAt": self.created_at,
        }


class AlertThresholds(BaseModel):
    """Per-subscriber routing preferences. Unset overrides never block delivery."""

    pending_warning: int | None = None
    pending_critical: int | None = None
    failed_packets: int | None = None
    balance_threshold: float | None = None
    min_severity: Severity = Severity.WARNING
    disabled_types: set[str] = Field(default_factory=set)
    disabled_chains: set[str] = Field(default_factory=set)

    @field_validator("min_severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: object) -> Severity:
        return Severity.parse(v)

    @model_validator(mode="after")
    def _check_pending_order(self) -> AlertThresholds:
        if (
            self.pending_warning is not None
            and self.pending_critical is not None
            and self.pending_warning >= self.pending_critical
        ):
            raise ValueError("pending_warning must be below pending_critical")
        return self


class NotificationPreference(BaseModel):
    user_id: int
    gotify_url: str = ""
    gotify_token: str = ""
    enabled: bool = False
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class Subscriber(BaseModel):
    """An active user together with their notification preference, if any."""

    user_id: int
    username: str
    active: bool = True
    preference: NotificationPreference | None = None


class Identity(BaseModel):
    """Authenticated caller as returned by the auth collaborator."""

    user_id: int
    username: str
    role: Role = Role.MONITORING

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
