"""Tests for per-subscriber routing gates."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from relaymon.core.types import (
    AlertDetails,
    AlertRecord,
    AlertThresholds,
    NotificationPreference,
    Severity,
)
from relaymon.monitor.routing import should_deliver


def _record(**kw: object) -> AlertRecord:
    defaults: dict[str, object] = {
        "id": 1,
        "type": "low_balance",
        "chain_name": "osmosis-1",
        "severity": Severity.CRITICAL,
        "message": "low",
        "data": AlertDetails(value_equivalent=3.0),
    }
    defaults.update(kw)
    return AlertRecord(**defaults)  # type: ignore[arg-type]


def _pref(**thresholds: object) -> NotificationPreference:
    return NotificationPreference(
        user_id=1,
        gotify_url="https://gotify.test",
        gotify_token="tok",
        enabled=True,
        thresholds=AlertThresholds(**thresholds),  # type: ignore[arg-type]
    )


class TestDeliveryConfigured:
    def test_no_preference(self) -> None:
        assert not should_deliver(_record(), None)

    def test_disabled(self) -> None:
        pref = _pref().model_copy(update={"enabled": False})
        assert not should_deliver(_record(), pref)

    def test_missing_token(self) -> None:
        pref = _pref().model_copy(update={"gotify_token": ""})
        assert not should_deliver(_record(), pref)

    def test_configured(self) -> None:
        assert should_deliver(_record(), _pref())


class TestSeverityGate:
    def test_default_minimum_is_warning(self) -> None:
        assert not should_deliver(_record(severity=Severity.INFO), _pref())
        assert should_deliver(_record(severity=Severity.WARNING), _pref())

    def test_critical_minimum(self) -> None:
        pref = _pref(min_severity="critical")
        assert not should_deliver(_record(severity=Severity.WARNING), pref)
        assert should_deliver(_record(severity=Severity.CRITICAL), pref)

    def test_info_minimum(self) -> None:
        assert should_deliver(_record(severity=Severity.INFO), _pref(min_severity="info"))


class TestFilters:
    def test_disabled_type(self) -> None:
        assert not should_deliver(_record(), _pref(disabled_types={"low_balance"}))

    def test_disabled_chain(self) -> None:
        assert not should_deliver(_record(), _pref(disabled_chains={"osmosis-1"}))

    def test_other_chain_not_blocked(self) -> None:
        assert should_deliver(_record(), _pref(disabled_chains={"juno-1"}))


class TestOverrides:
    def test_balance_override_blocks_above(self) -> None:
        assert not should_deliver(_record(), _pref(balance_threshold=2.0))

    def test_balance_override_allows_below(self) -> None:
        assert should_deliver(_record(), _pref(balance_threshold=4.0))

    def test_pending_warning_override(self) -> None:
        record = _record(
            type="moderate_pending_packets",
            severity=Severity.WARNING,
            chain_name="all",
            data=AlertDetails(count=12),
        )
        assert not should_deliver(record, _pref(pending_warning=20))
        assert should_deliver(record, _pref(pending_warning=10))

    def test_pending_critical_override(self) -> None:
        record = _record(
            type="high_pending_packets",
            chain_name="all",
            data=AlertDetails(count=60),
        )
        assert not should_deliver(record, _pref(pending_critical=100))
        assert should_deliver(record, _pref(pending_critical=50))

    def test_failed_packets_override(self) -> None:
        record = _record(type="failed_packets", data=AlertDetails(count=2))
        assert not should_deliver(record, _pref(failed_packets=5))

    def test_unset_overrides_never_block(self) -> None:
        record = _record(type="high_pending_packets", data=AlertDetails(count=1))
        assert should_deliver(record, _pref())

    def test_pending_order_validated(self) -> None:
        with pytest.raises(ValidationError):
            AlertThresholds(pending_warning=50, pending_critical=10)
