"""Tests for relaymon/core/config.py — YAML loading, defaults, SecretStr."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from relaymon.core.config import (
    AlertsConfig,
    ApiTokenConfig,
    LoggingConfig,
    MetricsConfig,
    RetryConfig,
    Settings,
    SourceConfig,
    get_settings,
    load_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def _clean_settings() -> None:
    """Reset the global settings cache before each test."""
    reset_settings()


class TestDefaults:
    """Settings should have sensible defaults when no YAML is provided."""

    def test_default_metrics_config(self) -> None:
        cfg = MetricsConfig()
        assert cfg.endpoint == "http://localhost:4001/metrics"
        assert cfg.request_timeout_secs == 10.0
        assert cfg.timeout_multipliers == [1.0, 2.0, 3.0]

    def test_default_retry_config(self) -> None:
        cfg = RetryConfig()
        assert cfg.max_retries == 3
        assert cfg.base_delay_secs == 1.0
        assert cfg.max_delay_secs == 300.0

    def test_default_alerts_config(self) -> None:
        cfg = AlertsConfig()
        assert cfg.dedup_window_secs == 300.0
        assert cfg.balance.critical_below == 5.0
        assert cfg.balance.warning_below == 10.0
        assert cfg.pending_packets.critical == 50

    def test_default_logging_config(self) -> None:
        cfg = LoggingConfig()
        assert cfg.level == "INFO"
        assert cfg.format == "json"

    def test_default_settings(self) -> None:
        s = Settings()
        assert s.circuit_breaker.failure_threshold == 5
        assert s.batching.batch_size == 10
        assert s.hub.heartbeat_interval_secs == 30.0
        assert s.web.port == 3000
        assert s.auth.tokens == []
        assert s.sources == []


class TestYamlLoading:
    """Settings should load correctly from YAML files."""

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "metrics": {"endpoint": "http://hermes:3001/metrics", "timeout_multipliers": [1, 2]},
            "alerts": {"balance": {"critical_below": 1, "unit_values": {"uatom": 8.5}}},
            "auth": {
                "tokens": [{"token": "s3cret", "user_id": 1, "username": "root", "role": "admin"}],
                "credentials_key": "fernet-key",
            },
            "sources": [{"name": "hermes", "url": "http://hermes:3001", "kind": "relayer"}],
            "logging": {"level": "DEBUG", "format": "console"},
        }
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)

        assert settings.metrics.endpoint == "http://hermes:3001/metrics"
        assert settings.metrics.timeout_multipliers == [1.0, 2.0]
        assert settings.alerts.balance.critical_below == 1.0
        assert settings.alerts.balance.unit_values == {"uatom": 8.5}
        assert settings.auth.tokens[0].token.get_secret_value() == "s3cret"
        assert settings.auth.credentials_key.get_secret_value() == "fernet-key"
        assert settings.sources[0].kind == "relayer"
        assert settings.logging.level == "DEBUG"

    def test_load_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.retry.max_retries == 3

    def test_load_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        settings = load_settings(config_file)
        assert settings.web.port == 3000

    def test_partial_yaml_merges_with_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"retry": {"max_retries": 7}}))

        settings = load_settings(config_file)
        assert settings.retry.max_retries == 7
        # Other defaults still intact
        assert settings.retry.multiplier == 2.0
        assert settings.alerts.dedup_window_secs == 300.0

    def test_get_settings_caches(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"web": {"port": 8080}}))
        loaded = load_settings(config_file)
        assert get_settings() is loaded

        reset_settings()
        config_file.write_text(yaml.dump({"web": {"port": 9090}}))
        assert load_settings(config_file).web.port == 9090


class TestSecretStr:
    """Tokens and credentials should use SecretStr to prevent leaking."""

    def test_api_token_repr_does_not_leak(self) -> None:
        cfg = ApiTokenConfig(token="super-secret", user_id=1, username="root")  # type: ignore[arg-type]
        repr_str = repr(cfg)
        assert "super-secret" not in repr_str
        assert "**********" in repr_str

    def test_source_credentials_hidden(self) -> None:
        cfg = SourceConfig(
            name="hermes",
            url="http://hermes:3001",
            credentials='{"token": "abc"}',  # type: ignore[arg-type]
        )
        assert "abc" not in repr(cfg)
        assert cfg.credentials.get_secret_value() == '{"token": "abc"}'
