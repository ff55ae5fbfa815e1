"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, SecretStr

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class MetricsConfig(BaseModel):
    """Metrics endpoint polling configuration."""

    endpoint: str = "http://localhost:4001/metrics"
    refresh_interval_secs: float = 30.0
    request_timeout_secs: float = 10.0
    timeout_multipliers: list[float] = [1.0, 2.0, 3.0]
    user_agent: str = "relaymon/1.0"


class RetryConfig(BaseModel):
    """Retry/backoff configuration for a collection cycle."""

    max_retries: int = 3
    base_delay_secs: float = 1.0
    multiplier: float = 2.0
    max_delay_secs: float = 300.0


class CircuitBreakerConfig(BaseModel):
    """Fast-fail after sustained collection failures."""

    failure_threshold: int = 5
    window_secs: float = 300.0


class StartupConfig(BaseModel):
    """Bounded wait for the metrics endpoint before the first collection."""

    wait_budget_secs: float = 30.0
    check_interval_secs: float = 2.0


class BatchConfig(BaseModel):
    """Chunking of per-record processing."""

    batch_size: int = 10
    inter_batch_delay_secs: float = 1.0


class DecimalsConfig(BaseModel):
    """Token decimals resolution configuration."""

    chain_rest_endpoints: dict[str, str] = {}
    directory_url: str = "https://chains.cosmos.directory"
    directory_names: dict[str, str] = {}
    lookup_timeout_secs: float = 5.0
    native_decimals: dict[str, int] = {}


class ChainsConfig(BaseModel):
    """Chain display-name overrides (chain id -> name)."""

    display_names: dict[str, str] = {}


class BalanceThresholdConfig(BaseModel):
    """System-wide low-balance cut lines, in value-equivalent units."""

    critical_below: float = 5.0
    warning_below: float = 10.0
    unit_values: dict[str, float] = {}


class PendingPacketsConfig(BaseModel):
    """System-wide pending packet thresholds."""

    warning: int = 10
    critical: int = 50


class AlertsConfig(BaseModel):
    """Alert engine configuration."""

    dedup_window_secs: float = 300.0
    history_max_age_secs: float = 86400.0
    cleanup_interval_secs: float = 3600.0
    delivery_timeout_secs: float = 10.0
    base_url: str = "http://localhost:3000"
    balance: BalanceThresholdConfig = BalanceThresholdConfig()
    pending_packets: PendingPacketsConfig = PendingPacketsConfig()


class HubConfig(BaseModel):
    """Live channel heartbeat configuration."""

    heartbeat_interval_secs: float = 30.0
    liveness_timeout_secs: float = 60.0
    send_timeout_secs: float = 5.0


class WebConfig(BaseModel):
    """HTTP route layer configuration."""

    host: str = "0.0.0.0"
    port: int = 3000


class ApiTokenConfig(BaseModel):
    """A static API token mapped to an identity."""

    token: SecretStr
    user_id: int
    username: str
    role: str = "monitoring"


class AuthConfig(BaseModel):
    """Authentication configuration."""

    tokens: list[ApiTokenConfig] = []
    credentials_key: SecretStr = SecretStr("")


class SourceConfig(BaseModel):
    """A metrics source seeded into storage at startup."""

    name: str
    url: str
    kind: str = "prometheus"
    auth_mode: str = "none"
    credentials: SecretStr = SecretStr("")
    refresh_interval_secs: float = 30.0
    timeout_secs: float = 10.0
    active: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    file_path: str = ""
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5


class Settings(BaseModel):
    """Root settings container."""

    metrics: MetricsConfig = MetricsConfig()
    retry: RetryConfig = RetryConfig()
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()
    startup: StartupConfig = StartupConfig()
    batching: BatchConfig = BatchConfig()
    decimals: DecimalsConfig = DecimalsConfig()
    chains: ChainsConfig = ChainsConfig()
    alerts: AlertsConfig = AlertsConfig()
    hub: HubConfig = HubConfig()
    web: WebConfig = WebConfig()
    auth: AuthConfig = AuthConfig()
    sources: list[SourceConfig] = []
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
