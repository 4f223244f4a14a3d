from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from tradewatch.clock import KILL_ZONES


class ConfigValidationError(ValueError):
    """Rejected configuration update; the previous configuration stays active."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> "ConfigValidationError":
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}".lstrip(": ")
            for err in exc.errors()
        )
        return cls(details or str(exc), errors=[dict(err) for err in exc.errors()])


class PriceFeedConfig(BaseModel):
    provider: str = "yahoo"
    base_url: str = "https://query1.finance.yahoo.com"
    static_file: str = "data/quotes.json"
    poll_seconds: int = 30
    timeout_seconds: int = 10
    rate_limit_rps: float = 4.0
    rate_limit_burst: int = 8
    request_max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    max_quote_age_minutes: int = 7 * 24 * 60
    max_quote_age_minutes_crypto: int = 10
    realtime_max_age_seconds: int = 120
    symbol_map: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_values(self) -> "PriceFeedConfig":
        self.provider = str(self.provider or "yahoo").strip().lower()
        if self.provider not in {"yahoo", "static"}:
            raise ValueError("price_feed.provider must be one of: yahoo, static")
        if self.poll_seconds <= 0:
            raise ValueError("price_feed.poll_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("price_feed.timeout_seconds must be > 0")
        if self.max_quote_age_minutes <= 0 or self.max_quote_age_minutes_crypto <= 0:
            raise ValueError("price_feed max quote ages must be > 0")
        self.symbol_map = {
            str(key).strip().upper(): str(value).strip()
            for key, value in self.symbol_map.items()
            if str(key).strip() and str(value).strip()
        }
        return self


class RiskPolicyConfig(BaseModel):
    management_mode: str = "single_target"
    breakeven_progress: float = 0.5
    trailing_progress: float = 0.75
    trailing_distance_ratio: float = 0.25
    tp1_close_pct: float = 33.0
    tp2_close_pct: float = 33.0
    profit_lock_pips: float = 5.0
    pending_expiry_hours: float = 4.0
    max_hold_hours: float = 48.0

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskPolicyConfig":
        self.management_mode = str(self.management_mode or "single_target").strip().lower()
        if self.management_mode not in {"single_target", "scale_out"}:
            raise ValueError("risk.management_mode must be one of: single_target, scale_out")
        if not (0.0 < self.breakeven_progress <= 1.0):
            raise ValueError("risk.breakeven_progress must be in (0,1]")
        if not (self.breakeven_progress <= self.trailing_progress <= 1.0):
            raise ValueError("risk.trailing_progress must be in [breakeven_progress,1]")
        if not (0.0 < self.trailing_distance_ratio < 1.0):
            raise ValueError("risk.trailing_distance_ratio must be in (0,1)")
        if self.tp1_close_pct < 0 or self.tp2_close_pct < 0:
            raise ValueError("risk close percentages must be >= 0")
        if self.tp1_close_pct + self.tp2_close_pct > 100.0:
            raise ValueError("risk.tp1_close_pct + risk.tp2_close_pct must be <= 100")
        if self.profit_lock_pips < 0:
            raise ValueError("risk.profit_lock_pips must be >= 0")
        if self.pending_expiry_hours < 0 or self.max_hold_hours < 0:
            raise ValueError("risk expiry windows must be >= 0 (0 disables)")
        return self


class StrategySettings(BaseModel):
    analysis_mode: str = "hybrid"
    min_confluence_score: int = 6
    kill_zone_only: bool = True
    kill_zones: list[str] = Field(default_factory=lambda: ["london_open", "ny_open"])
    enabled_forex: bool = True
    enabled_futures: bool = True
    enabled_crypto: bool = True
    auto_run_interval_minutes: float = 15.0

    @model_validator(mode="after")
    def validate_values(self) -> "StrategySettings":
        self.analysis_mode = str(self.analysis_mode or "hybrid").strip().lower()
        if self.analysis_mode not in {"hybrid", "smc", "price_action"}:
            raise ValueError("analysis_mode must be one of: hybrid, smc, price_action")
        if not (1 <= self.min_confluence_score <= 10):
            raise ValueError("min_confluence_score must be in [1,10]")
        if self.auto_run_interval_minutes <= 0:
            raise ValueError("auto_run_interval_minutes must be > 0")
        zones: list[str] = []
        for item in self.kill_zones:
            key = str(item).strip().lower()
            if key and key not in KILL_ZONES:
                raise ValueError(f"unknown kill zone '{key}' (expected one of: {', '.join(KILL_ZONES)})")
            if key and key not in zones:
                zones.append(key)
        self.kill_zones = zones
        if self.kill_zone_only and not self.kill_zones:
            raise ValueError("kill_zones must not be empty when kill_zone_only is enabled")
        if not (self.enabled_forex or self.enabled_futures or self.enabled_crypto):
            raise ValueError("at least one instrument class must be enabled")
        return self


class BotDefaultsConfig(BaseModel):
    bot_type: str = "institutional_signal_bot"
    auto_start: bool = False
    auto_broadcast: bool = True
    send_to_users_enabled: bool = True
    send_to_agents_enabled: bool = False
    broadcast_min_confluence: int = 8
    strategy: StrategySettings = Field(default_factory=StrategySettings)


class SignalSourceConfig(BaseModel):
    provider: str = "file"
    inbox_file: str = "data/signals_inbox.json"
    http_url: str | None = None
    http_timeout_seconds: int = 10

    @model_validator(mode="after")
    def validate_values(self) -> "SignalSourceConfig":
        self.provider = str(self.provider or "file").strip().lower()
        if self.provider not in {"file", "http", "none"}:
            raise ValueError("signal_source.provider must be one of: file, http, none")
        return self


class MonitoringConfig(BaseModel):
    alerts_enabled: bool = True
    alert_cooldown_seconds: int = 30
    dashboard_path: str = "runtime/dashboard.json"
    heartbeat_seconds: int = 300


class StorageConfig(BaseModel):
    sqlite_path: str = "tradewatch.db"


class AppConfig(BaseModel):
    timezone: str = "UTC"
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    risk: RiskPolicyConfig = Field(default_factory=RiskPolicyConfig)
    bot: BotDefaultsConfig = Field(default_factory=BotDefaultsConfig)
    signal_source: SignalSourceConfig = Field(default_factory=SignalSourceConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def merge_strategy_settings(current: StrategySettings, partial: dict[str, Any]) -> StrategySettings:
    unknown = sorted(set(partial) - set(StrategySettings.model_fields))
    if unknown:
        raise ConfigValidationError(f"Unknown strategy settings: {', '.join(unknown)}")
    merged = {**current.model_dump(), **partial}
    try:
        return StrategySettings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigValidationError.from_validation_error(exc) from exc


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
