from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class TrailingStopConfig(BaseModel):
    activation_percent: float = 2.0
    trailing_percent: float = 1.5
    initial_stop_loss_percent: float = -3.0
    break_even_percent: float = 1.0
    break_even_buffer: float = 0.001

    @model_validator(mode="after")
    def validate_values(self) -> "TrailingStopConfig":
        if self.activation_percent <= 0:
            raise ValueError("trailing_stop.activation_percent must be > 0")
        if not (0 < self.trailing_percent < 100):
            raise ValueError("trailing_stop.trailing_percent must be in (0,100)")
        if self.initial_stop_loss_percent >= 0:
            raise ValueError("trailing_stop.initial_stop_loss_percent must be < 0")
        if self.break_even_percent < 0:
            raise ValueError("trailing_stop.break_even_percent must be >= 0")
        if self.break_even_buffer < 0:
            raise ValueError("trailing_stop.break_even_buffer must be >= 0")
        return self


class TakeProfitLevel(BaseModel):
    percent: float
    sell_percent: float


def _default_take_profit_levels() -> list[TakeProfitLevel]:
    return [
        TakeProfitLevel(percent=3.0, sell_percent=30.0),
        TakeProfitLevel(percent=5.0, sell_percent=30.0),
        TakeProfitLevel(percent=10.0, sell_percent=40.0),
    ]


class TakeProfitConfig(BaseModel):
    levels: list[TakeProfitLevel] = Field(default_factory=_default_take_profit_levels)

    @model_validator(mode="after")
    def validate_levels(self) -> "TakeProfitConfig":
        if not self.levels:
            raise ValueError("take_profit.levels must not be empty")
        previous = 0.0
        for level in self.levels:
            if level.percent <= previous:
                raise ValueError("take_profit.levels must be strictly ascending and > 0")
            if not (0 < level.sell_percent <= 100):
                raise ValueError("take_profit.levels[].sell_percent must be in (0,100]")
            previous = level.percent
        return self


class PositionSizingConfig(BaseModel):
    max_position_percent: float = 5.0
    min_position_percent: float = 1.0
    max_total_exposure: float = 80.0
    max_positions: int = 20

    @model_validator(mode="after")
    def validate_values(self) -> "PositionSizingConfig":
        if self.min_position_percent <= 0:
            raise ValueError("position_sizing.min_position_percent must be > 0")
        if self.max_position_percent < self.min_position_percent:
            raise ValueError("position_sizing.max_position_percent must be >= min_position_percent")
        if not (0 < self.max_total_exposure <= 100):
            raise ValueError("position_sizing.max_total_exposure must be in (0,100]")
        if self.max_positions <= 0:
            raise ValueError("position_sizing.max_positions must be > 0")
        return self


class RegimeConfig(BaseModel):
    fear_index_symbol: str = "^VIX"
    benchmark_symbol: str = "SPY"
    benchmark_lookback_days: int = 30
    venue_timezone: str = "America/New_York"
    cache_seconds: int = 300
    min_multiplier: float = 0.2
    max_multiplier: float = 2.0
    fail_safe_multiplier: float = 0.5

    @model_validator(mode="after")
    def validate_values(self) -> "RegimeConfig":
        if self.cache_seconds < 0:
            raise ValueError("regime.cache_seconds must be >= 0")
        if self.min_multiplier <= 0 or self.min_multiplier > self.max_multiplier:
            raise ValueError("regime.min_multiplier must be > 0 and <= max_multiplier")
        self.fear_index_symbol = self.fear_index_symbol.strip().upper()
        self.benchmark_symbol = self.benchmark_symbol.strip().upper()
        return self


class VolatilityConfig(BaseModel):
    lookback_days: int = 30
    atr_period: int = 14
    volume_window: int = 20
    trend_window: int = 5
    cache_seconds: int = 120
    helper_delay_seconds: float = 0.05


class ScoringConfig(BaseModel):
    strong_buy: float = 75.0
    buy: float = 60.0
    sell: float = 25.0
    strong_sell: float = 10.0

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ScoringConfig":
        if not (0 <= self.strong_sell < self.sell < self.buy < self.strong_buy <= 100):
            raise ValueError("scoring thresholds must satisfy 0 <= strong_sell < sell < buy < strong_buy <= 100")
        return self


class TimeframeConfig(BaseModel):
    short_interval: str = "1h"
    short_lookback_days: int = 7
    long_interval: str = "1d"
    long_lookback_days: int = 60
    min_bars: int = 20
    cache_seconds: int = 300


class ScreeningConfig(BaseModel):
    batch_size: int = 20
    max_workers: int = 8
    batch_delay_seconds: float = 0.5
    min_price: float = 5.0
    min_atr_percent: float = 1.5
    max_candidates: int = 50
    analysis_interval: str = "5m"
    analysis_lookback_days: int = 5
    analysis_min_bars: int = 50

    @model_validator(mode="after")
    def validate_values(self) -> "ScreeningConfig":
        if self.batch_size <= 0:
            raise ValueError("screening.batch_size must be > 0")
        if self.max_workers <= 0:
            raise ValueError("screening.max_workers must be > 0")
        if self.max_candidates <= 0:
            raise ValueError("screening.max_candidates must be > 0")
        return self


class ExecutionConfig(BaseModel):
    min_buying_power: float = 10.0
    max_trades_per_cycle: int = 3
    max_screening_passes: int = 5
    position_delay_seconds: float = 0.2
    trade_delay_seconds: float = 0.3
    sell_confidence_threshold: float = 70.0
    adopted_position_score: float = 50.0
    dry_run_buying_power: float = 10000.0

    @model_validator(mode="after")
    def validate_values(self) -> "ExecutionConfig":
        if self.max_trades_per_cycle <= 0:
            raise ValueError("execution.max_trades_per_cycle must be > 0")
        if self.max_screening_passes <= 0:
            raise ValueError("execution.max_screening_passes must be > 0")
        return self


class BrokerConfig(BaseModel):
    base_url: str = "https://openapivts.koreainvestment.com:29443"
    account_code: str = "01"
    trading_mode: str = "PAPER"
    timeout_seconds: int = 10
    rate_limit_rps: float = 2.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    token_expiry_buffer_seconds: int = 60
    token_cache_path: str = "token_cache.json"

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        mode = str(self.trading_mode).strip().upper()
        if mode not in {"REAL", "PAPER"}:
            raise ValueError("broker.trading_mode must be REAL or PAPER")
        self.trading_mode = mode
        return self


class StorageConfig(BaseModel):
    backend: str = "json"
    positions_path: str = "positions.json"

    @model_validator(mode="after")
    def validate_backend(self) -> "StorageConfig":
        backend = str(self.backend).strip().lower()
        if backend not in {"json", "sqlite"}:
            raise ValueError("storage.backend must be json or sqlite")
        self.backend = backend
        return self


class ScheduleConfig(BaseModel):
    loop_seconds: int = 60
    shutdown_time: str | None = "06:10"
    shutdown_timezone: str = "Asia/Seoul"

    @model_validator(mode="after")
    def validate_shutdown(self) -> "ScheduleConfig":
        if self.loop_seconds <= 0:
            raise ValueError("schedule.loop_seconds must be > 0")
        if self.shutdown_time is not None:
            parts = str(self.shutdown_time).strip().split(":")
            if len(parts) != 2 or not all(part.isdigit() for part in parts):
                raise ValueError("schedule.shutdown_time must look like HH:MM")
            hour, minute = int(parts[0]), int(parts[1])
            if hour > 23 or minute > 59:
                raise ValueError("schedule.shutdown_time must look like HH:MM")
            self.shutdown_time = f"{hour:02d}:{minute:02d}"
        return self


class AppConfig(BaseModel):
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    take_profit: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    position_sizing: PositionSizingConfig = Field(default_factory=PositionSizingConfig)
    regime: RegimeConfig = Field(default_factory=RegimeConfig)
    volatility: VolatilityConfig = Field(default_factory=VolatilityConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    timeframes: TimeframeConfig = Field(default_factory=TimeframeConfig)
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    universe: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_universe(self) -> "AppConfig":
        dedup: list[str] = []
        seen: set[str] = set()
        for item in self.universe:
            symbol = str(item).strip().upper()
            if not symbol or symbol in seen:
                continue
            seen.add(symbol)
            dedup.append(symbol)
        self.universe = dedup
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
