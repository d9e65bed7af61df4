from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agent.config import AppConfig, ScheduleConfig, ScoringConfig, TakeProfitConfig, load_config


def test_defaults() -> None:
    config = AppConfig()

    assert config.trailing_stop.activation_percent == 2.0
    assert config.trailing_stop.trailing_percent == 1.5
    assert config.trailing_stop.initial_stop_loss_percent == -3.0
    assert [(level.percent, level.sell_percent) for level in config.take_profit.levels] == [
        (3.0, 30.0),
        (5.0, 30.0),
        (10.0, 40.0),
    ]
    assert config.position_sizing.max_total_exposure == 80.0
    assert config.execution.max_trades_per_cycle == 3
    assert config.regime.fear_index_symbol == "^VIX"
    assert config.universe == []


def test_universe_is_normalized_and_deduplicated() -> None:
    config = AppConfig(universe=[" aapl", "MSFT", "AAPL", "", "tsla "])

    assert config.universe == ["AAPL", "MSFT", "TSLA"]


def test_take_profit_levels_must_ascend() -> None:
    with pytest.raises(ValidationError):
        TakeProfitConfig.model_validate({"levels": [{"percent": 5, "sell_percent": 50}, {"percent": 3, "sell_percent": 50}]})


def test_scoring_thresholds_must_be_ordered() -> None:
    with pytest.raises(ValidationError):
        ScoringConfig(buy=80, strong_buy=75)


def test_shutdown_time_is_normalized() -> None:
    assert ScheduleConfig(shutdown_time="6:05").shutdown_time == "06:05"
    assert ScheduleConfig(shutdown_time=None).shutdown_time is None
    with pytest.raises(ValidationError):
        ScheduleConfig(shutdown_time="25:00")


def test_broker_mode_and_storage_backend_validated() -> None:
    config = AppConfig.model_validate({"broker": {"trading_mode": "real"}, "storage": {"backend": "SQLite"}})

    assert config.broker.trading_mode == "REAL"
    assert config.storage.backend == "sqlite"
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"broker": {"trading_mode": "demo"}})


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "universe: [nvda, amd]",
                "execution:",
                "  max_trades_per_cycle: 2",
                "trailing_stop:",
                "  trailing_percent: 2.5",
            ]
        ),
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.universe == ["NVDA", "AMD"]
    assert config.execution.max_trades_per_cycle == 2
    assert config.trailing_stop.trailing_percent == 2.5
    assert config.trailing_stop.activation_percent == 2.0


def test_empty_yaml_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(path) == AppConfig()


def test_repository_config_loads() -> None:
    config = load_config(Path(__file__).resolve().parents[1] / "config.yaml")

    assert config.universe
