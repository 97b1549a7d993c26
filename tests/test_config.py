"""Tests for configuration defaults and validation."""

import logging
from pathlib import Path

from market_sync.config import AppConfig, load_config


def _events(caplog) -> list:
    return [getattr(record, "event", None) for record in caplog.records]


def test_defaults_when_file_missing(tmp_path: Path, caplog):
    with caplog.at_level(logging.WARNING):
        config = load_config(config_path=tmp_path / "missing.yaml", env="local")

    assert "config_missing_file" in _events(caplog)
    assert config == AppConfig(env="local")
    assert config.endpoints.rest_base_url == "https://api.binance.com/api/v3"
    assert config.endpoints.stream_base_url == "wss://stream.binance.com:9443/ws"
    assert config.rest.request_timeout == 10.0
    assert config.rest.max_retries == 3
    assert config.stream.max_reconnect_attempts == 5
    assert config.stream.poll_after_attempts == 3
    assert config.reconciler.tick_interval_seconds == 0.1
    assert config.reconciler.update_throttle_seconds == 0.25
    assert config.order_book.max_levels == 11
    assert config.order_book.snapshot_limit == 100
    assert config.trades.max_trades == 13
    assert config.candles.page_limit == 50
    assert config.candles.load_margin_seconds == 60
    assert config.candles.ma_length == 20
    assert config.symbol_support.ttl_seconds == 300.0


def test_invalid_values_fall_back_to_defaults(tmp_path: Path, caplog):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
trades:
  max_trades: 0
order_book:
  max_levels: "eleven"
reconciler:
  update_throttle_seconds: -1
endpoints:
  rest_base_url: ""
rest:
  request_timeout: 3
""".strip()
    )

    with caplog.at_level(logging.WARNING):
        config = load_config(config_path=config_path, env="local")

    assert config.trades.max_trades == 13
    assert config.order_book.max_levels == 11
    assert config.reconciler.update_throttle_seconds == 0.25
    assert config.endpoints.rest_base_url == "https://api.binance.com/api/v3"
    assert config.rest.request_timeout == 3.0
    assert _events(caplog).count("config_invalid_value") == 4


def test_non_mapping_section_and_unknown_keys_are_ignored(tmp_path: Path, caplog):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
stream: [1, 2, 3]
candles:
  interval: "15m"
  colour: "green"
""".strip()
    )

    with caplog.at_level(logging.WARNING):
        config = load_config(config_path=config_path, env="local")

    assert config.stream.max_reconnect_attempts == 5
    assert config.candles.interval == "15m"
    events = _events(caplog)
    assert "config_invalid_stream" in events
    assert "config_unknown_key" in events


def test_non_mapping_file_uses_defaults(tmp_path: Path, caplog):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")

    with caplog.at_level(logging.WARNING):
        config = load_config(config_path=config_path, env="local")

    assert config == AppConfig(env="local")
    assert "config_invalid_format" in _events(caplog)
