from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from market_sync import cli
from market_sync.market_data.exceptions import UnsupportedSymbolError
from market_sync.market_data.models import OrderBookLevel, OrderBookSnapshot, OrderBookView


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def _base_args(tmp_path: Path) -> list[str]:
    return ["--config", str(tmp_path / "config.yaml"), "--env", "local"]


class _FakeFeed:
    def __init__(self, events: list[Any], callbacks: dict[str, Any]) -> None:
        self._events = events
        self._callbacks = callbacks

    async def start(self) -> None:
        for kind, payload in self._events:
            self._callbacks[kind](payload)


class _FakeAPI:
    events: list[Any] = []
    supported = True
    requested: list[tuple[str, str, Any]] = []

    def __init__(self, config: Any) -> None:
        self.config = config
        self.shutdown_called = False

    def _feed(self, kind: str, symbol: str, extra: Any, callbacks: dict[str, Any]) -> _FakeFeed:
        _FakeAPI.requested.append((kind, symbol, extra))
        return _FakeFeed(self.events, callbacks)

    def order_book(self, symbol: str, **callbacks: Any) -> _FakeFeed:
        return self._feed("orderbook", symbol, None, callbacks)

    def trades(self, symbol: str, **callbacks: Any) -> _FakeFeed:
        return self._feed("trades", symbol, None, callbacks)

    def candles(self, symbol: str, interval: str | None = None, **callbacks: Any) -> _FakeFeed:
        return self._feed("candles", symbol, interval, callbacks)

    def is_supported(self, symbol: str) -> bool:
        return self.supported

    def close(self) -> None:
        pass

    async def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def fake_api(monkeypatch: pytest.MonkeyPatch) -> type[_FakeAPI]:
    _FakeAPI.events = []
    _FakeAPI.supported = True
    _FakeAPI.requested = []
    monkeypatch.setattr(cli, "MarketDataAPI", _FakeAPI)
    return _FakeAPI


def test_show_config_prints_defaults(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.main(_base_args(tmp_path) + ["show-config"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["env"] == "local"
    assert payload["trades"]["max_trades"] == 13
    assert payload["endpoints"]["stream_base_url"] == "wss://stream.binance.com:9443/ws"


def test_check_symbol_supported(tmp_path: Path, fake_api, capsys) -> None:
    exit_code = cli.main(_base_args(tmp_path) + ["check-symbol", "btcusdt"])

    assert exit_code == 0
    assert "BTCUSDT is supported" in capsys.readouterr().out


def test_check_symbol_unsupported(tmp_path: Path, fake_api, capsys) -> None:
    fake_api.supported = False

    exit_code = cli.main(_base_args(tmp_path) + ["check-symbol", "DOGEUSDT"])

    assert exit_code == 1
    assert "not available" in capsys.readouterr().err


def test_orderbook_prints_views_as_json_lines(tmp_path: Path, fake_api, capsys) -> None:
    snapshot = OrderBookSnapshot(
        bids=(OrderBookLevel(Decimal("100.5"), Decimal("2")),),
        asks=(OrderBookLevel(Decimal("101"), Decimal("1")),),
    )
    fake_api.events = [
        ("on_snapshot_update", OrderBookView(snapshot=snapshot, current_price=Decimal("100.5"))),
    ]

    exit_code = cli.main(_base_args(tmp_path) + ["orderbook", "BTCUSDT", "--duration", "0.01"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert exit_code == 0
    assert len(lines) == 1
    view = json.loads(lines[0])
    assert view["current_price"] == "100.5"
    assert view["price_direction"] == "neutral"
    assert view["snapshot"]["bids"][0]["price"] == "100.5"


def test_candles_passes_interval(tmp_path: Path, fake_api) -> None:
    exit_code = cli.main(_base_args(tmp_path) + ["candles", "BTCUSDT", "--interval", "1h", "--duration", "0"])

    assert exit_code == 0
    assert fake_api.requested == [("candles", "BTCUSDT", "1h")]


def test_terminal_error_exits_non_zero(tmp_path: Path, fake_api, capsys) -> None:
    fake_api.events = [("on_terminal_error", UnsupportedSymbolError("DOGEUSDT"))]

    exit_code = cli.main(_base_args(tmp_path) + ["trades", "DOGEUSDT"])

    assert exit_code == 1
    assert "DOGEUSDT" in capsys.readouterr().err
