# tests/test_parsers.py

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from market_sync.connection.exceptions import MalformedResponseError
from market_sync.market_data.parsers import (
    parse_depth,
    parse_depth_event,
    parse_kline_event,
    parse_klines,
    parse_trade_event,
    parse_trades,
)


def test_parse_depth_sorts_filters_and_truncates():
    payload = {
        "lastUpdateId": 42,
        "bids": [["99.5", "1"], ["100.0", "2"], ["98.0", "0"], ["99.0", "3"]],
        "asks": [["101.5", "1"], ["101.0", "0.5"], ["102.0", "4"]],
    }

    snapshot = parse_depth(payload, max_levels=2)

    assert [level.price for level in snapshot.bids] == [Decimal("100.0"), Decimal("99.5")]
    assert [level.price for level in snapshot.asks] == [Decimal("101.0"), Decimal("101.5")]
    assert snapshot.last_update_id == 42
    assert snapshot.best_bid.total == Decimal("200.0")


def test_asks_for_display_puts_highest_first():
    snapshot = parse_depth({"bids": [], "asks": [["1", "1"], ["3", "1"], ["2", "1"]]}, max_levels=11)

    assert [level.price for level in snapshot.asks_for_display()] == [Decimal("3"), Decimal("2"), Decimal("1")]


def test_parse_depth_event_skips_empty_side():
    assert parse_depth_event({"bids": [["1", "1"]], "asks": []}, max_levels=11) is None


def test_parse_depth_event_unwraps_combined_stream_envelope():
    message = {
        "stream": "btcusdt@depth20",
        "data": {"lastUpdateId": 7, "bids": [["10", "1"]], "asks": [["11", "1"]]},
    }

    snapshot = parse_depth_event(message, max_levels=11)

    assert snapshot is not None
    assert snapshot.last_update_id == 7


@pytest.mark.parametrize(
    "payload",
    [
        {"bids": [["abc", "1"]], "asks": []},
        {"asks": []},
        {"bids": [["1"]], "asks": []},
        ["not", "an", "object"],
    ],
)
def test_parse_depth_malformed(payload):
    with pytest.raises(MalformedResponseError):
        parse_depth(payload, max_levels=11)


def test_parse_trades_accepts_envelope_and_sorts_newest_first():
    payload = {
        "trades": [
            {"id": 1, "price": "100", "qty": "0.5", "time": 1_700_000_000_000, "isBuyerMaker": True},
            {"id": 2, "price": "101", "qty": "0.1", "time": 1_700_000_001_000, "isBuyerMaker": False},
        ]
    }

    trades = parse_trades(payload)

    assert [trade.trade_id for trade in trades] == [2, 1]
    assert trades[0].side == "buy"
    assert trades[1].side == "sell"
    assert trades[0].time == datetime.fromtimestamp(1_700_000_001, tz=timezone.utc)


def test_parse_trades_rejects_non_list():
    with pytest.raises(MalformedResponseError):
        parse_trades({"trades": "nope"})


def test_parse_trade_event():
    trade = parse_trade_event({"e": "trade", "t": 9, "p": "0.001", "q": "100", "T": 1_700_000_000_500, "m": False})

    assert trade.price == Decimal("0.001")
    assert trade.amount == Decimal("100")
    assert trade.trade_id == 9
    assert trade.is_buyer_maker is False


def test_parse_trade_event_missing_field():
    with pytest.raises(MalformedResponseError):
        parse_trade_event({"p": "1", "q": "1"})


def test_parse_klines_converts_ms_and_sorts():
    rows = [
        [1_700_000_060_000, "2", "3", "1", "2.5", "10"],
        [1_700_000_000_000, "1", "2", "0.5", "1.5", "10"],
    ]

    points = parse_klines(rows)

    assert [point.time for point in points] == [1_700_000_000, 1_700_000_060]
    assert points[1].close == Decimal("2.5")


def test_parse_klines_rejects_non_list():
    with pytest.raises(MalformedResponseError):
        parse_klines({"code": -1121, "msg": "Invalid symbol."})


def test_parse_kline_event():
    message = {"e": "kline", "k": {"t": 1_700_000_000_000, "o": "1", "h": "2", "l": "0.5", "c": "1.5"}}

    point = parse_kline_event(message)

    assert point.time == 1_700_000_000
    assert point.high == Decimal("2")


def test_parse_kline_event_rejects_non_object():
    with pytest.raises(MalformedResponseError):
        parse_kline_event(["k"])
