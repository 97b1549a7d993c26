# src/market_sync/market_data/parsers.py
"""Converts raw REST and stream payloads into market data models.

Every parser raises :class:`MalformedResponseError` when the payload does not
have the expected shape, so callers only need to handle one error type.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from market_sync.connection.exceptions import MalformedResponseError
from market_sync.market_data.models import (
    CandlePoint,
    OrderBookLevel,
    OrderBookSnapshot,
    Trade,
)

_PARSE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError, InvalidOperation)


def _to_decimal(value: Any) -> Decimal:
    # Route floats through str() so 0.1 stays 0.1.
    return Decimal(str(value))


def _ms_to_datetime(ms: Any) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _parse_levels(raw_levels: Iterable[Any], descending: bool, max_levels: int) -> List[OrderBookLevel]:
    levels = [
        OrderBookLevel(price=_to_decimal(price), quantity=_to_decimal(quantity))
        for price, quantity, *_ in raw_levels
    ]
    levels = [level for level in levels if level.quantity > 0]
    levels.sort(key=lambda level: level.price, reverse=descending)
    return levels[:max_levels]


def parse_depth(payload: Any, max_levels: int) -> OrderBookSnapshot:
    """Parses a depth payload (REST snapshot or depth stream message)."""
    try:
        bids = _parse_levels(payload["bids"], descending=True, max_levels=max_levels)
        asks = _parse_levels(payload["asks"], descending=False, max_levels=max_levels)
        raw_id = payload.get("lastUpdateId")
        last_update_id = int(raw_id) if raw_id is not None else None
    except _PARSE_ERRORS as e:
        raise MalformedResponseError(f"Malformed depth payload: {e}") from e
    return OrderBookSnapshot(bids=tuple(bids), asks=tuple(asks), last_update_id=last_update_id)


def parse_depth_event(payload: Dict[str, Any], max_levels: int) -> Optional[OrderBookSnapshot]:
    """
    Parses a depth stream message. Returns None for a snapshot with an empty
    side, which is never applied.
    """
    snapshot = parse_depth(_unwrap(payload), max_levels)
    if not snapshot.bids or not snapshot.asks:
        return None
    return snapshot


def _parse_rest_trade(raw: Dict[str, Any]) -> Trade:
    raw_id = raw.get("id")
    return Trade(
        price=_to_decimal(raw["price"]),
        amount=_to_decimal(raw["qty"]),
        time=_ms_to_datetime(raw["time"]),
        is_buyer_maker=bool(raw["isBuyerMaker"]),
        trade_id=int(raw_id) if raw_id is not None else None,
    )


def parse_trades(payload: Any) -> List[Trade]:
    """
    Parses a recent-trades response, either the venue's bare list or the
    backend's ``{"trades": [...]}`` envelope. Returns trades newest first.
    """
    raw_trades = payload.get("trades") if isinstance(payload, dict) else payload
    if not isinstance(raw_trades, list):
        raise MalformedResponseError("Trades payload is not a list")
    try:
        trades = [_parse_rest_trade(raw) for raw in raw_trades]
    except _PARSE_ERRORS as e:
        raise MalformedResponseError(f"Malformed trade entry: {e}") from e
    trades.sort(key=lambda trade: trade.time, reverse=True)
    return trades


def parse_trade_event(payload: Dict[str, Any]) -> Trade:
    data = _unwrap(payload)
    try:
        raw_id = data.get("t")
        return Trade(
            price=_to_decimal(data["p"]),
            amount=_to_decimal(data["q"]),
            time=_ms_to_datetime(data["T"]),
            is_buyer_maker=bool(data["m"]),
            trade_id=int(raw_id) if raw_id is not None else None,
        )
    except _PARSE_ERRORS as e:
        raise MalformedResponseError(f"Malformed trade event: {e}") from e


def kline_row_to_point(row: List[Any]) -> CandlePoint:
    return CandlePoint(
        time=int(row[0]) // 1000,
        open=_to_decimal(row[1]),
        high=_to_decimal(row[2]),
        low=_to_decimal(row[3]),
        close=_to_decimal(row[4]),
    )


def parse_klines(payload: Any) -> List[CandlePoint]:
    """Parses a klines response into points ordered by bucket time."""
    if not isinstance(payload, list):
        raise MalformedResponseError("Klines payload is not a list")
    try:
        points = [kline_row_to_point(row) for row in payload]
    except _PARSE_ERRORS as e:
        raise MalformedResponseError(f"Malformed kline row: {e}") from e
    points.sort(key=lambda point: point.time)
    return points


def parse_kline_event(payload: Dict[str, Any]) -> CandlePoint:
    data = _unwrap(payload)
    try:
        k = data["k"]
        return CandlePoint(
            time=int(k["t"]) // 1000,
            open=_to_decimal(k["o"]),
            high=_to_decimal(k["h"]),
            low=_to_decimal(k["l"]),
            close=_to_decimal(k["c"]),
        )
    except _PARSE_ERRORS as e:
        raise MalformedResponseError(f"Malformed kline event: {e}") from e


def _unwrap(payload: Any) -> Dict[str, Any]:
    """Strips the combined-stream ``{"stream": ..., "data": ...}`` envelope."""
    if not isinstance(payload, dict):
        raise MalformedResponseError("Stream message is not an object")
    data = payload.get("data")
    if isinstance(data, dict):
        return data
    return payload
