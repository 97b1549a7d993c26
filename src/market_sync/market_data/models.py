from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    ERRORING = "erroring"


class PriceDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class OrderBookLevel:
    price: Decimal
    quantity: Decimal

    @property
    def total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Both sides of the book, always replaced together.

    Bids are stored best (highest) first and asks best (lowest) first.
    """

    bids: Tuple[OrderBookLevel, ...]
    asks: Tuple[OrderBookLevel, ...]
    last_update_id: Optional[int] = None

    @property
    def best_bid(self) -> Optional[OrderBookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[OrderBookLevel]:
        return self.asks[0] if self.asks else None

    def asks_for_display(self) -> Tuple[OrderBookLevel, ...]:
        """Asks with the highest price first, as shown above the spread."""
        return tuple(reversed(self.asks))

    def same_levels(self, other: Optional["OrderBookSnapshot"]) -> bool:
        return other is not None and self.bids == other.bids and self.asks == other.asks


@dataclass(frozen=True)
class Trade:
    price: Decimal
    amount: Decimal
    time: datetime
    is_buyer_maker: bool
    trade_id: Optional[int] = None

    @property
    def side(self) -> str:
        # Buyer as maker means the aggressor sold.
        return "sell" if self.is_buyer_maker else "buy"


@dataclass(frozen=True)
class CandlePoint:
    time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal


@dataclass(frozen=True)
class OrderBookView:
    snapshot: OrderBookSnapshot
    current_price: Optional[Decimal]
    price_direction: PriceDirection = PriceDirection.NEUTRAL


@dataclass(frozen=True)
class TradeTapeView:
    trades: Tuple[Trade, ...]


@dataclass(frozen=True)
class CandleSeriesView:
    points: Tuple[CandlePoint, ...]
    last_price: Optional[Decimal] = None
    price_direction: PriceDirection = PriceDirection.NEUTRAL
    moving_average: Tuple[Optional[float], ...] = field(default_factory=tuple)


@dataclass
class FeedState:
    """Degraded-mode flags surfaced to the presentation layer."""

    loading: bool = True
    not_on_venue: bool = False
    ws_error: bool = False
    using_cached_data: bool = False
    snapshot_failed: bool = False
    polling: bool = False
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
