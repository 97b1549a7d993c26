# src/market_sync/market_data/feeds.py
"""Live feeds that combine a REST snapshot, a stream and a reconciler.

Each feed is scoped to one symbol. ``start()`` checks the symbol against the
venue's list before anything else, then opens the stream, starts the tick loop
and fetches the initial snapshot concurrently. ``stop()`` invalidates every
in-flight callback synchronously, so a late snapshot or message from a
previous symbol can never reach the sink.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Tuple

from market_sync.connection.exceptions import MalformedResponseError, MarketDataAPIError
from market_sync.logging_config import structured_log_extra
from market_sync.market_data.exceptions import UnsupportedSymbolError
from market_sync.market_data.indicators import moving_average
from market_sync.market_data.models import (
    CandlePoint,
    CandleSeriesView,
    ConnectionStatus,
    FeedState,
    OrderBookSnapshot,
    OrderBookView,
    PriceDirection,
    Trade,
    TradeTapeView,
)
from market_sync.market_data.pagination import HistoryPager
from market_sync.market_data.parsers import (
    parse_depth_event,
    parse_kline_event,
    parse_trade_event,
)
from market_sync.market_data.reconciler import (
    AppendBounded,
    MergeStrategy,
    ReplaceLatest,
    ThrottledReconciler,
    UpsertByKey,
)
from market_sync.market_data.snapshot_fetcher import FetchResult, SnapshotFetcher
from market_sync.market_data.stream import StreamSubscriber, StreamSubscription
from market_sync.market_data.symbol_support import SymbolSupportCache
from market_sync.metrics import FeedMetrics

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[Any], None]
StatusHandler = Callable[[ConnectionStatus], None]
ErrorHandler = Callable[[Exception], None]


def price_direction(previous: Optional[Decimal], current: Optional[Decimal], fallback: PriceDirection) -> PriceDirection:
    """Compares two prices; an unchanged or unknown price keeps ``fallback``."""
    if previous is None or current is None or current == previous:
        return fallback
    return PriceDirection.UP if current > previous else PriceDirection.DOWN


def merge_trades(stream_trades: Tuple[Trade, ...], rest_trades: List[Trade], max_trades: int) -> Tuple[Trade, ...]:
    """
    Combines stream and REST trades newest first, dropping REST duplicates of
    trades the stream already delivered.
    """
    seen_ids = {trade.trade_id for trade in stream_trades if trade.trade_id is not None}
    combined = list(stream_trades)
    for trade in rest_trades:
        if trade.trade_id is not None and trade.trade_id in seen_ids:
            continue
        combined.append(trade)
    combined.sort(key=lambda trade: trade.time, reverse=True)
    return tuple(combined[:max_trades])


class MarketFeed:
    """Base class; subclasses define the channel, parser, strategy and view."""

    kind = "feed"

    def __init__(
        self,
        symbol: str,
        *,
        gate: SymbolSupportCache,
        fetcher: SnapshotFetcher,
        subscriber: StreamSubscriber,
        on_snapshot_update: Optional[SnapshotHandler] = None,
        on_connection_status_change: Optional[StatusHandler] = None,
        on_terminal_error: Optional[ErrorHandler] = None,
        tick_interval: float = 0.1,
        throttle: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[FeedMetrics] = None,
    ):
        self.symbol = symbol.upper()
        self.state = FeedState()
        self._gate = gate
        self._fetcher = fetcher
        self._subscriber = subscriber
        self._on_snapshot_update = on_snapshot_update
        self._on_connection_status_change = on_connection_status_change
        self._on_terminal_error = on_terminal_error
        self._metrics = metrics

        self._reconciler: ThrottledReconciler = ThrottledReconciler(
            self._build_strategy(),
            self._publish,
            tick_interval=tick_interval,
            throttle=throttle,
            clock=clock,
            metrics=metrics,
            name=self.kind,
        )
        self._subscription: Optional[StreamSubscription] = None
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0
        self._running = False

    # Subclass hooks

    @property
    def channel(self) -> str:
        raise NotImplementedError

    def _build_strategy(self) -> MergeStrategy:
        raise NotImplementedError

    def _parse_event(self, message: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def _fetch_snapshot(self) -> FetchResult:
        raise NotImplementedError

    def _apply_snapshot(self, data: Any) -> None:
        raise NotImplementedError

    def _build_view(self, previous: Any, merged: Any) -> Any:
        raise NotImplementedError

    def _reset_view_state(self) -> None:
        pass

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def visible(self) -> Any:
        return self._reconciler.visible

    @property
    def subscription(self) -> Optional[StreamSubscription]:
        return self._subscription

    def _log_extra(self, event: str, **kwargs: Any) -> Dict[str, Any]:
        return structured_log_extra(event=event, symbol=self.symbol, channel=self.kind, **kwargs)

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        """Gates the symbol, then opens the stream and loads the snapshot."""
        if self._running:
            logger.warning("%s feed for %s is already running.", self.kind, self.symbol)
            return

        self._running = True
        self._generation += 1
        generation = self._generation
        self.state = FeedState()

        supported = await asyncio.to_thread(self._gate.is_supported, self.symbol)
        if not self._is_current(generation):
            return

        if not supported:
            self.state.not_on_venue = True
            self.state.loading = False
            error = UnsupportedSymbolError(self.symbol)
            logger.warning("%s", error, extra=self._log_extra("symbol_unsupported"))
            self._emit_terminal(error)
            return

        self._subscription = self._subscriber.subscribe(
            self.symbol,
            self.channel,
            self._on_stream_message,
            on_status_change=self._on_status_change,
            on_terminal_error=self._on_stream_exhausted,
            on_reconnect_scheduled=self._on_reconnect_scheduled,
        )
        if not self._reconciler.immediate:
            self._spawn(self._reconciler.run())
        self._spawn(self._load_snapshot(generation))
        logger.info("%s feed started for %s.", self.kind, self.symbol, extra=self._log_extra("feed_started"))

    async def stop(self) -> None:
        """Closes the stream and cancels pending work; safe to call more than once."""
        if not self._running:
            return
        self._running = False
        self._generation += 1

        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._reconciler.reset()
        self._reset_view_state()
        logger.info("%s feed stopped for %s.", self.kind, self.symbol, extra=self._log_extra("feed_stopped"))

    async def switch_symbol(self, symbol: str) -> None:
        """Tears down the current symbol's feed and starts a fresh one."""
        await self.stop()
        self.symbol = symbol.upper()
        await self.start()

    # Data paths

    async def _load_snapshot(self, generation: int) -> None:
        try:
            result = await asyncio.to_thread(self._fetch_snapshot)
        except MarketDataAPIError as e:
            if not self._is_current(generation):
                return
            self.state.snapshot_failed = True
            self.state.loading = False
            logger.warning(
                "Initial %s snapshot for %s failed, continuing with stream only: %s",
                self.kind,
                self.symbol,
                e,
                extra=self._log_extra("snapshot_failed"),
            )
            return

        if not self._is_current(generation):
            logger.debug("Discarding %s snapshot for a replaced subscription.", self.kind)
            return

        self.state.loading = False
        self.state.using_cached_data = result.from_cache
        self._apply_snapshot(result.data)

    def _on_stream_message(self, message: Dict[str, Any]) -> None:
        if not self._running:
            return
        try:
            item = self._parse_event(message)
        except MalformedResponseError as e:
            logger.warning(
                "Dropping malformed %s message for %s: %s",
                self.kind,
                self.symbol,
                e,
                extra=self._log_extra("stream_message_malformed"),
            )
            if self._metrics:
                self._metrics.record_malformed_message(f"{self.symbol} {self.kind}: {e}")
            return
        if item is None:
            return
        self.state.loading = False
        self._reconciler.push(item)

    def _on_status_change(self, status: ConnectionStatus) -> None:
        self.state.status = status
        if status == ConnectionStatus.OPEN:
            self.state.ws_error = False
        elif status == ConnectionStatus.ERRORING:
            self.state.ws_error = True
        self._safe_call(self._on_connection_status_change, status)

    def _on_stream_exhausted(self, error: Exception) -> None:
        self.state.ws_error = True
        self._emit_terminal(error)

    def _on_reconnect_scheduled(self, attempts: int) -> None:
        pass

    def _emit_terminal(self, error: Exception) -> None:
        self._safe_call(self._on_terminal_error, error)

    def _publish(self, previous: Any, merged: Any) -> None:
        view = self._build_view(previous, merged)
        self._safe_call(self._on_snapshot_update, view)

    def _safe_call(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(
                "Feed callback failed for %s %s.",
                self.symbol,
                self.kind,
                extra=self._log_extra("feed_callback_failed"),
            )


class OrderBookFeed(MarketFeed):
    """Top-of-book levels plus the current price taken from the best bid."""

    kind = "orderbook"

    def __init__(self, symbol: str, *, max_levels: int = 11, snapshot_limit: int = 100, **kwargs: Any):
        self.max_levels = max_levels
        self.snapshot_limit = snapshot_limit
        self._last_price: Optional[Decimal] = None
        self._direction = PriceDirection.NEUTRAL
        super().__init__(symbol, **kwargs)

    @property
    def channel(self) -> str:
        return "depth20"

    def _build_strategy(self) -> MergeStrategy:
        return ReplaceLatest(same=lambda previous, new: new.same_levels(previous))

    def _parse_event(self, message: Dict[str, Any]) -> Optional[OrderBookSnapshot]:
        return parse_depth_event(message, self.max_levels)

    def _fetch_snapshot(self) -> FetchResult:
        return self._fetcher.fetch_order_book(self.symbol, limit=self.snapshot_limit, max_levels=self.max_levels)

    def _apply_snapshot(self, data: OrderBookSnapshot) -> None:
        if not data.bids or not data.asks:
            logger.info("Ignoring %s snapshot with an empty side.", self.symbol)
            return
        current = self._reconciler.visible
        if current is not None and not self._is_newer(data, current):
            logger.debug(
                "Stream already ahead of REST snapshot for %s; keeping stream data.",
                self.symbol,
                extra=self._log_extra("snapshot_superseded"),
            )
            return
        self._reconciler.replace(data)

    @staticmethod
    def _is_newer(candidate: OrderBookSnapshot, current: OrderBookSnapshot) -> bool:
        if candidate.last_update_id is None or current.last_update_id is None:
            return False
        return candidate.last_update_id > current.last_update_id

    def _build_view(self, previous: Optional[OrderBookSnapshot], merged: OrderBookSnapshot) -> OrderBookView:
        best_bid = merged.best_bid
        price = best_bid.price if best_bid else None
        self._direction = price_direction(self._last_price, price, self._direction)
        if price is not None:
            self._last_price = price
        return OrderBookView(snapshot=merged, current_price=price, price_direction=self._direction)

    def _reset_view_state(self) -> None:
        self._last_price = None
        self._direction = PriceDirection.NEUTRAL


class TradeFeed(MarketFeed):
    """Bounded newest-first tape of executed trades."""

    kind = "trades"

    def __init__(self, symbol: str, *, max_trades: int = 13, **kwargs: Any):
        self.max_trades = max_trades
        super().__init__(symbol, **kwargs)

    @property
    def channel(self) -> str:
        return "trade"

    def _build_strategy(self) -> MergeStrategy:
        return AppendBounded(
            self.max_trades,
            order_key=lambda trade: trade.time,
            identity=lambda trade: trade.trade_id,
        )

    def _parse_event(self, message: Dict[str, Any]) -> Trade:
        return parse_trade_event(message)

    def _fetch_snapshot(self) -> FetchResult:
        return self._fetcher.fetch_trades(self.symbol, limit=self.max_trades)

    def _apply_snapshot(self, data: List[Trade]) -> None:
        visible = self._reconciler.visible or ()
        self._reconciler.replace(merge_trades(visible, data, self.max_trades))

    def _build_view(self, previous: Optional[Tuple[Trade, ...]], merged: Tuple[Trade, ...]) -> TradeTapeView:
        return TradeTapeView(trades=merged)


class CandleFeed(MarketFeed):
    """
    Candle series for one interval. Stream updates apply immediately; older
    history is paged in on demand, and after repeated reconnects the latest
    candle is polled over REST until the stream reopens.
    """

    kind = "candles"

    def __init__(
        self,
        symbol: str,
        *,
        interval: str = "1m",
        page_limit: int = 50,
        load_margin_seconds: int = 60,
        ma_length: int = 20,
        poll_after_attempts: int = 3,
        polling_interval: float = 5.0,
        **kwargs: Any,
    ):
        self.interval = interval
        self.page_limit = page_limit
        self.ma_length = ma_length
        self.poll_after_attempts = poll_after_attempts
        self.polling_interval = polling_interval
        self._last_price: Optional[Decimal] = None
        self._direction = PriceDirection.NEUTRAL
        self._poll_task: Optional[asyncio.Task] = None
        kwargs["throttle"] = 0
        super().__init__(symbol, **kwargs)
        self.pager = HistoryPager(self._fetch_page, margin_seconds=load_margin_seconds, symbol=self.symbol)

    @property
    def channel(self) -> str:
        return f"kline_{self.interval}"

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _build_strategy(self) -> MergeStrategy:
        return UpsertByKey(key=lambda point: point.time)

    def _parse_event(self, message: Dict[str, Any]) -> CandlePoint:
        return parse_kline_event(message)

    def _fetch_snapshot(self) -> FetchResult:
        return self._fetcher.fetch_klines(self.symbol, self.interval, limit=self.page_limit)

    def _fetch_page(self, end_time_ms: int) -> List[CandlePoint]:
        return self._fetcher.fetch_klines(
            self.symbol,
            self.interval,
            limit=self.page_limit,
            end_time_ms=end_time_ms,
        ).data

    def _apply_snapshot(self, data: List[CandlePoint]) -> None:
        strategy = self._reconciler.strategy
        base = tuple(sorted(data, key=lambda point: point.time))
        # Stream points seen before the snapshot arrived are newer; they win.
        merged = strategy.merge(base, list(self._reconciler.visible or ()))
        self._reconciler.replace(merged)

    def _build_view(self, previous: Optional[Tuple[CandlePoint, ...]], merged: Tuple[CandlePoint, ...]) -> CandleSeriesView:
        last_price = merged[-1].close if merged else None
        self._direction = price_direction(self._last_price, last_price, PriceDirection.NEUTRAL)
        if last_price is not None:
            self._last_price = last_price
        return CandleSeriesView(
            points=merged,
            last_price=last_price,
            price_direction=self._direction,
            moving_average=moving_average(merged, self.ma_length) if merged else (),
        )

    def _reset_view_state(self) -> None:
        self._last_price = None
        self._direction = PriceDirection.NEUTRAL
        self._poll_task = None
        self.state.polling = False
        self.pager.reset()

    async def switch_symbol(self, symbol: str) -> None:
        await self.stop()
        self.symbol = symbol.upper()
        self.pager.symbol = self.symbol
        await self.start()

    async def on_visible_range(self, visible_from: int) -> None:
        """Loads an older page when the visible range nears the earliest candle."""
        series = self._reconciler.visible
        if not self._running or not series:
            return
        if not self.pager.should_load(visible_from, series[0].time):
            return

        generation = self._generation
        older = await self.pager.load_older(series)
        if not older or not self._is_current(generation):
            return
        strategy = self._reconciler.strategy
        self._reconciler.replace(strategy.prepend_older(self._reconciler.visible or (), older))

    # Polling fallback

    def _on_reconnect_scheduled(self, attempts: int) -> None:
        if attempts < self.poll_after_attempts or self.polling or not self._running:
            return
        logger.warning(
            "Stream for %s reconnecting (attempt %d); polling latest candle every %.0fs.",
            self.symbol,
            attempts,
            self.polling_interval,
            extra=self._log_extra("polling_started", attempt=attempts),
        )
        self.state.polling = True
        self._poll_task = self._spawn(self._poll_latest(self._generation))

    def _on_status_change(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.OPEN and self.polling:
            self._stop_polling()
        super()._on_status_change(status)

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self.state.polling = False
        logger.info("Stream reopened for %s; polling stopped.", self.symbol, extra=self._log_extra("polling_stopped"))

    async def _poll_latest(self, generation: int) -> None:
        while self._is_current(generation):
            await asyncio.sleep(self.polling_interval)
            try:
                result = await asyncio.to_thread(self._fetcher.fetch_klines, self.symbol, self.interval, 2)
            except MarketDataAPIError as e:
                logger.warning(
                    "Polling latest candle for %s failed: %s",
                    self.symbol,
                    e,
                    extra=self._log_extra("polling_failed"),
                )
                continue
            if not self._is_current(generation):
                return
            if result.from_cache:
                logger.debug("Skipping cached candle while polling %s.", self.symbol)
                continue
            if result.data:
                self._reconciler.push(result.data[-1])
