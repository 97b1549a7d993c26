# src/market_sync/market_data/api.py

import logging
from typing import Any, Callable, List, Optional

from market_sync.config import AppConfig
from market_sync.connection.rate_limiter import RateLimiter
from market_sync.connection.rest_client import BinanceRESTClient
from market_sync.market_data.feeds import CandleFeed, MarketFeed, OrderBookFeed, TradeFeed
from market_sync.market_data.snapshot_fetcher import SnapshotCache, SnapshotFetcher
from market_sync.market_data.stream import StreamSubscriber
from market_sync.market_data.symbol_support import SymbolSupportCache
from market_sync.metrics import FeedMetrics

logger = logging.getLogger(__name__)


class MarketDataAPI:
    """
    The main public interface for the market data module.

    Owns the shared REST client, symbol cache, snapshot fetcher and stream
    subscriber, and builds per-symbol feeds on top of them. Feeds are returned
    unstarted; ``await feed.start()`` from a running event loop.
    """

    def __init__(
        self,
        config: AppConfig,
        rest_client: Optional[BinanceRESTClient] = None,
        connect: Optional[Callable[[str], Any]] = None,
        metrics: Optional[FeedMetrics] = None,
    ):
        self._config = config
        self.metrics = metrics or FeedMetrics()
        self._rest_client = rest_client or BinanceRESTClient(
            base_url=config.endpoints.rest_base_url,
            request_timeout=config.rest.request_timeout,
            rate_limiter=RateLimiter(config.rest.calls_per_second),
        )
        self._symbols = SymbolSupportCache(
            self._rest_client,
            config.endpoints.symbols_url,
            ttl_seconds=config.symbol_support.ttl_seconds,
        )
        self._fetcher = SnapshotFetcher(
            self._rest_client,
            max_retries=config.rest.max_retries,
            backoff_base=config.rest.backoff_base_seconds,
            backoff_max=config.rest.backoff_max_seconds,
            cache=SnapshotCache(config.rest.snapshot_cache_ttl_seconds),
            metrics=self.metrics,
        )
        self._subscriber = StreamSubscriber(
            base_url=config.endpoints.stream_base_url,
            connect=connect,
            max_attempts=config.stream.max_reconnect_attempts,
            base_delay=config.stream.reconnect_base_delay_seconds,
            metrics=self.metrics,
        )
        self._feeds: List[MarketFeed] = []

    @property
    def symbols(self) -> SymbolSupportCache:
        return self._symbols

    def _feed_kwargs(self, **callbacks: Any) -> dict:
        return dict(
            gate=self._symbols,
            fetcher=self._fetcher,
            subscriber=self._subscriber,
            tick_interval=self._config.reconciler.tick_interval_seconds,
            throttle=self._config.reconciler.update_throttle_seconds,
            metrics=self.metrics,
            **callbacks,
        )

    def _track(self, feed: MarketFeed) -> MarketFeed:
        self._feeds.append(feed)
        return feed

    def is_supported(self, symbol: str) -> bool:
        """Blocking check against the cached venue symbol list."""
        return self._symbols.is_supported(symbol)

    def get_symbols(self) -> List[str]:
        return self._symbols.get_symbols()

    def order_book(self, symbol: str, **callbacks: Any) -> OrderBookFeed:
        feed = OrderBookFeed(
            symbol,
            max_levels=self._config.order_book.max_levels,
            snapshot_limit=self._config.order_book.snapshot_limit,
            **self._feed_kwargs(**callbacks),
        )
        self._track(feed)
        return feed

    def trades(self, symbol: str, **callbacks: Any) -> TradeFeed:
        feed = TradeFeed(
            symbol,
            max_trades=self._config.trades.max_trades,
            **self._feed_kwargs(**callbacks),
        )
        self._track(feed)
        return feed

    def candles(self, symbol: str, interval: Optional[str] = None, **callbacks: Any) -> CandleFeed:
        candles = self._config.candles
        feed = CandleFeed(
            symbol,
            interval=interval or candles.interval,
            page_limit=candles.page_limit,
            load_margin_seconds=candles.load_margin_seconds,
            ma_length=candles.ma_length,
            poll_after_attempts=self._config.stream.poll_after_attempts,
            polling_interval=self._config.stream.polling_interval_seconds,
            **self._feed_kwargs(**callbacks),
        )
        self._track(feed)
        return feed

    def close(self) -> None:
        """Closes the REST session; feeds must already be stopped."""
        self._rest_client.close()

    async def shutdown(self) -> None:
        """Stops every feed built by this instance and closes the REST session."""
        feeds, self._feeds = self._feeds, []
        for feed in feeds:
            await feed.stop()
        self.close()
        logger.info("MarketDataAPI shutdown complete.")
