# src/market_sync/market_data/snapshot_fetcher.py

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from market_sync.connection.exceptions import MarketDataAPIError, RateLimitError
from market_sync.connection.rest_client import BinanceRESTClient
from market_sync.logging_config import structured_log_extra
from market_sync.market_data.models import CandlePoint, OrderBookSnapshot, Trade
from market_sync.market_data.parsers import parse_depth, parse_klines, parse_trades
from market_sync.metrics import FeedMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(retry_count: int, base: float = 1.0, cap: float = 5.0) -> float:
    """Exponential backoff for rate-limited requests: base * 2**retry, capped."""
    return min(base * (2 ** retry_count), cap)


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    data: T
    from_cache: bool = False


class SnapshotCache:
    """
    Last good snapshot per request, used only as a fallback when a fresh
    fetch fails. Entries older than ``max_age_seconds`` are discarded.
    """

    def __init__(self, max_age_seconds: float = 180.0, clock: Callable[[], float] = time.monotonic):
        self._max_age = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self._max_age:
                del self._entries[key]
                return None
            return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class SnapshotFetcher:
    """
    Fetches the initial bounded datasets (order book, recent trades, klines)
    over REST. HTTP 429 is retried with exponential backoff; any other failure
    is raised to the caller, which carries on with the stream alone.
    """

    def __init__(
        self,
        client: BinanceRESTClient,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        cache: Optional[SnapshotCache] = None,
        metrics: Optional[FeedMetrics] = None,
    ):
        self._client = client
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._cache = cache
        self._metrics = metrics

    def _get_with_retry(self, endpoint: str, params: Dict[str, Any], symbol: str) -> Any:
        retry_count = 0
        while True:
            try:
                return self._client.get_public(endpoint, params)
            except RateLimitError as e:
                if retry_count >= self._max_retries:
                    logger.error(
                        "Rate limited on %s after %d retries; giving up.",
                        endpoint,
                        retry_count,
                        extra=structured_log_extra(event="snapshot_rate_limited", symbol=symbol),
                    )
                    raise
                delay = backoff_delay(retry_count, self._backoff_base, self._backoff_max)
                logger.warning(
                    "Rate limited on %s; retrying in %.1fs (retry %d/%d).",
                    endpoint,
                    delay,
                    retry_count + 1,
                    self._max_retries,
                    extra=structured_log_extra(
                        event="snapshot_retry_scheduled",
                        symbol=symbol,
                        retry_after=e.retry_after,
                    ),
                )
                if self._metrics:
                    self._metrics.record_rate_limit_retry()
                self._sleep(delay)
                retry_count += 1

    def _fetch(
        self,
        kind: str,
        symbol: str,
        endpoint: str,
        params: Dict[str, Any],
        parse: Callable[[Any], T],
    ) -> FetchResult[T]:
        cache_key = (kind, symbol, tuple(sorted(params.items())))
        try:
            data = parse(self._get_with_retry(endpoint, params, symbol))
        except MarketDataAPIError as e:
            if self._metrics:
                self._metrics.record_snapshot_failure(f"{kind} {symbol}: {e}")
            cached = self._cache.get(cache_key) if self._cache else None
            if cached is None:
                raise
            logger.warning(
                "Serving cached %s for %s after fetch failure: %s",
                kind,
                symbol,
                e,
                extra=structured_log_extra(event="snapshot_cache_fallback", symbol=symbol, channel=kind),
            )
            return FetchResult(cached, from_cache=True)

        if self._cache:
            self._cache.put(cache_key, data)
        return FetchResult(data)

    def fetch_order_book(self, symbol: str, limit: int = 100, max_levels: int = 11) -> FetchResult[OrderBookSnapshot]:
        return self._fetch(
            "depth",
            symbol,
            "depth",
            {"symbol": symbol, "limit": limit},
            lambda payload: parse_depth(payload, max_levels),
        )

    def fetch_trades(self, symbol: str, limit: int = 13) -> FetchResult[List[Trade]]:
        return self._fetch("trades", symbol, "trades", {"symbol": symbol, "limit": limit}, parse_trades)

    def fetch_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 50,
        end_time_ms: Optional[int] = None,
    ) -> FetchResult[List[CandlePoint]]:
        params: Dict[str, Any] = {"symbol": symbol, "interval": interval, "limit": limit}
        if end_time_ms is not None:
            params["endTime"] = end_time_ms
        return self._fetch("klines", symbol, "klines", params, parse_klines)
