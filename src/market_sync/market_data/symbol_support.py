# src/market_sync/market_data/symbol_support.py

import logging
import threading
import time
from typing import Any, Callable, List, Optional

from market_sync.connection.exceptions import MalformedResponseError, MarketDataAPIError
from market_sync.connection.rest_client import BinanceRESTClient
from market_sync.logging_config import structured_log_extra

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60


def _extract_symbols(payload: Any) -> List[str]:
    """
    Pulls the ordered symbol names out of a ``{"symbols": [{"symbol": ...}]}``
    payload (the backend proxy and the venue's exchangeInfo share this shape).
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("Symbol list payload is not an object")

    raw_symbols = payload.get("symbols") or []
    if not isinstance(raw_symbols, list):
        raise MalformedResponseError("'symbols' is not a list")

    symbols = []
    for entry in raw_symbols:
        if isinstance(entry, dict) and entry.get("symbol"):
            symbols.append(str(entry["symbol"]).upper())
        elif isinstance(entry, str):
            symbols.append(entry.upper())
    return symbols


class SymbolSupportCache:
    """
    Caches the venue's tradable-symbol list and answers "is this symbol
    supported" checks before any fetch or stream is attempted.

    The list is fetched at most once per TTL window. A failed refresh never
    raises: the previous list is served if there is one, otherwise nothing is
    supported, and the fetch time is left untouched so the next call retries.
    """

    def __init__(
        self,
        client: BinanceRESTClient,
        url: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._url = url
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._symbols: Optional[List[str]] = None
        self._supported: frozenset = frozenset()
        self._last_fetch: Optional[float] = None

    @property
    def last_fetch(self) -> Optional[float]:
        return self._last_fetch

    def _is_fresh(self, now: float) -> bool:
        return (
            self._symbols is not None
            and self._last_fetch is not None
            and now - self._last_fetch < self._ttl
        )

    def get_symbols(self) -> List[str]:
        """Returns the ordered list of supported symbols, refreshing it if stale."""
        now = self._clock()
        with self._lock:
            if self._is_fresh(now):
                return list(self._symbols or [])

        # Fetch outside the lock; concurrent callers may both fetch.
        try:
            symbols = _extract_symbols(self._client.get_url(self._url))
        except MarketDataAPIError as e:
            with self._lock:
                fallback = list(self._symbols or [])
            logger.warning(
                "Failed to refresh symbol list: %s",
                e,
                extra=structured_log_extra(
                    event="symbol_list_refresh_failed",
                    serving_stale=bool(fallback),
                ),
            )
            return fallback

        with self._lock:
            self._symbols = symbols
            self._supported = frozenset(symbols)
            self._last_fetch = now

        logger.info(
            "Symbol list refreshed with %d symbols.",
            len(symbols),
            extra=structured_log_extra(event="symbol_list_refreshed", count=len(symbols)),
        )
        return list(symbols)

    def is_supported(self, symbol: str) -> bool:
        self.get_symbols()
        with self._lock:
            return symbol.upper() in self._supported

    def invalidate(self) -> None:
        """Forces the next call to refetch the list."""
        with self._lock:
            self._last_fetch = None
