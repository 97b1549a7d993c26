# src/market_sync/market_data/pagination.py

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from market_sync.connection.exceptions import MarketDataAPIError
from market_sync.logging_config import structured_log_extra
from market_sync.market_data.models import CandlePoint

logger = logging.getLogger(__name__)

DEFAULT_MARGIN_SECONDS = 60


class HistoryPager:
    """
    Loads older candles page by page as the visible range approaches the
    earliest loaded point.

    ``fetch_page`` is a blocking callable taking the page's end time in
    milliseconds; it runs in a worker thread. Only one page is in flight at a
    time, and once a page yields nothing strictly older than what is loaded the
    pager stops for good.
    """

    def __init__(
        self,
        fetch_page: Callable[[int], List[CandlePoint]],
        margin_seconds: int = DEFAULT_MARGIN_SECONDS,
        symbol: Optional[str] = None,
    ):
        self._fetch_page = fetch_page
        self.margin_seconds = margin_seconds
        self.symbol = symbol
        self.is_loading_older = False
        self.no_more_historical = False

    def should_load(self, visible_from: Optional[int], earliest: Optional[int]) -> bool:
        if visible_from is None or earliest is None:
            return False
        if self.no_more_historical or self.is_loading_older:
            return False
        return visible_from <= earliest + self.margin_seconds

    async def load_older(self, series: Sequence[CandlePoint]) -> List[CandlePoint]:
        """
        Fetches the page ending just before ``series[0]`` and returns the points
        strictly older than it, oldest first. Returns an empty list when
        nothing was loaded.
        """
        if self.is_loading_older or self.no_more_historical or not series:
            return []

        self.is_loading_older = True
        try:
            earliest = series[0].time
            end_time_ms = earliest * 1000 - 1
            try:
                page = await asyncio.to_thread(self._fetch_page, end_time_ms)
            except MarketDataAPIError as e:
                logger.warning(
                    "Failed loading older candles before %s: %s",
                    earliest,
                    e,
                    extra=structured_log_extra(event="history_page_failed", symbol=self.symbol),
                )
                return []

            older = sorted((point for point in page if point.time < earliest), key=lambda p: p.time)
            if not older:
                self.no_more_historical = True
                logger.info(
                    "No candles older than %s; history exhausted.",
                    earliest,
                    extra=structured_log_extra(event="history_exhausted", symbol=self.symbol),
                )
                return []

            logger.debug(
                "Loaded %d older candles before %s.",
                len(older),
                earliest,
                extra=structured_log_extra(event="history_page_loaded", symbol=self.symbol),
            )
            return older
        finally:
            self.is_loading_older = False

    def reset(self) -> None:
        self.is_loading_older = False
        self.no_more_historical = False
