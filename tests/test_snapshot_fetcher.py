# tests/test_snapshot_fetcher.py

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from market_sync.connection.exceptions import RateLimitError, ServiceUnavailableError
from market_sync.market_data.snapshot_fetcher import SnapshotCache, SnapshotFetcher, backoff_delay
from market_sync.metrics import FeedMetrics

DEPTH_PAYLOAD = {
    "lastUpdateId": 10,
    "bids": [[str(100 - i), "1"] for i in range(20)],
    "asks": [[str(101 + i), "1"] for i in range(20)],
}


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fetcher(client, sleeps):
    return SnapshotFetcher(client, max_retries=3, sleep=sleeps.append, metrics=FeedMetrics())


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_fetch_order_book_truncates_levels(fetcher, client):
    client.get_public.return_value = DEPTH_PAYLOAD

    result = fetcher.fetch_order_book("BTCUSDT", limit=100, max_levels=11)

    client.get_public.assert_called_once_with("depth", {"symbol": "BTCUSDT", "limit": 100})
    assert len(result.data.bids) == 11
    assert len(result.data.asks) == 11
    assert result.data.best_bid.price == Decimal("100")
    assert result.from_cache is False


def test_fetch_klines_passes_end_time(fetcher, client):
    client.get_public.return_value = []

    fetcher.fetch_klines("BTCUSDT", "1m", limit=50, end_time_ms=1_699_999_999_999)

    client.get_public.assert_called_once_with(
        "klines",
        {"symbol": "BTCUSDT", "interval": "1m", "limit": 50, "endTime": 1_699_999_999_999},
    )


def test_rate_limit_retried_with_backoff(fetcher, client, sleeps):
    client.get_public.side_effect = [RateLimitError(), RateLimitError(), []]

    result = fetcher.fetch_trades("BTCUSDT")

    assert result.data == []
    assert sleeps == [1.0, 2.0]
    assert client.get_public.call_count == 3


def test_rate_limit_gives_up_after_max_retries(fetcher, client, sleeps):
    client.get_public.side_effect = RateLimitError()

    with pytest.raises(RateLimitError):
        fetcher.fetch_trades("BTCUSDT")

    assert client.get_public.call_count == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert fetcher._metrics.rate_limit_retries == 3
    assert fetcher._metrics.snapshot_failures == 1


def test_other_errors_are_not_retried(fetcher, client, sleeps):
    client.get_public.side_effect = ServiceUnavailableError("boom")

    with pytest.raises(ServiceUnavailableError):
        fetcher.fetch_order_book("BTCUSDT")

    assert client.get_public.call_count == 1
    assert sleeps == []


def test_cache_fallback_after_failure(client, sleeps):
    clock = FakeClock()
    fetcher = SnapshotFetcher(client, sleep=sleeps.append, cache=SnapshotCache(180, clock=clock))
    client.get_public.return_value = DEPTH_PAYLOAD
    fresh = fetcher.fetch_order_book("BTCUSDT")

    client.get_public.side_effect = ServiceUnavailableError("down")
    clock.now += 60
    cached = fetcher.fetch_order_book("BTCUSDT")

    assert cached.from_cache is True
    assert cached.data == fresh.data


def test_expired_cache_entry_not_served(client, sleeps):
    clock = FakeClock()
    fetcher = SnapshotFetcher(client, sleep=sleeps.append, cache=SnapshotCache(180, clock=clock))
    client.get_public.return_value = DEPTH_PAYLOAD
    fetcher.fetch_order_book("BTCUSDT")

    client.get_public.side_effect = ServiceUnavailableError("down")
    clock.now += 181

    with pytest.raises(ServiceUnavailableError):
        fetcher.fetch_order_book("BTCUSDT")


def test_cache_keyed_by_request(client, sleeps):
    fetcher = SnapshotFetcher(client, sleep=sleeps.append, cache=SnapshotCache())
    client.get_public.return_value = DEPTH_PAYLOAD
    fetcher.fetch_order_book("BTCUSDT")

    client.get_public.side_effect = ServiceUnavailableError("down")

    with pytest.raises(ServiceUnavailableError):
        fetcher.fetch_order_book("ETHUSDT")
