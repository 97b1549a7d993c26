import pytest

from market_sync.metrics import FeedMetrics


@pytest.fixture
def metrics():
    return FeedMetrics(max_errors=2)


def test_counters_start_at_zero(metrics: FeedMetrics):
    snapshot = metrics.snapshot()

    assert snapshot["messages_received"] == 0
    assert snapshot["reconnects_scheduled"] == 0
    assert snapshot["last_error"] is None
    assert snapshot["recent_errors"] == []


def test_record_flush_splits_applied_and_unchanged(metrics: FeedMetrics):
    metrics.record_flush()
    metrics.record_flush(changed=True)
    metrics.record_flush(changed=False)

    snapshot = metrics.snapshot()

    assert snapshot["flushes_applied"] == 2
    assert snapshot["flushes_unchanged"] == 1


def test_recent_errors_newest_first_and_bounded(metrics: FeedMetrics):
    metrics.record_malformed_message("first")
    metrics.record_snapshot_failure("second")
    metrics.record_stream_exhausted("third")

    snapshot = metrics.snapshot()

    assert snapshot["malformed_messages"] == 1
    assert snapshot["snapshot_failures"] == 1
    assert snapshot["streams_exhausted"] == 1
    assert snapshot["last_error"] == "third"
    assert [record["message"] for record in snapshot["recent_errors"]] == ["third", "second"]


def test_simple_counters(metrics: FeedMetrics):
    metrics.record_message()
    metrics.record_message()
    metrics.record_reconnect()
    metrics.record_rate_limit_retry()

    snapshot = metrics.snapshot()

    assert snapshot["messages_received"] == 2
    assert snapshot["reconnects_scheduled"] == 1
    assert snapshot["rate_limit_retries"] == 1
