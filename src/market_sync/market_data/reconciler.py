# src/market_sync/market_data/reconciler.py
"""Buffers pushed updates and merges them into the visible view.

A merge strategy decides how buffered items are held and folded into the
visible value; :class:`ThrottledReconciler` decides when. The three feeds use
the same reconciler with different strategies:

* order book: :class:`ReplaceLatest`, each push is a full snapshot and only
  the newest unapplied one survives until the next flush;
* trades: :class:`AppendBounded`, pushes accumulate newest first and are
  prepended to the visible tape on flush;
* candles: :class:`UpsertByKey`, applied immediately without throttling.
"""

import asyncio
import bisect
import logging
import time
from typing import Any, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from market_sync.logging_config import structured_log_extra
from market_sync.metrics import FeedMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")

DEFAULT_TICK_INTERVAL = 0.1
DEFAULT_UPDATE_THROTTLE = 0.25


class MergeStrategy(Generic[T, V]):
    """Holds pending items and folds them into the visible value."""

    def buffer(self, pending: Any, item: T) -> Any:
        raise NotImplementedError

    def empty_buffer(self) -> Any:
        raise NotImplementedError

    def has_pending(self, pending: Any) -> bool:
        raise NotImplementedError

    def merge(self, visible: Optional[V], pending: Any) -> V:
        raise NotImplementedError

    def changed(self, previous: Optional[V], merged: V) -> bool:
        return previous != merged


class ReplaceLatest(MergeStrategy[T, T]):
    """Buffer of one; the newest pushed value replaces the visible one."""

    def __init__(self, same: Optional[Callable[[Optional[T], T], bool]] = None):
        self._same = same

    def empty_buffer(self) -> Optional[T]:
        return None

    def buffer(self, pending: Optional[T], item: T) -> T:
        return item

    def has_pending(self, pending: Optional[T]) -> bool:
        return pending is not None

    def merge(self, visible: Optional[T], pending: T) -> T:
        return pending

    def changed(self, previous: Optional[T], merged: T) -> bool:
        if self._same is not None:
            return not self._same(previous, merged)
        return previous != merged


class AppendBounded(MergeStrategy[T, Tuple[T, ...]]):
    """
    Newest-first list of items. The pending buffer holds at most
    ``2 * max_items`` and the visible list at most ``max_items``. With
    ``order_key`` the merged list is re-sorted newest first; ties keep
    arrival order. With ``identity`` an item whose key is already present is
    dropped, keeping the pending (newer) copy; ``None`` keys are never merged.
    """

    def __init__(
        self,
        max_items: int,
        order_key: Optional[Callable[[T], Any]] = None,
        identity: Optional[Callable[[T], Any]] = None,
    ):
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        self.max_items = max_items
        self._order_key = order_key
        self._identity = identity

    @property
    def max_pending(self) -> int:
        return self.max_items * 2

    def empty_buffer(self) -> List[T]:
        return []

    def buffer(self, pending: List[T], item: T) -> List[T]:
        return ([item] + pending)[: self.max_pending]

    def has_pending(self, pending: List[T]) -> bool:
        return bool(pending)

    def merge(self, visible: Optional[Tuple[T, ...]], pending: List[T]) -> Tuple[T, ...]:
        combined = list(pending) + list(visible or ())
        if self._identity is not None:
            combined = self._dedupe(combined)
        if self._order_key is not None:
            combined.sort(key=self._order_key, reverse=True)
        return tuple(combined[: self.max_items])

    def _dedupe(self, items: List[T]) -> List[T]:
        seen = set()
        unique = []
        for item in items:
            key = self._identity(item)
            if key is not None:
                if key in seen:
                    continue
                seen.add(key)
            unique.append(item)
        return unique


class UpsertByKey(MergeStrategy[T, Tuple[T, ...]]):
    """
    Keeps items ordered by ``key``. An item whose key equals an existing one
    replaces it; a newer key is appended; an older key is inserted in order.
    """

    def __init__(self, key: Callable[[T], Any]):
        self._key = key

    def empty_buffer(self) -> List[T]:
        return []

    def buffer(self, pending: List[T], item: T) -> List[T]:
        return pending + [item]

    def has_pending(self, pending: List[T]) -> bool:
        return bool(pending)

    def upsert(self, series: Sequence[T], item: T) -> Tuple[T, ...]:
        items = list(series)
        key = self._key(item)
        if not items or self._key(items[-1]) < key:
            items.append(item)
        elif self._key(items[-1]) == key:
            items[-1] = item
        else:
            keys = [self._key(existing) for existing in items]
            index = bisect.bisect_left(keys, key)
            if index < len(items) and keys[index] == key:
                items[index] = item
            else:
                items.insert(index, item)
        return tuple(items)

    def merge(self, visible: Optional[Tuple[T, ...]], pending: List[T]) -> Tuple[T, ...]:
        merged: Tuple[T, ...] = tuple(visible or ())
        for item in pending:
            merged = self.upsert(merged, item)
        return merged

    def prepend_older(self, series: Sequence[T], older: Sequence[T]) -> Tuple[T, ...]:
        """Prepends items strictly older than the current earliest key."""
        if not series:
            return tuple(sorted(older, key=self._key))
        earliest = self._key(series[0])
        filtered = sorted((item for item in older if self._key(item) < earliest), key=self._key)
        return tuple(filtered) + tuple(series)


class ThrottledReconciler(Generic[T, V]):
    """
    Applies buffered updates to the visible value on a fixed tick, at most once
    per throttle window. With ``throttle=0`` every push is applied immediately.

    Publication runs only when the merged value differs from the previous one.
    Errors raised while merging or publishing are logged and swallowed so a bad
    update never stops the tick loop.
    """

    def __init__(
        self,
        strategy: MergeStrategy[T, V],
        publish: Callable[[Optional[V], V], None],
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        throttle: float = DEFAULT_UPDATE_THROTTLE,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[FeedMetrics] = None,
        name: str = "reconciler",
    ):
        self._strategy = strategy
        self._publish = publish
        self.tick_interval = tick_interval
        self.throttle = throttle
        self._clock = clock
        self._metrics = metrics
        self._name = name
        self._pending: Any = strategy.empty_buffer()
        self._visible: Optional[V] = None
        self._last_applied: Optional[float] = None

    @property
    def strategy(self) -> MergeStrategy[T, V]:
        return self._strategy

    @property
    def visible(self) -> Optional[V]:
        return self._visible

    @property
    def has_pending(self) -> bool:
        return self._strategy.has_pending(self._pending)

    @property
    def immediate(self) -> bool:
        return self.throttle <= 0

    def push(self, item: T) -> None:
        """Buffers an item; immediate reconcilers apply it straight away."""
        self._pending = self._strategy.buffer(self._pending, item)
        if self.immediate:
            self.flush()

    def tick(self, now: Optional[float] = None) -> bool:
        """Applies the buffer if the throttle window has elapsed. Returns True if applied."""
        if not self.has_pending:
            return False
        now = self._clock() if now is None else now
        if self._last_applied is not None and now - self._last_applied < self.throttle:
            return False
        self._last_applied = now
        self.flush()
        return True

    def flush(self) -> None:
        """Drains the buffer into the visible value regardless of the throttle."""
        pending = self._pending
        self._pending = self._strategy.empty_buffer()
        if not self._strategy.has_pending(pending):
            return
        try:
            merged = self._strategy.merge(self._visible, pending)
        except Exception:
            logger.exception(
                "Failed to merge buffered updates in %s.",
                self._name,
                extra=structured_log_extra(event="reconcile_merge_failed", channel=self._name),
            )
            return
        self._apply(merged)

    def replace(self, value: V) -> None:
        """Sets the visible value directly (initial snapshots, pagination)."""
        self._apply(value)

    def _apply(self, merged: V) -> None:
        previous = self._visible
        changed = self._strategy.changed(previous, merged)
        if self._metrics:
            self._metrics.record_flush(changed)
        if not changed:
            return
        self._visible = merged
        try:
            self._publish(previous, merged)
        except Exception:
            logger.exception(
                "Publishing reconciled view failed in %s.",
                self._name,
                extra=structured_log_extra(event="reconcile_publish_failed", channel=self._name),
            )

    def reset(self) -> None:
        """Discards buffered and visible data; used when the subscription changes."""
        self._pending = self._strategy.empty_buffer()
        self._visible = None
        self._last_applied = None

    async def run(self) -> None:
        """Tick loop; cancel the task to stop it."""
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()


__all__: List[str] = [
    "MergeStrategy",
    "ReplaceLatest",
    "AppendBounded",
    "UpsertByKey",
    "ThrottledReconciler",
]

