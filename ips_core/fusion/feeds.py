"""
Producer feeds.

Producers (radio scanner, inertial sampler, visual tracker) hand values to
the pipeline through these containers and never wait on the fusion
engine. Each container holds its own short lock; the pipeline tick is the
only consumer.

- LatestValueSlot: single slot, newer values replace unconsumed ones.
- BoundedFeed: FIFO with a fixed capacity, the oldest entry is discarded
  on overflow. Used where every sample matters (step detection).
"""

from collections import deque
from typing import Generic, List, Optional, TypeVar
import threading

from ips_core.metrics import get_metrics


T = TypeVar('T')


class LatestValueSlot(Generic[T]):
    """
    Thread-safe single-value slot.

    Usage:
        slot = LatestValueSlot('visual')
        slot.put(delta)          # producer thread
        latest = slot.take()     # tick; None if nothing new
    """

    def __init__(self, name: str = 'slot'):
        self.name = name
        self.metrics = get_metrics()
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._fresh = False

    def put(self, value: T) -> bool:
        """
        Store a value.

        Returns:
            True if an unconsumed value was overwritten
        """
        with self._lock:
            overwritten = self._fresh
            self._value = value
            self._fresh = True
        if overwritten:
            self.metrics.increment_drop('feed_overwrite')
        return overwritten

    def take(self) -> Optional[T]:
        """Consume the latest value (None if nothing new since the last take)."""
        with self._lock:
            if not self._fresh:
                return None
            self._fresh = False
            return self._value

    def peek(self) -> Optional[T]:
        """Latest value without consuming it."""
        with self._lock:
            return self._value

    @property
    def has_value(self) -> bool:
        with self._lock:
            return self._fresh

    def clear(self):
        with self._lock:
            self._value = None
            self._fresh = False


class BoundedFeed(Generic[T]):
    """
    Thread-safe bounded FIFO.

    Usage:
        feed = BoundedFeed('inertial', capacity=512)
        feed.put(sample)          # producer thread
        for sample in feed.drain():
            ...
    """

    def __init__(self, name: str = 'feed', capacity: int = 512):
        if capacity < 1:
            raise ValueError(f"Capacity must be positive: {capacity}")
        self.name = name
        self.metrics = get_metrics()
        self._lock = threading.Lock()
        self._items = deque(maxlen=capacity)

    def put(self, item: T) -> bool:
        """
        Append an item.

        Returns:
            True if the oldest item was discarded to make room
        """
        with self._lock:
            overflow = len(self._items) == self._items.maxlen
            self._items.append(item)
        if overflow:
            self.metrics.increment_drop('feed_overwrite')
        return overflow

    def drain(self) -> List[T]:
        """Remove and return all queued items, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self):
        with self._lock:
            self._items.clear()
