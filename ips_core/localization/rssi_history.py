"""
Fixed-capacity RSSI history.

Ring buffer (preallocated array + head index) holding the most recent raw
RSSI samples for one anchor. Push and evict are O(1) and memory is bounded
by the capacity.
"""

from typing import List, Optional

import numpy as np


DEFAULT_CAPACITY = 5


class RssiHistory:
    """
    Ring buffer of recent RSSI samples (dBm).

    Usage:
        history = RssiHistory()
        history.push(-65.0)
        history.push(-67.0)

        filtered = history.mean()
        variance = history.variance()   # None until 2 samples
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Capacity must be positive: {capacity}")

        self._capacity = capacity
        self._buffer = np.zeros(capacity, dtype=float)
        self._head = 0      # Next write position
        self._size = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._size

    @property
    def is_full(self) -> bool:
        return self._size == self._capacity

    def push(self, rssi_dbm: float):
        """Append a sample, overwriting the oldest one when full."""
        self._buffer[self._head] = rssi_dbm
        self._head = (self._head + 1) % self._capacity
        if self._size < self._capacity:
            self._size += 1

    def values(self) -> List[float]:
        """Samples oldest-first."""
        if self._size < self._capacity:
            return self._buffer[:self._size].tolist()
        return np.roll(self._buffer, -self._head).tolist()

    def latest(self) -> Optional[float]:
        """Most recent sample, None when empty."""
        if self._size == 0:
            return None
        return float(self._buffer[(self._head - 1) % self._capacity])

    def mean(self) -> Optional[float]:
        """Moving average of the buffered samples."""
        if self._size == 0:
            return None
        return float(np.mean(self._buffer[:self._size]))

    def variance(self) -> Optional[float]:
        """Population variance; None with fewer than 2 samples."""
        if self._size < 2:
            return None
        return float(np.var(self._buffer[:self._size]))

    def clear(self):
        self._buffer[:] = 0.0
        self._head = 0
        self._size = 0
