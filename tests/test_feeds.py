"""
Unit tests for the producer feeds.

Tests cover:
- LatestValueSlot put/take/overwrite semantics
- BoundedFeed FIFO order, overflow and drain
- Concurrent producers
"""

import threading

import pytest

from ips_core.fusion import BoundedFeed, LatestValueSlot


class TestLatestValueSlot:
    """Tests for the single-value slot."""

    def test_empty_take(self):
        """Test that an empty slot yields None."""
        slot = LatestValueSlot('test')

        assert slot.take() is None
        assert not slot.has_value

    def test_put_take(self):
        """Test that a value is consumed exactly once."""
        slot = LatestValueSlot('test')

        assert slot.put(1) is False
        assert slot.has_value
        assert slot.take() == 1
        assert slot.take() is None
        assert slot.peek() == 1

    def test_overwrite(self, clean_metrics):
        """Test that a newer value replaces an unconsumed one."""
        slot = LatestValueSlot('test')
        slot.put(1)

        assert slot.put(2) is True
        assert slot.take() == 2
        assert clean_metrics.get_drop_count('feed_overwrite') == 1

    def test_no_overwrite_after_take(self, clean_metrics):
        """Test that putting after a take is not an overwrite."""
        slot = LatestValueSlot('test')
        slot.put(1)
        slot.take()

        assert slot.put(2) is False
        assert clean_metrics.get_drop_count('feed_overwrite') == 0

    def test_clear(self):
        slot = LatestValueSlot('test')
        slot.put(1)

        slot.clear()

        assert slot.take() is None
        assert slot.peek() is None


class TestBoundedFeed:
    """Tests for the bounded FIFO."""

    def test_fifo_order(self):
        """Test that drain returns items oldest first."""
        feed = BoundedFeed('test', capacity=4)
        for i in range(3):
            feed.put(i)

        assert len(feed) == 3
        assert feed.drain() == [0, 1, 2]
        assert len(feed) == 0
        assert feed.drain() == []

    def test_overflow_discards_oldest(self, clean_metrics):
        """Test that the oldest item is dropped on overflow."""
        feed = BoundedFeed('test', capacity=3)
        overflows = [feed.put(i) for i in range(5)]

        assert overflows == [False, False, False, True, True]
        assert feed.drain() == [2, 3, 4]
        assert clean_metrics.get_drop_count('feed_overwrite') == 2

    def test_invalid_capacity(self):
        """Test that a non-positive capacity raises ValueError."""
        with pytest.raises(ValueError):
            BoundedFeed('test', capacity=0)

    def test_clear(self):
        feed = BoundedFeed('test')
        feed.put('a')

        feed.clear()

        assert len(feed) == 0

    def test_concurrent_producers(self):
        """Test that items from several threads all arrive."""
        feed = BoundedFeed('test', capacity=10000)

        def produce(offset):
            for i in range(1000):
                feed.put(offset + i)

        threads = [threading.Thread(target=produce, args=(k * 1000,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        items = feed.drain()
        assert len(items) == 4000
        assert sorted(items) == list(range(4000))
