import pytest

from prototap.ring_buffer import RingBuffer


def test_push_keeps_insertion_order():
    """未满时按插入顺序保留"""
    ring = RingBuffer(3)
    for i in range(3):
        ring.push(i)
    assert ring.snapshot() == [0, 1, 2]
    assert len(ring) == 3


@pytest.mark.parametrize("capacity", [200, 500])
def test_overflow_drops_oldest(capacity):
    """容量 +1 次写入后最旧的一条被挤掉"""
    ring = RingBuffer(capacity)
    for i in range(capacity + 1):
        ring.push(i)
    items = ring.snapshot()
    assert len(items) == capacity
    assert items[0] == 1
    assert items[-1] == capacity


def test_snapshot_limit_returns_newest():
    ring = RingBuffer(10)
    for i in range(5):
        ring.push(i)
    assert ring.snapshot(2) == [3, 4]
    assert ring.snapshot(0) == []
    assert ring.snapshot(99) == [0, 1, 2, 3, 4]


def test_snapshot_is_a_copy():
    """快照与内部存储互不影响"""
    ring = RingBuffer(4)
    ring.push("a")
    snap = ring.snapshot()
    snap.append("b")
    assert ring.snapshot() == ["a"]


def test_clear_and_iter():
    ring = RingBuffer(2)
    ring.push(1)
    ring.push(2)
    assert list(ring) == [1, 2]
    ring.clear()
    assert len(ring) == 0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        RingBuffer(0)
