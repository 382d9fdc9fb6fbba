import pytest

from imrelay.comet.errors import RingEmptyError, RingFullError
from imrelay.comet.ring import Ring


def test_capacity_is_smallest_power_of_two_at_least_num():
    for num in range(1, 130):
        cap = Ring(num).capacity
        assert cap >= num
        assert cap & (cap - 1) == 0
        assert cap < 2 * num


def test_power_of_two_kept():
    assert Ring(4).capacity == 4


def test_empty_get_raises():
    with pytest.raises(RingEmptyError):
        Ring(4).get()


def test_full_set_raises():
    ring = Ring(3)
    for _ in range(ring.capacity):
        ring.set()
        ring.set_adv()
    assert len(ring) == ring.capacity
    with pytest.raises(RingFullError):
        ring.set()


def test_fifo_order():
    ring = Ring(4, factory=dict)
    for n in range(3):
        slot = ring.set()
        slot["n"] = n
        ring.set_adv()
    out = []
    for _ in range(len(ring)):
        out.append(ring.get()["n"])
        ring.get_adv()
    assert out == [0, 1, 2]
    with pytest.raises(RingEmptyError):
        ring.get()


def test_set_without_advance_returns_same_slot():
    ring = Ring(2, factory=dict)
    first = ring.set()
    first["marker"] = 42
    second = ring.set()
    assert second["marker"] == 42
    assert len(ring) == 0


def test_slots_are_reused_after_wrap():
    ring = Ring(2)
    first = ring.set()
    for _ in range(ring.capacity):
        ring.set()
        ring.set_adv()
        ring.get()
        ring.get_adv()
    assert ring.set() is first


def test_reset_empties_ring():
    ring = Ring(2)
    ring.set()
    ring.set_adv()
    ring.reset()
    assert len(ring) == 0
    with pytest.raises(RingEmptyError):
        ring.get()


def test_zero_capacity_is_always_full_and_empty():
    ring = Ring(0)
    with pytest.raises(RingFullError):
        ring.set()
    with pytest.raises(RingEmptyError):
        ring.get()


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        Ring(-1)