"""Fixed-size ring of reusable protocol slots."""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

from imrelay.comet.errors import RingEmptyError, RingFullError

logger = logging.getLogger(__name__)


class Ring:
    """Single-producer, single-consumer ring whose capacity is a power of two.

    ``set`` hands out the next free slot to fill and ``set_adv`` commits it;
    ``get`` hands out the oldest committed slot and ``get_adv`` releases it.
    """

    def __init__(self, num: int, factory: Callable[[], Any] = SimpleNamespace) -> None:
        if num < 0:
            raise ValueError("ring size must not be negative")
        if num & (num - 1):
            num = 1 << num.bit_length()
        self._capacity = num
        self._mask = num - 1
        self._slots = [factory() for _ in range(num)]
        self._rp = 0
        self._wp = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self) -> Any:
        """Return the oldest committed slot."""
        if self._rp == self._wp:
            raise RingEmptyError()
        return self._slots[self._rp & self._mask]

    def get_adv(self) -> None:
        self._rp += 1
        logger.debug("ring rp: %d, idx: %d", self._rp, self._rp & self._mask)

    def set(self) -> Any:
        """Return the next slot to write."""
        if self._wp - self._rp >= self._capacity:
            raise RingFullError()
        return self._slots[self._wp & self._mask]

    def set_adv(self) -> None:
        self._wp += 1
        logger.debug("ring wp: %d, idx: %d", self._wp, self._wp & self._mask)

    def reset(self) -> None:
        self._rp = 0
        self._wp = 0

    def __len__(self) -> int:
        return self._wp - self._rp