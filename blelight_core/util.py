"""Small utility helpers used by the device and bridge modules."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from .ports import Clock

T = TypeVar("T")

_UNSET = object()


def clamp(x: int, lo: int, hi: int) -> int:
    """Clamp ``x`` to the inclusive range ``[lo, hi]``.

    Returns ``lo`` if ``x < lo``, ``hi`` if ``x > hi``, otherwise ``x``.
    """
    if x < lo:
        return lo
    if x > hi:
        return hi
    return x


class Debouncer(Generic[T]):
    """Collapse repeated identical calls inside a coalescing window.

    Remembers when the wrapped function last ran and with which value.
    A call with the same value inside ``window`` seconds of that run is
    dropped; any other call runs immediately and restarts the window.
    """

    def __init__(
        self,
        func: Callable[[T], Any],
        window: float,
        clock: Clock = time.monotonic,
    ) -> None:
        self.func = func
        self.window = window
        self._clock = clock
        self._last_at: float | None = None
        self._last_value: Any = _UNSET

    def __call__(self, value: T) -> bool:
        """Run ``func(value)`` unless suppressed. Returns True if it ran."""
        now = self._clock()
        if (
            self._last_at is not None
            and value == self._last_value
            and now - self._last_at < self.window
        ):
            return False
        self._last_at = now
        self._last_value = value
        self.func(value)
        return True

    def reset(self) -> None:
        self._last_at = None
        self._last_value = _UNSET
