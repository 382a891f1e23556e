from __future__ import annotations

from collections import deque
from collections.abc import Callable, Hashable, Sequence
from typing import Any, Generic, TypeVar

from loguru import logger

MAX_BUFFER_LINES = 10_000

E = TypeVar("E")


def _event_lines(event: Any) -> Sequence[Any]:
    return event.lines


class BoundedRingBuffer(Generic[E]):
    """Per-key event buffer with a hard bound on the number of retained units.

    Units are the items an event expands to (lines, for output events). When a
    key goes over ``max_units`` whole events are evicted from the head until
    the bound holds or a single event remains; an event is never split.
    """

    def __init__(
        self,
        max_units: int = MAX_BUFFER_LINES,
        *,
        units_of: Callable[[E], Sequence[Any]] = _event_lines,
    ):
        self._max_units = max(1, max_units)
        self._units_of = units_of
        self._events: dict[Hashable, deque[E]] = {}
        self._totals: dict[Hashable, int] = {}

    @property
    def max_units(self) -> int:
        return self._max_units

    def ensure(self, key: Hashable) -> None:
        if key not in self._events:
            self._events[key] = deque()
            self._totals[key] = 0

    def append(self, key: Hashable, event: E) -> None:
        self.ensure(key)
        events = self._events[key]
        events.append(event)
        self._totals[key] += len(self._units_of(event))

        evicted = 0
        while self._totals[key] > self._max_units and len(events) > 1:
            oldest = events.popleft()
            self._totals[key] -= len(self._units_of(oldest))
            evicted += 1
        if evicted:
            logger.trace(f"Evicted {evicted} event(s) from buffer {key!r} ({self._totals[key]} units retained)")

    def read(self, key: Hashable) -> list[Any]:
        units: list[Any] = []
        for event in self._events.get(key, ()):
            units.extend(self._units_of(event))
        return units

    def events(self, key: Hashable) -> list[E]:
        return list(self._events.get(key, ()))

    def unit_count(self, key: Hashable) -> int:
        return self._totals.get(key, 0)

    def keys(self) -> list[Hashable]:
        return list(self._events)

    def clear(self, key: Hashable) -> None:
        self._events.pop(key, None)
        self._totals.pop(key, None)

    def clear_all(self) -> None:
        self._events.clear()
        self._totals.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._events
