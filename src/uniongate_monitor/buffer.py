"""Bounded, append-only log buffers.

A :class:`LogBuffer` is a sliding window over the most recent entries: when
full, appending evicts exactly the oldest entry.  Every appended entry is
stamped with a per-buffer ``arrival_order`` (strictly increasing, never
reset) and a local ``received_at`` time.  The producer's own timestamp, if
any, is left untouched, since the two clocks can disagree.
"""

from __future__ import annotations

import dataclasses
import itertools
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Generic, Iterator, Optional, TypeVar

T = TypeVar("T")

DEFAULT_CAPACITY = 200


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def stamp_entry(entry: T, arrival_order: int, received_at: datetime) -> T:
    """Default stamper: copy *entry* with both arrival fields set."""
    return dataclasses.replace(entry, arrival_order=arrival_order, received_at=received_at)


class LogBuffer(Generic[T]):
    """FIFO-evicting buffer of frozen dataclass entries.

    Parameters
    ----------
    capacity:
        Maximum number of retained entries (must be positive).
    clock:
        Returns the ``received_at`` value for new entries.
    stamp:
        Builds the stored entry from ``(entry, arrival_order, received_at)``.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] = _utc_now,
        stamp: Callable[[T, int, datetime], T] = stamp_entry,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._entries: deque[T] = deque(maxlen=capacity)
        self._counter = itertools.count(1)
        self._clock = clock
        self._stamp = stamp

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def append(self, entry: T) -> T:
        """Stamp *entry* and append it, evicting the oldest entry when full.

        Returns the stamped copy that was stored.
        """
        stamped = self._stamp(entry, next(self._counter), self._clock())
        self._entries.append(stamped)
        return stamped

    def latest(self, n: Optional[int] = None) -> list[T]:
        """Return up to *n* most recent entries, newest first.

        ``None`` returns every entry.  The buffer is not modified.
        """
        if n is None:
            n = len(self._entries)
        if n <= 0:
            return []
        return list(itertools.islice(reversed(self._entries), n))

    def entries(self) -> list[T]:
        """All retained entries, oldest first."""
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Drop all entries.  Arrival numbering continues where it left off."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._entries))
