"""Bounded history of completed sample sets."""

from __future__ import annotations

from collections import deque

from drmstat._types import SampleSet


class History:
    """Ring buffer backed by collections.deque.

    CPython's GIL makes deque.append atomic, so the sampler thread can append
    while a consumer takes a ``snapshot()`` without explicit locking.
    """

    def __init__(self, maxsize: int) -> None:
        self._buffer: deque[SampleSet] = deque(maxlen=maxsize)
        self._drop_count: int = 0
        self._maxsize = maxsize

    def append(self, sample: SampleSet) -> None:
        """Add a sample set. Oldest one is dropped if full."""
        if len(self._buffer) == self._maxsize:
            self._drop_count += 1
        self._buffer.append(sample)

    def snapshot(self) -> list[SampleSet]:
        """Copy of the buffered sample sets, oldest first."""
        return list(self._buffer)

    def latest(self) -> SampleSet | None:
        try:
            return self._buffer[-1]
        except IndexError:
            return None

    @property
    def drop_count(self) -> int:
        """Number of sample sets pushed out by newer ones."""
        return self._drop_count

    def __len__(self) -> int:
        return len(self._buffer)
