"""Background delivery of sample sets to consumers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Sequence

from drmstat._types import SampleSet

logger = logging.getLogger("drmstat.dispatch")

SampleHandler = Callable[[SampleSet], None]


class Dispatcher:
    """Daemon thread that hands queued sample sets to handlers, in order.

    ``submit`` never blocks the sampler. When ``handlers`` fall behind by
    more than ``max_pending`` sets, the oldest pending ones are dropped.
    ``lossless`` handlers (the recorder) have their own unbounded queue and
    see every set.
    """

    def __init__(
        self,
        handlers: Sequence[SampleHandler],
        *,
        lossless: Sequence[SampleHandler] = (),
        max_pending: int = 64,
        flush_interval_ms: int = 1000,
    ) -> None:
        self._handlers = list(handlers)
        self._lossless_handlers = list(lossless)
        self._pending: deque[SampleSet] = deque(maxlen=max_pending)
        self._lossless: deque[SampleSet] = deque()
        self._max_pending = max_pending
        self._drop_count = 0
        self._flush_interval_s = flush_interval_ms / 1000.0
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def submit(self, sample: SampleSet) -> None:
        if self._lossless_handlers:
            self._lossless.append(sample)
        if self._handlers:
            if len(self._pending) == self._max_pending:
                self._drop_count += 1
            self._pending.append(sample)
        self._wake.set()

    def start(self) -> None:
        """Start the delivery loop."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="drmstat-dispatch", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal stop and deliver what is still pending."""
        self._stop_event.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._flush()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(timeout=self._flush_interval_s)
            self._wake.clear()
            self._flush()

    def _flush(self) -> None:
        self._drain(self._lossless, self._lossless_handlers)
        self._drain(self._pending, self._handlers)

    @staticmethod
    def _drain(queue: deque[SampleSet], handlers: list[SampleHandler]) -> None:
        while True:
            try:
                sample = queue.popleft()
            except IndexError:
                return
            for handler in handlers:
                try:
                    handler(sample)
                except Exception:  # noqa: BLE001
                    logger.warning(
                        "Handler %r failed on iteration %d", handler, sample.iteration,
                        exc_info=True,
                    )

    @property
    def drop_count(self) -> int:
        return self._drop_count

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
