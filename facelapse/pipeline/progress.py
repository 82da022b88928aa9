"""Non-blocking progress delivery from the encode worker to a caller callback."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_CLOSE = object()


class ProgressDispatcher:
    """Deliver fractional progress values to ``callback`` on a separate thread.

    ``report`` never blocks the caller. Values are clamped to [0, 1] and
    values lower than the last reported one are dropped, so the callback
    sees a monotonically increasing sequence.
    """

    def __init__(self, callback: ProgressCallback) -> None:
        self.callback = callback
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._last: Optional[float] = None
        self._thread = threading.Thread(target=self._run, name="facelapse-progress", daemon=True)
        self._thread.start()

    @property
    def last_value(self) -> Optional[float]:
        return self._last

    def report(self, value: float) -> None:
        value = min(max(float(value), 0.0), 1.0)
        if self._last is not None and value < self._last:
            return
        self._last = value
        self._queue.put_nowait(value)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            try:
                self.callback(item)
            except Exception:  # a broken listener must not stop the export
                logger.exception("Progress callback failed")

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver every queued value, then stop the dispatch thread."""
        self._queue.put_nowait(_CLOSE)
        self._thread.join(timeout)

    def __enter__(self) -> "ProgressDispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
