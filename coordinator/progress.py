"""Aggregated, rate-limited progress reporting for parallel transfers."""

import threading
import time
from typing import Callable, Dict, Optional

from common.constants import PROGRESS_INTERVAL_SECONDS
from common.logging_config import get_logger

logger = get_logger(__name__)

ProgressListener = Callable[[int, int], None]


def log_progress(label: str) -> ProgressListener:
    """Listener that logs '<label>: <done>/<total> bytes'."""
    def listener(done: int, total: int) -> None:
        logger.info(f"{label}: {done}/{total} bytes")
    return listener


class ThrottledProgress:
    """
    Sums per-slot byte counters and notifies a listener at most once per interval.

    update() may be called from transfer threads.
    """

    def __init__(
        self,
        total: int,
        listener: Optional[ProgressListener] = None,
        interval: float = PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.total = total
        self.listener = listener
        self.interval = interval
        self._clock = clock
        self._loaded: Dict[int, int] = {}
        self._last_emit: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def done(self) -> int:
        with self._lock:
            return sum(self._loaded.values())

    def update(self, slot: int, loaded: int) -> None:
        """Record the cumulative bytes transferred by one slot."""
        with self._lock:
            self._loaded[slot] = loaded
            now = self._clock()
            if self._last_emit is not None and now - self._last_emit < self.interval:
                return
            self._last_emit = now
            done = sum(self._loaded.values())
        self._emit(done)

    def finish(self) -> None:
        """Emit the final value regardless of the interval."""
        self._emit(self.done)

    def _emit(self, done: int) -> None:
        if self.listener is not None:
            self.listener(done, self.total)
