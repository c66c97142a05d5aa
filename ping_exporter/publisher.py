"""
Latest-results holder shared by the sweep (single writer) and HTTP readers.
The ResultSet is immutable; publish() swaps the reference, readers keep whatever
snapshot they took. Age is measured on the publisher's own clock.
"""
import logging
import threading
import time
from typing import Callable, Optional

from ping_exporter.stats import ResultSet

logger = logging.getLogger("ping_exporter.publisher")


class ResultPublisher:
    def __init__(self, max_age: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._current: Optional[ResultSet] = None
        self._published_at = 0.0

    def publish(self, result_set: ResultSet) -> None:
        published_at = self._clock()
        with self._lock:
            self._current = result_set
            self._published_at = published_at
        logger.debug("Published result set with %d entries", len(result_set))

    def latest(self) -> Optional[ResultSet]:
        """Current snapshot, or None if nothing published yet or it has expired."""
        with self._lock:
            current, published_at = self._current, self._published_at
        if current is None:
            return None
        if self.max_age is not None and self._clock() - published_at > self.max_age:
            return None
        return current
