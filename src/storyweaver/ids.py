"""Creation-ordered identifiers."""

import threading
import time


class IdSource:
    """Hands out strictly increasing integer ids based on wall-clock milliseconds.

    The ids double as creation timestamps, so two ids requested within the
    same millisecond are bumped apart rather than colliding.
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = int(self._clock() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate

    def seed(self, used: int) -> None:
        """Make sure future ids are larger than an id loaded from storage."""
        with self._lock:
            self._last = max(self._last, used)
