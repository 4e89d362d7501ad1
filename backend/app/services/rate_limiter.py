from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock


class RequestPacer:
    """Keeps a minimum interval between consecutive outbound requests.

    The first request goes out immediately. Later ones sleep only for the part
    of the interval that has not already elapsed. Clock and sleep are
    injectable so tests can run without real delays.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._last_request_at: float | None = None

    def wait(self) -> None:
        with self._lock:
            if self._last_request_at is not None and self._min_interval_seconds > 0:
                elapsed = self._clock() - self._last_request_at
                remaining = self._min_interval_seconds - elapsed
                if remaining > 0:
                    self._sleep(remaining)
            self._last_request_at = self._clock()
