# src/grid_bot/connection/clock.py

import threading
import time
from typing import Callable, Optional

SYNC_MAX_AGE_SECONDS = 600.0


def _local_ms() -> int:
    return int(time.time() * 1000)


class ServerClock:
    """
    Tracks the offset between local time and Binance server time.
    Signed requests use :meth:`timestamp` so they stay inside recvWindow even
    when the host clock drifts.
    """

    def __init__(
        self,
        fetch_server_time: Callable[[], int],
        max_age_seconds: float = SYNC_MAX_AGE_SECONDS,
        local_ms: Callable[[], int] = _local_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._fetch_server_time = fetch_server_time
        self._max_age = max_age_seconds
        self._local_ms = local_ms
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._offset_ms: Optional[int] = None
        self._synced_at: Optional[float] = None

    @property
    def offset_ms(self) -> Optional[int]:
        with self._lock:
            return self._offset_ms

    def needs_sync(self) -> bool:
        with self._lock:
            if self._offset_ms is None or self._synced_at is None:
                return True
            return self._monotonic() - self._synced_at >= self._max_age

    def sync(self) -> int:
        """
        Fetches server time and stores ``server - local`` as the offset.
        The network call happens outside the lock.
        """
        server_ms = int(self._fetch_server_time())
        offset = server_ms - self._local_ms()
        with self._lock:
            self._offset_ms = offset
            self._synced_at = self._monotonic()
        return offset

    def ensure_synced(self) -> None:
        if self.needs_sync():
            self.sync()

    def timestamp(self) -> int:
        """Returns server-corrected epoch milliseconds."""
        with self._lock:
            offset = self._offset_ms or 0
        return self._local_ms() + offset
