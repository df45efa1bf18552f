"""Lightweight in-memory counters for grid engine activity."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Deque, Dict, Optional


class EngineMetrics:
    """Thread-safe counters updated by the reconciliation engine."""

    def __init__(self, max_errors: int = 50) -> None:
        self._lock = Lock()
        self._recent_errors: Deque[Dict[str, str]] = deque(maxlen=max_errors)
        self.passes = 0
        self.placements = 0
        self.placement_failures = 0
        self.cancellations = 0
        self.cancel_failures = 0
        self.fills = 0
        self.sells_placed = 0
        self.errors = 0
        self.last_pass_at: Optional[str] = None

    def record_pass(self) -> None:
        with self._lock:
            self.passes += 1
            self.last_pass_at = datetime.now(timezone.utc).isoformat()

    def record_placement(self) -> None:
        with self._lock:
            self.placements += 1

    def record_placement_failure(self, message: str) -> None:
        with self._lock:
            self.placement_failures += 1
            self._recent_errors.appendleft(self._format_error(message))

    def record_cancellation(self) -> None:
        with self._lock:
            self.cancellations += 1

    def record_cancel_failure(self, message: str) -> None:
        with self._lock:
            self.cancel_failures += 1
            self._recent_errors.appendleft(self._format_error(message))

    def record_fill(self) -> None:
        with self._lock:
            self.fills += 1

    def record_sell_placed(self) -> None:
        with self._lock:
            self.sells_placed += 1

    def record_error(self, message: str) -> None:
        """Store a pass-level error in the rolling buffer."""

        with self._lock:
            self.errors += 1
            self._recent_errors.appendleft(self._format_error(message))

    def snapshot(self) -> Dict[str, object]:
        """Return a read-only snapshot of current counters."""

        with self._lock:
            return {
                "passes": self.passes,
                "placements": self.placements,
                "placement_failures": self.placement_failures,
                "cancellations": self.cancellations,
                "cancel_failures": self.cancel_failures,
                "fills": self.fills,
                "sells_placed": self.sells_placed,
                "errors": self.errors,
                "last_pass_at": self.last_pass_at,
                "recent_errors": list(self._recent_errors),
            }

    @staticmethod
    def _format_error(message: str) -> Dict[str, str]:
        return {
            "at": datetime.now(timezone.utc).isoformat(),
            "message": message,
        }


__all__ = ["EngineMetrics"]
