"""
Per-employee cooldown.

Consecutive camera frames of the same person must not produce a second
attendance event. After an employee has been processed (success or
error) further recognitions of them are ignored for the cooldown window.
"""

import threading
from typing import Dict


class CooldownTracker:
    def __init__(self, cooldown_seconds: float):
        self.cooldown_seconds = cooldown_seconds
        self._lock = threading.Lock()
        self._last_processed: Dict[str, float] = {}

    def mark(self, employee_id: str, now: float) -> None:
        with self._lock:
            self._last_processed[employee_id] = now

    def is_cooling_down(self, employee_id: str, now: float) -> bool:
        with self._lock:
            last = self._last_processed.get(employee_id)
        return last is not None and now - last < self.cooldown_seconds

    def remaining(self, employee_id: str, now: float) -> float:
        with self._lock:
            last = self._last_processed.get(employee_id)
        if last is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (now - last))

    def prune(self, now: float) -> None:
        """Forget employees whose window has passed."""
        with self._lock:
            self._last_processed = {
                emp_id: ts for emp_id, ts in self._last_processed.items()
                if now - ts < self.cooldown_seconds
            }
