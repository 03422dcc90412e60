"""
Network availability signal shared by the ledger client, the offline queue
and the heartbeat.
"""

import threading
from typing import Callable, List, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


class NetworkMonitor:
    """Tracks whether the ledger was reachable on the last attempt."""

    def __init__(self, online: bool = True):
        self._lock = threading.Lock()
        self._online = online
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        """Call `listener(online)` on every transition."""
        self._listeners.append(listener)

    def mark_online(self) -> None:
        self._set(True)

    def mark_offline(self, reason: Optional[str] = None) -> None:
        self._set(False, reason)

    def _set(self, online: bool, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._online == online:
                return
            self._online = online

        if online:
            logger.info('🌐 Ledger reachable again')
        else:
            logger.warning(f'📴 Ledger unreachable{f": {reason}" if reason else ""}')
        for listener in self._listeners:
            listener(online)
