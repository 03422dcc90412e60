"""
Announcement capability.

The runtime announces recognition results through this interface; the host
platform injects whatever voice or display channel it has.
"""

from typing import Protocol

from .logging_config import get_logger

logger = get_logger(__name__)


class Announcer(Protocol):
    def announce(self, message: str) -> None:
        ...


class LoggingAnnouncer:
    """Writes announcements to the log; used when no voice channel exists."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def announce(self, message: str) -> None:
        if self.enabled:
            logger.info(f'🔊 {message}')
