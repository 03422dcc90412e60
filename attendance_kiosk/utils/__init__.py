"""
Utility modules package.
"""

from .cache import load_cache, save_cache, get_employees_hash
from .timing import backoff_delay, format_uptime, retry_with_backoff
from .scheduler import PeriodicTask, Scheduler

__all__ = [
    'load_cache',
    'save_cache',
    'get_employees_hash',
    'backoff_delay',
    'format_uptime',
    'retry_with_backoff',
    'PeriodicTask',
    'Scheduler',
]
