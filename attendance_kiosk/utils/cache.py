"""
Template cache module.

Keeps the last directory snapshot of enrolled employees on disk so a kiosk
that starts while the directory is unreachable can still recognize people.
"""

import hashlib
import os
import pickle
import time
from typing import Any, Dict, List, Optional, Tuple

from ..logging_config import get_logger

logger = get_logger(__name__)


def get_employees_hash(employees: List[Dict[str, Any]]) -> str:
    """
    Compute hash of the employee directory for cache validation.

    Args:
        employees: Employee records as returned by the directory

    Returns:
        MD5 hash string
    """
    digest = hashlib.md5()
    for emp in sorted(employees, key=lambda e: str(e.get('id', ''))):
        digest.update(str(emp.get('id', '')).encode())
        digest.update(repr(emp.get('face_encodings')).encode())
    return digest.hexdigest()


def save_cache(employees: List[Dict[str, Any]], emp_hash: str, cache_file: str) -> None:
    """
    Save directory snapshot to file.

    Args:
        employees: Employee records with face encodings
        emp_hash: Hash of the records
        cache_file: Path to cache file
    """
    try:
        cache_data = {
            'employees': employees,
            'hash': emp_hash,
            'timestamp': time.time(),
        }
        with open(cache_file, 'wb') as f:
            pickle.dump(cache_data, f)

        logger.info(f'Template cache saved for {len(employees)} employees')

    except OSError as e:
        logger.error(f'Failed to save template cache: {e}')


def load_cache(cache_file: str) -> Tuple[Optional[List[Dict[str, Any]]], Optional[str]]:
    """
    Load directory snapshot from file.

    Returns:
        Tuple of (employees, hash) or (None, None) if the cache is missing or unreadable
    """
    if not os.path.exists(cache_file):
        logger.debug('Template cache file not found')
        return None, None

    try:
        with open(cache_file, 'rb') as f:
            cache_data = pickle.load(f)

        age = time.time() - cache_data.get('timestamp', 0)
        logger.info(f'Template cache found (age: {age:.0f} seconds)')
        return cache_data.get('employees'), cache_data.get('hash')

    except (OSError, pickle.UnpicklingError, EOFError, AttributeError) as e:
        logger.error(f'Failed to load template cache: {e}')
        return None, None
