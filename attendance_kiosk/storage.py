"""
Durable storage for the offline queue.

SQLite keeps queued deliveries across restarts and power loss. A new
connection is opened per operation and writes are serialized by a lock, so
the detection thread and the sync thread can both use one storage object.
"""

import json
import sqlite3
import threading
from typing import Dict, List, Protocol

from .logging_config import get_logger
from .models import PendingSyncItem

logger = get_logger(__name__)


class DurableQueueStorage(Protocol):
    """Persistence for PendingSyncItems, ordered by sequence."""

    def load(self) -> List[PendingSyncItem]:
        ...

    def add(self, item: PendingSyncItem) -> PendingSyncItem:
        """Persist a new item and return it with its sequence assigned."""
        ...

    def update(self, item: PendingSyncItem) -> None:
        ...

    def remove(self, idempotency_key: str) -> None:
        ...


class SqliteQueueStorage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS pending_sync (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        idempotency_key TEXT UNIQUE NOT NULL,
                        employee_id TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        attempt_count INTEGER NOT NULL DEFAULT 0,
                        next_retry_at REAL NOT NULL DEFAULT 0,
                        status TEXT NOT NULL DEFAULT 'pending',
                        last_error TEXT,
                        created_at REAL NOT NULL
                    )
                ''')
                conn.commit()
            finally:
                conn.close()

    def load(self) -> List[PendingSyncItem]:
        conn = self._connect()
        try:
            rows = conn.execute('SELECT * FROM pending_sync ORDER BY seq').fetchall()
        finally:
            conn.close()

        items = [
            PendingSyncItem(
                idempotency_key=row['idempotency_key'],
                employee_id=row['employee_id'],
                payload=json.loads(row['payload']),
                sequence=row['seq'],
                attempt_count=row['attempt_count'],
                next_retry_at=row['next_retry_at'],
                status=row['status'],
                last_error=row['last_error'],
                created_at=row['created_at'],
            )
            for row in rows
        ]
        if items:
            logger.info(f'Restored {len(items)} queued deliveries from {self.db_path}')
        return items

    def add(self, item: PendingSyncItem) -> PendingSyncItem:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    '''INSERT INTO pending_sync
                       (idempotency_key, employee_id, payload, attempt_count,
                        next_retry_at, status, last_error, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                    (item.idempotency_key, item.employee_id, json.dumps(item.payload),
                     item.attempt_count, item.next_retry_at, item.status,
                     item.last_error, item.created_at),
                )
                conn.commit()
                item.sequence = cursor.lastrowid
            finally:
                conn.close()
        return item

    def update(self, item: PendingSyncItem) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    '''UPDATE pending_sync
                       SET attempt_count = ?, next_retry_at = ?, status = ?, last_error = ?
                       WHERE idempotency_key = ?''',
                    (item.attempt_count, item.next_retry_at, item.status,
                     item.last_error, item.idempotency_key),
                )
                conn.commit()
            finally:
                conn.close()

    def remove(self, idempotency_key: str) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute('DELETE FROM pending_sync WHERE idempotency_key = ?', (idempotency_key,))
                conn.commit()
            finally:
                conn.close()


class MemoryQueueStorage:
    """Non-durable storage for tests and dry runs."""

    def __init__(self):
        self._items: Dict[str, PendingSyncItem] = {}
        self._next_seq = 1

    def load(self) -> List[PendingSyncItem]:
        return sorted(self._items.values(), key=lambda i: i.sequence)

    def add(self, item: PendingSyncItem) -> PendingSyncItem:
        item.sequence = self._next_seq
        self._next_seq += 1
        self._items[item.idempotency_key] = item
        return item

    def update(self, item: PendingSyncItem) -> None:
        self._items[item.idempotency_key] = item

    def remove(self, idempotency_key: str) -> None:
        self._items.pop(idempotency_key, None)
