"""
Offline delivery queue.

Every decided attendance event is persisted with an idempotency key before
the network sees it, then delivered oldest-first:
- per employee, an item is never attempted while an earlier one of the same
  employee is waiting, so a clock-out cannot overtake its clock-in
- transport failures back off exponentially; after the maximum number of
  attempts the item becomes a permanent failure for an operator to resolve
- ledger rejections and malformed answers fail permanently at once
- the same key is sent on every retry so the ledger can deduplicate
"""

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .errors import LedgerContractError, LedgerRejectedError, LedgerUnavailableError
from .logging_config import get_logger
from .models import AttendanceEvent, PendingSyncItem
from .network import NetworkMonitor
from .storage import DurableQueueStorage
from .utils.timing import backoff_delay

logger = get_logger(__name__)

Deliver = Callable[[Dict, str], str]


@dataclass
class DrainReport:
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


class OfflineQueue:
    """
    Durable, ordered, idempotent delivery of attendance events.

    Args:
        storage: Durable backing store
        deliver: Callable(payload, idempotency_key) -> ledger message
        monitor: Shared network availability signal
        max_attempts: Attempts before an item is a permanent failure
        backoff_base / backoff_max: Retry delay bounds in seconds
        clock: Time source (seconds)
        on_permanent_failure: Called with the item when it fails for good
    """

    def __init__(self, storage: DurableQueueStorage, deliver: Deliver,
                 monitor: Optional[NetworkMonitor] = None, max_attempts: int = 8,
                 backoff_base: float = 2.0, backoff_max: float = 300.0,
                 clock: Callable[[], float] = time.time,
                 on_permanent_failure: Optional[Callable[[PendingSyncItem], None]] = None):
        self.storage = storage
        self.deliver = deliver
        self.monitor = monitor or NetworkMonitor()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.clock = clock
        self.on_permanent_failure = on_permanent_failure

        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._items: List[PendingSyncItem] = storage.load()
        self._delivery_listeners: List[Callable[[PendingSyncItem], None]] = []

        self.monitor.subscribe(self._on_network_change)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def subscribe_delivered(self, listener: Callable[[PendingSyncItem], None]) -> None:
        """Call `listener(item)` after the ledger has accepted an item."""
        self._delivery_listeners.append(listener)

    @property
    def wakeup(self) -> threading.Event:
        """Set whenever there is something new to deliver."""
        return self._wakeup

    # ------------------------------------------------------------------
    # Enqueue

    def enqueue(self, events: Iterable[AttendanceEvent]) -> List[PendingSyncItem]:
        """
        Persist decided events in order, each under a fresh idempotency key.

        Linked events (a transfer) are enqueued in one call so they are
        adjacent and ordered.
        """
        now = self.clock()
        added = []
        with self._lock:
            for event in events:
                item = PendingSyncItem(
                    idempotency_key=new_idempotency_key(),
                    employee_id=event.employee_id,
                    payload=event.to_payload(),
                    created_at=now,
                    next_retry_at=now,
                )
                item = self.storage.add(item)
                self._items.append(item)
                added.append(item)
                logger.info(
                    f"📥 Queued {item.payload['action']} for employee {item.employee_id} "
                    f"(key={item.idempotency_key[:8]})"
                )
        self._wakeup.set()
        return added

    # ------------------------------------------------------------------
    # Inspection

    def pending(self) -> List[PendingSyncItem]:
        with self._lock:
            return [i for i in self._items if not i.is_failed]

    def failed(self) -> List[PendingSyncItem]:
        with self._lock:
            return [i for i in self._items if i.is_failed]

    def pending_for(self, employee_id: str) -> List[PendingSyncItem]:
        with self._lock:
            return [i for i in self._items if i.employee_id == employee_id and not i.is_failed]

    def get(self, idempotency_key: str) -> Optional[PendingSyncItem]:
        with self._lock:
            for item in self._items:
                if item.idempotency_key == idempotency_key:
                    return item
        return None

    # ------------------------------------------------------------------
    # Delivery

    def drain(self) -> DrainReport:
        """
        Attempt every due item oldest-first.

        A transport failure ends the pass: the network is down and the
        remaining items would fail the same way.
        """
        report = DrainReport()
        if not self._drain_lock.acquire(blocking=False):
            return report

        try:
            self._wakeup.clear()
            with self._lock:
                snapshot = list(self._items)

            now = self.clock()
            blocked = set()

            for item in snapshot:
                if item.employee_id in blocked:
                    report.skipped += 1
                    continue
                if item.is_failed or item.next_retry_at > now:
                    blocked.add(item.employee_id)
                    report.skipped += 1
                    continue

                try:
                    message = self.deliver(item.payload, item.idempotency_key)
                except LedgerUnavailableError as e:
                    self._schedule_retry(item, str(e), report)
                    break
                except (LedgerRejectedError, LedgerContractError) as e:
                    self._fail(item, str(e))
                    report.failed += 1
                    blocked.add(item.employee_id)
                    continue

                self._remove(item)
                report.delivered += 1
                logger.info(
                    f"✅ Delivered {item.payload['action']} for employee {item.employee_id}: {message}"
                )
                for listener in self._delivery_listeners:
                    listener(item)
            if report.delivered or report.failed or report.retried:
                logger.debug(f'Drain: {report}')
            return report

        finally:
            self._drain_lock.release()

    def _schedule_retry(self, item: PendingSyncItem, error: str, report: DrainReport) -> None:
        item.attempt_count += 1
        item.last_error = error
        if item.attempt_count >= self.max_attempts:
            self._fail(item, error)
            report.failed += 1
            return

        delay = backoff_delay(item.attempt_count, self.backoff_base, self.backoff_max)
        item.next_retry_at = self.clock() + delay
        self.storage.update(item)
        report.retried += 1
        logger.warning(
            f"⏳ Delivery of {item.payload['action']} for employee {item.employee_id} failed "
            f"(attempt {item.attempt_count}/{self.max_attempts}), retrying in {delay:.0f}s"
        )

    def _fail(self, item: PendingSyncItem, error: str) -> None:
        item.status = 'failed'
        item.last_error = error
        self.storage.update(item)
        logger.error(
            f"🚨 Permanent delivery failure for {item.payload['action']} of employee "
            f"{item.employee_id} (key={item.idempotency_key}): {error}"
        )
        if self.on_permanent_failure:
            self.on_permanent_failure(item)

    def _remove(self, item: PendingSyncItem) -> None:
        self.storage.remove(item.idempotency_key)
        with self._lock:
            self._items = [i for i in self._items if i.idempotency_key != item.idempotency_key]

    # ------------------------------------------------------------------
    # Operator resolution

    def retry(self, idempotency_key: str) -> bool:
        """Put a failed item back into delivery with a fresh attempt budget."""
        item = self.get(idempotency_key)
        if item is None or not item.is_failed:
            return False
        item.status = 'pending'
        item.attempt_count = 0
        item.next_retry_at = self.clock()
        self.storage.update(item)
        logger.info(f'Operator requeued {idempotency_key}')
        self._wakeup.set()
        return True

    def discard(self, idempotency_key: str) -> bool:
        """Drop an item for good, unblocking later items of the same employee."""
        item = self.get(idempotency_key)
        if item is None:
            return False
        self._remove(item)
        logger.warning(f"Operator discarded {item.payload['action']} for employee {item.employee_id}")
        self._wakeup.set()
        return True

    def _on_network_change(self, online: bool) -> None:
        if not online:
            return
        now = self.clock()
        with self._lock:
            for item in self._items:
                if not item.is_failed and item.next_retry_at > now:
                    item.next_retry_at = now
                    self.storage.update(item)
        self._wakeup.set()
