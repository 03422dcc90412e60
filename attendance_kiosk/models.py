"""
Domain records shared by the recognition engine, the decision logic and
the offline queue.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class ActionType(str, Enum):
    """Attendance event types understood by the ledger."""
    CLOCK_IN = 'clock_in'
    CLOCK_OUT = 'clock_out'
    TRANSFER_IN = 'transfer_in'
    TRANSFER_OUT = 'transfer_out'
    TEMP_EXIT = 'temp_exit'
    TEMP_RETURN = 'temp_return'
    BREAK_START = 'break_start'
    BREAK_END = 'break_end'


class EmployeeStatus(str, Enum):
    ABSENT = 'absent'
    PRESENT = 'present'
    ON_BREAK = 'on_break'
    TEMPORARY_EXIT = 'temporary_exit'


@dataclass(frozen=True)
class EmployeeCurrentStatus:
    """
    Status as derived by the ledger from its event history.

    The kiosk reads this; it never rebuilds it from events on its own.
    """
    status: EmployeeStatus
    location_id: Optional[str] = None
    last_event_type: Optional[ActionType] = None
    temp_exit_id: Optional[str] = None
    exit_reason: Optional[str] = None
    break_id: Optional[str] = None

    @classmethod
    def absent(cls) -> 'EmployeeCurrentStatus':
        return cls(status=EmployeeStatus.ABSENT)


@dataclass(frozen=True)
class FaceTemplate:
    """One enrolled descriptor per pose, each with the quality it was captured at."""
    descriptors: Tuple[np.ndarray, ...]
    quality_scores: Tuple[float, ...]
    enrolled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if len(self.descriptors) != len(self.quality_scores):
            raise ValueError('Every descriptor needs a quality score')


@dataclass
class Employee:
    id: str
    code: str
    full_name: str = ''
    is_active: bool = True
    face_registered: bool = False
    templates: List[FaceTemplate] = field(default_factory=list)

    def __post_init__(self):
        if not self.face_registered and self.templates:
            raise ValueError(f'Employee {self.id} has templates but face_registered is false')


@dataclass(frozen=True)
class AttendanceEvent:
    """Immutable decided event; the unit the offline queue delivers."""
    employee_id: str
    device_id: str
    location_id: str
    type: ActionType
    timestamp: datetime
    confidence: Optional[float] = None
    temp_exit_id: Optional[str] = None
    link_id: Optional[str] = None
    notes: Optional[str] = None
    extra: Tuple[Tuple[str, Any], ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'employee_id': self.employee_id,
            'device_id': self.device_id,
            'location_id': self.location_id,
            'action': self.type.value,
            'timestamp': self.timestamp.isoformat(),
            'confidence': self.confidence,
            'temp_exit_id': self.temp_exit_id,
            'link_id': self.link_id,
            'notes': self.notes,
        }
        payload.update(dict(self.extra))
        return payload


@dataclass
class PendingSyncItem:
    """
    Queued delivery of one AttendanceEvent.

    The idempotency key is fixed at enqueue time and sent unchanged on
    every retry.
    """
    idempotency_key: str
    employee_id: str
    payload: Dict[str, Any]
    sequence: int = 0
    attempt_count: int = 0
    next_retry_at: float = 0.0
    status: str = 'pending'
    last_error: Optional[str] = None
    created_at: float = 0.0

    @property
    def is_failed(self) -> bool:
        return self.status == 'failed'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'idempotency_key': self.idempotency_key,
            'employee_id': self.employee_id,
            'action': self.payload.get('action'),
            'sequence': self.sequence,
            'attempt_count': self.attempt_count,
            'next_retry_at': self.next_retry_at,
            'status': self.status,
            'last_error': self.last_error,
        }


@dataclass
class DeviceIdentity:
    device_id: str
    name: str
    code: str
    identifier: str
    location_id: str
    location_name: str = ''
    online: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'name': self.name,
            'code': self.code,
            'identifier': self.identifier,
            'location_id': self.location_id,
            'location_name': self.location_name,
        }
