"""
Shared fixtures: in-memory ledger, camera and extractor fakes, a manual clock.

Nothing here touches a real camera, model or network.
"""

from dataclasses import replace
from typing import Dict, List, Optional

import numpy as np
import pytest

from attendance_kiosk.attendance import advance_status, decide_attendance_action
from attendance_kiosk.config import load_config
from attendance_kiosk.employees import TemplateStore
from attendance_kiosk.errors import (CameraUnavailableError, DescriptorExtractionError,
                                     LedgerRejectedError, LedgerUnavailableError)
from attendance_kiosk.ledger import ActionHint, DeviceRegistration
from attendance_kiosk.models import (ActionType, DeviceIdentity, Employee, EmployeeCurrentStatus,
                                     FaceTemplate)
from attendance_kiosk.network import NetworkMonitor
from attendance_kiosk.offline_queue import OfflineQueue
from attendance_kiosk.recognition.extractor import DetectedFace
from attendance_kiosk.recognition.quality import FaceRegion
from attendance_kiosk.storage import MemoryQueueStorage

DIM = 512
LOCATION_A = 'loc-a'
LOCATION_B = 'loc-b'


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """
    Ledger that applies each idempotency key at most once and derives
    employee status from the events it applied.
    """

    def __init__(self, monitor: Optional[NetworkMonitor] = None):
        self.monitor = monitor or NetworkMonitor()
        self.online = True
        self.statuses: Dict[str, EmployeeCurrentStatus] = {}
        self.applied: List[dict] = []
        self.delivery_calls: List[str] = []
        self.reject_actions = set()
        self.hint_error: Optional[Exception] = None
        self.hint_calls = 0
        self.records: List[dict] = []
        self.saved_templates: Dict[str, dict] = {}
        self.fail_save = False
        self.audit_log: List[dict] = []
        self.heartbeats: List[dict] = []
        self.devices: Dict[str, DeviceIdentity] = {}
        self._seen_keys = set()

    def _check_online(self) -> None:
        if not self.online:
            self.monitor.mark_offline('fake ledger offline')
            raise LedgerUnavailableError('connection refused')
        self.monitor.mark_online()

    # attendance
    def get_employee_status(self, employee_id: str) -> EmployeeCurrentStatus:
        self._check_online()
        return self.statuses.get(employee_id, EmployeeCurrentStatus.absent())

    def determine_attendance_action(self, employee_id: str, location_id: str) -> ActionHint:
        self._check_online()
        self.hint_calls += 1
        if self.hint_error is not None:
            raise self.hint_error
        decision = decide_attendance_action(
            self.statuses.get(employee_id, EmployeeCurrentStatus.absent()), location_id,
        )
        if decision.is_transfer:
            return ActionHint('location_transfer', '')
        if decision.primary == ActionType.TEMP_RETURN:
            return ActionHint('temp_return', '', temp_exit_id=decision.actions[0].temp_exit_id)
        if decision.primary == ActionType.CLOCK_OUT:
            return ActionHint('clock_out', '')
        return ActionHint('clock_in', '')

    def deliver(self, payload: dict, idempotency_key: str) -> str:
        self.delivery_calls.append(idempotency_key)
        self._check_online()
        if payload['action'] in self.reject_actions:
            raise LedgerRejectedError(f"{payload['action']} not allowed")
        if idempotency_key in self._seen_keys:
            return 'Already recorded'
        self._seen_keys.add(idempotency_key)
        self.applied.append(dict(payload, idempotency_key=idempotency_key))
        employee_id = payload['employee_id']
        self.statuses[employee_id] = advance_status(
            self.statuses.get(employee_id, EmployeeCurrentStatus.absent()), payload,
        )
        return 'ok'

    def actions_for(self, employee_id: str) -> List[str]:
        return [p['action'] for p in self.applied if p['employee_id'] == employee_id]

    # directory
    def fetch_enrolled_employees(self) -> List[dict]:
        self._check_online()
        return [r for r in self.records if r.get('face_registered')]

    def fetch_employee(self, employee_id: str) -> Optional[dict]:
        self._check_online()
        for record in self.records:
            if str(record['id']) == employee_id:
                return record
        return None

    def save_face_template(self, employee_id, descriptors, quality_scores) -> None:
        self._check_online()
        if self.fail_save:
            raise LedgerUnavailableError('save timed out')
        self.saved_templates[employee_id] = {
            'descriptors': [np.asarray(d) for d in descriptors],
            'quality_scores': list(quality_scores),
        }

    def log_face_registration(self, employee_id, success, quality_score, attempt_number=1, error=None) -> None:
        self._check_online()
        self.audit_log.append({
            'employee_id': employee_id,
            'success': success,
            'quality_score': quality_score,
            'attempt_number': attempt_number,
            'error': error,
        })

    # devices
    def send_heartbeat(self, payload: dict) -> None:
        self._check_online()
        self.heartbeats.append(payload)

    def register_device(self, name, code, identifier, location_id) -> DeviceRegistration:
        self._check_online()
        device_id = f'dev-{len(self.devices) + 1}'
        self.devices[identifier] = DeviceIdentity(device_id, name, code, identifier, location_id)
        return DeviceRegistration(device_id, 'Device registered successfully')

    def lookup_device(self, identifier) -> Optional[DeviceIdentity]:
        self._check_online()
        return self.devices.get(identifier)


class FakeCamera:
    def __init__(self, fail_open: bool = False):
        self.fail_open = fail_open
        self.opened = False
        self.open_calls = 0
        self.reads = 0
        self.frame = np.zeros((480, 640, 3), dtype=np.uint8)

    @property
    def is_open(self) -> bool:
        return self.opened

    def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise CameraUnavailableError('Permission denied by operating system')
        self.opened = True

    def read(self):
        if not self.opened:
            raise CameraUnavailableError('Camera is not open')
        self.reads += 1
        return self.frame

    def release(self) -> None:
        self.opened = False


class FakeExtractor:
    """Returns the configured faces; extract() hands back each face's embedding."""

    def __init__(self, faces: Optional[List[DetectedFace]] = None):
        self.faces = faces or []

    def detect(self, frame):
        return list(self.faces)

    def extract(self, face: DetectedFace) -> np.ndarray:
        if face.embedding is None:
            raise DescriptorExtractionError('no embedding for this face')
        return face.embedding


class RecordingAnnouncer:
    def __init__(self):
        self.messages: List[str] = []

    def announce(self, message: str) -> None:
        self.messages.append(message)


def unit(rng: np.random.Generator, dim: int = DIM) -> np.ndarray:
    v = rng.normal(size=dim).astype(np.float32)
    return v / np.linalg.norm(v)


def variant(base: np.ndarray, rng: np.random.Generator, scale: float = 0.3) -> np.ndarray:
    """Same identity, another pose: the base plus a small random offset."""
    noise = unit(rng, base.shape[0]) * scale
    v = base + noise
    return (v / np.linalg.norm(v)).astype(np.float32)


def textured_crop(height: int = 230, width: int = 200, low: int = 60, high: int = 200) -> np.ndarray:
    """Checkerboard gray crop: mid brightness, sharp edges."""
    ys, xs = np.indices((height, width))
    board = ((ys // 8 + xs // 8) % 2).astype(np.uint8)
    return np.where(board == 1, high, low).astype(np.uint8)


def make_region(width: float = 200, height: float = 230, pose=(0.0, 0.0, 0.0),
                det_score: float = 0.9, crop: Optional[np.ndarray] = None,
                frame_size=(640, 480)) -> FaceRegion:
    x1, y1 = 100.0, 100.0
    return FaceRegion(
        bbox=np.array([x1, y1, x1 + width, y1 + height]),
        frame_width=frame_size[0],
        frame_height=frame_size[1],
        crop=textured_crop() if crop is None else crop,
        det_score=det_score,
        pose=pose,
    )


def make_face(embedding: Optional[np.ndarray], **region_kwargs) -> DetectedFace:
    return DetectedFace(region=make_region(**region_kwargs), embedding=embedding)


def enrolled_employee(emp_id: str, descriptors, name: str = '') -> Employee:
    return Employee(
        id=emp_id,
        code=f'EMP{emp_id}',
        full_name=name or f'Employee {emp_id}',
        face_registered=True,
        templates=[FaceTemplate(tuple(descriptors), tuple(0.9 for _ in descriptors))],
    )


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def config(tmp_path):
    return replace(
        load_config(),
        ledger_url='http://ledger.test',
        cache_file=str(tmp_path / 'cache.pkl'),
        queue_db=str(tmp_path / 'queue.db'),
        device_credential_file=str(tmp_path / 'device.json'),
        match_metric='cosine',
        match_threshold=0.6,
        match_ambiguity_epsilon=0.05,
        min_face_ratio=0.05,
        max_face_ratio=0.4,
        max_yaw_degrees=25.0,
        max_pitch_degrees=20.0,
        min_brightness=40.0,
        max_brightness=220.0,
        min_blur_variance=50.0,
        min_detection_score=0.6,
        confirm_hold_seconds=1.5,
        result_hold_seconds=3.0,
        cooldown_seconds=30.0,
        recognition_timeout=10.0,
        idle_reload_seconds=300.0,
        sync_max_attempts=3,
        sync_backoff_base=2.0,
        sync_backoff_max=60.0,
        heartbeat_retries=3,
        voice_enabled=False,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def monitor():
    return NetworkMonitor()


@pytest.fixture
def ledger(monitor):
    return FakeLedger(monitor)


@pytest.fixture
def queue(ledger, monitor, clock):
    return OfflineQueue(
        MemoryQueueStorage(), ledger.deliver, monitor=monitor,
        max_attempts=3, backoff_base=2.0, backoff_max=60.0, clock=clock,
    )


@pytest.fixture
def device():
    return DeviceIdentity(
        device_id='dev-1', name='Lobby kiosk', code='LOBBY-1',
        identifier='abc123', location_id=LOCATION_A,
    )


@pytest.fixture
def store():
    return TemplateStore()
