"""
Kiosk runtime.

Coordinates the whole recognition pipeline on one kiosk:
- detection tick: camera -> quality -> descriptor -> matcher
- the UI-visible state machine (one KioskState, one source of truth)
- per-employee cooldown
- attendance decision and hand-off to the offline queue
- timers: detection, clock, heartbeat, sync drain, ledger hint checks,
  template reload, idle watchdog

    standby -> detecting -> recognizing -> confirming -> processing
        ^                                                   |
        +--------------- success | error <------------------+

Only the detection tick touches the camera, and ticks never overlap.
Network work runs on its own timers and never stalls the tick.
"""

import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .announcer import Announcer, LoggingAnnouncer
from .attendance import (MESSAGES, AttendanceDecision, PlannedAction, StatusResolver,
                         decide_attendance_action)
from .camera import CameraSource
from .config import Config
from .employees import TemplateStore
from .errors import (ActionNotAllowedError, CameraUnavailableError, DescriptorExtractionError,
                     KioskError, LedgerUnavailableError)
from .heartbeat import MANUAL_MODE_NOTE, DeviceHeartbeat
from .logging_config import get_logger
from .models import ActionType, AttendanceEvent, DeviceIdentity, EmployeeStatus, PendingSyncItem
from .offline_queue import OfflineQueue
from .recognition.cooldown import CooldownTracker
from .recognition.extractor import DescriptorExtractor, largest_face
from .recognition.matching import Matcher
from .recognition.quality import assess_face_quality
from .utils.scheduler import Scheduler

logger = get_logger(__name__)

NOT_RECOGNIZED = 'Face not recognized. Please try again or contact administrator.'
SYNCING_SUFFIX = ' Recorded, syncing.'
TEMP_EXIT_REQUESTED = 'Temporary exit requested. Awaiting approval.'


class KioskState(str, Enum):
    STANDBY = 'standby'
    DETECTING = 'detecting'
    RECOGNIZING = 'recognizing'
    CONFIRMING = 'confirming'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    ERROR = 'error'


SEARCHING_STATES = (KioskState.DETECTING, KioskState.RECOGNIZING)
RESULT_STATES = (KioskState.SUCCESS, KioskState.ERROR)


class KioskRuntime:
    """
    Top-level kiosk loop.

    Without an extractor the kiosk runs in manual mode: timers, heartbeat and
    sync keep running, recognition is skipped and attendance is submitted by
    an operator through submit_manual().

    Use as a context manager so every timer is stopped and the camera
    released on exit:

        with KioskRuntime(...) as runtime:
            serve(runtime)
    """

    def __init__(self, config: Config, device: DeviceIdentity, ledger: Any,
                 store: TemplateStore, queue: OfflineQueue, camera: CameraSource,
                 extractor: Optional[DescriptorExtractor] = None,
                 announcer: Optional[Announcer] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.device = device
        self.ledger = ledger
        self.store = store
        self.queue = queue
        self.camera = camera
        self.extractor = extractor
        self.announcer = announcer or LoggingAnnouncer(config.voice_enabled)
        self.clock = clock

        self.matcher = Matcher.from_config(store, config)
        self.resolver = StatusResolver(ledger, queue.pending_for)
        queue.subscribe_delivered(self.resolver.record_delivery)
        self.cooldown = CooldownTracker(config.cooldown_seconds)
        self.heartbeat = DeviceHeartbeat(
            ledger, device, queue.monitor, self.camera_status,
            manual_mode=lambda: self.manual_mode,
            max_attempts=config.heartbeat_retries, sleep=sleep, clock=clock,
        )
        self.scheduler = Scheduler()

        self._tick_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._hint_lock = threading.Lock()
        self._hint_checks: List[Tuple[str, str, AttendanceDecision]] = []

        now = clock()
        self.started_at = now
        self.state = KioskState.STANDBY
        self.state_since = now
        self.message = ''
        self.employee_id: Optional[str] = None
        self.employee_name: Optional[str] = None
        self.action: Optional[ActionType] = None
        self.confidence: Optional[float] = None
        self.camera_error: Optional[str] = None
        self.clock_text = ''

        self._search_started = now
        self._last_rejection: Optional[str] = None
        self._last_activity = now

    @property
    def manual_mode(self) -> bool:
        return self.extractor is None

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        logger.info(f"🚀 Starting kiosk {self.device.code} ({'manual' if self.manual_mode else 'automatic'} mode)")
        self.reload_templates()
        if not self.manual_mode:
            self._open_camera()
        self._set_state(KioskState.STANDBY, self._standby_message())

        cfg = self.config
        self.scheduler.add('detection', cfg.detection_interval, self.tick)
        self.scheduler.add('clock', cfg.clock_interval, self.on_clock)
        self.scheduler.add('heartbeat', cfg.heartbeat_interval, self.heartbeat.beat)
        self.scheduler.add('sync', cfg.sync_interval, self.queue.drain, wakeup=self.queue.wakeup)
        self.scheduler.add('hints', cfg.sync_interval, self.run_hint_checks, run_immediately=False)
        self.scheduler.add('templates', cfg.reload_templates_interval, self.reload_templates,
                           run_immediately=False)
        self.scheduler.add('watchdog', min(60.0, cfg.idle_reload_seconds), self.check_idle,
                           run_immediately=False)
        self.scheduler.start()

    def stop(self) -> None:
        logger.info('Stopping kiosk...')
        self.scheduler.stop()
        with self._tick_lock:
            self.camera.release()
        logger.info('Kiosk stopped')

    def __enter__(self) -> 'KioskRuntime':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # State

    def _set_state(self, state: KioskState, message: str = '') -> None:
        with self._state_lock:
            if state != self.state:
                logger.debug(f'State {self.state.value} -> {state.value}')
            self.state = state
            self.state_since = self.clock()
            self.message = message
            if state == KioskState.STANDBY:
                self.employee_id = None
                self.employee_name = None
                self.action = None
                self.confidence = None

    def _standby_message(self) -> str:
        if self.manual_mode:
            return MANUAL_MODE_NOTE
        return 'Please look at the camera'

    def snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                'state': self.state.value,
                'message': self.message,
                'employee_id': self.employee_id,
                'employee_name': self.employee_name,
                'action': self.action.value if self.action else None,
                'confidence': self.confidence,
                'mode': 'manual' if self.manual_mode else 'automatic',
                'camera_error': self.camera_error,
                'clock': self.clock_text,
                'online': self.queue.monitor.online,
                'queue': {'pending': len(self.queue.pending()), 'failed': len(self.queue.failed())},
                'alerts': [item.to_dict() for item in self.queue.failed()],
                'device_id': self.device.device_id,
                'location_id': self.device.location_id,
            }

    def camera_status(self) -> str:
        if self.camera_error is None and self.camera.is_open:
            return 'working'
        if self.camera_error and 'permission' in self.camera_error.lower():
            return 'permission_denied'
        return 'error'

    # ------------------------------------------------------------------
    # Camera

    def _open_camera(self) -> bool:
        try:
            self.camera.open()
        except CameraUnavailableError as e:
            self._camera_failed(str(e))
            return False
        self.camera_error = None
        return True

    def _camera_failed(self, reason: str) -> None:
        logger.error(f'📷 Camera unavailable: {reason}')
        self.camera_error = reason
        self._set_state(KioskState.ERROR, f'Camera unavailable: {reason}')

    def retry_camera(self) -> bool:
        """Operator retry out of the blocking camera error state."""
        with self._tick_lock:
            self.camera.release()
            if not self._open_camera():
                return False
            self._last_activity = self.clock()
            self._set_state(KioskState.STANDBY, self._standby_message())
            logger.info('📷 Camera recovered')
            return True

    # ------------------------------------------------------------------
    # Detection tick

    def tick(self) -> None:
        """
        One detection step. Skipped if the previous tick is still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug('Previous tick still running, skipping')
            return
        try:
            now = self.clock()
            self._advance(now)
            if self.manual_mode or self.camera_error is not None:
                return
            if self.state in (KioskState.STANDBY,) + SEARCHING_STATES:
                self._detect(now)
        finally:
            self._tick_lock.release()

    def advance(self) -> None:
        """Run timed transitions without touching the camera."""
        if not self._tick_lock.acquire(blocking=False):
            return
        try:
            self._advance(self.clock())
        finally:
            self._tick_lock.release()

    def _advance(self, now: float) -> None:
        elapsed = now - self.state_since
        if self.state == KioskState.CONFIRMING and elapsed >= self.config.confirm_hold_seconds:
            self._process(self.employee_id, self.confidence, now)
        elif self.state in RESULT_STATES and elapsed >= self.config.result_hold_seconds:
            if self.camera_error is None:
                self._set_state(KioskState.STANDBY, self._standby_message())
        elif self.state in SEARCHING_STATES and now - self._search_started >= self.config.recognition_timeout:
            self._search_timed_out()
        elif self.state == KioskState.PROCESSING and elapsed >= self.config.recognition_timeout:
            logger.error(f'Processing of {self.employee_id} did not finish, giving up')
            self._set_state(KioskState.ERROR, 'Could not record attendance. Please try again.')

    def _search_timed_out(self) -> None:
        rejection = self._last_rejection
        self._last_rejection = None
        if rejection == 'no_match':
            logger.info('Recognition timed out without a match')
            self._set_state(KioskState.ERROR, NOT_RECOGNIZED)
            self.announcer.announce('Face not recognized')
        elif rejection:
            logger.info(f'Recognition timed out on low quality: {rejection}')
            self._set_state(KioskState.ERROR, f'Could not get a clear image. {rejection}')
        else:
            self._set_state(KioskState.STANDBY, self._standby_message())

    def _detect(self, now: float) -> None:
        try:
            frame = self.camera.read()
        except CameraUnavailableError as e:
            self._camera_failed(str(e))
            return
        if frame is None:
            return

        face = largest_face(self.extractor.detect(frame))
        if face is None:
            return

        self._last_activity = now
        if self.state == KioskState.STANDBY:
            self._search_started = now
            self._last_rejection = None
            self._set_state(KioskState.DETECTING, 'Face detected, hold still...')

        quality = assess_face_quality(face.region, self.config)
        if not quality.is_good:
            self._last_rejection = quality.reason
            with self._state_lock:
                self.message = quality.reason
            return

        self._set_state(KioskState.RECOGNIZING, 'Recognizing...')
        try:
            descriptor = self.extractor.extract(face)
        except DescriptorExtractionError as e:
            logger.debug(f'Descriptor extraction failed: {e}')
            self._last_rejection = 'Please hold still'
            return

        result = self.matcher.match(descriptor)
        if not result.matched:
            self._last_rejection = 'no_match'
            return

        if self.cooldown.is_cooling_down(result.employee_id, now):
            remaining = self.cooldown.remaining(result.employee_id, now)
            logger.info(f'Employee {result.employee_id} in cooldown ({remaining:.0f}s left), ignoring')
            self._set_state(KioskState.STANDBY, self._standby_message())
            return

        employee = self.store.get(result.employee_id)
        name = employee.full_name if employee and employee.full_name else result.employee_id
        self._set_state(KioskState.CONFIRMING, f'Welcome, {name}')
        with self._state_lock:
            self.employee_id = result.employee_id
            self.employee_name = name
            self.confidence = result.confidence
        logger.info(f'👤 Recognized {name} (confidence {result.confidence:.2f})')
        self.announcer.announce(f'Hello {name}')

    # ------------------------------------------------------------------
    # Processing

    def _build_events(self, employee_id: str, decision: AttendanceDecision, now: float,
                      confidence: Optional[float], notes: Optional[str] = None,
                      extra: Tuple[Tuple[str, Any], ...] = ()) -> List[AttendanceEvent]:
        timestamp = datetime.fromtimestamp(now, timezone.utc)
        link_id = uuid.uuid4().hex if decision.is_transfer else None
        return [
            AttendanceEvent(
                employee_id=employee_id,
                device_id=self.device.device_id,
                location_id=action.location_id,
                type=action.type,
                timestamp=timestamp,
                confidence=confidence,
                temp_exit_id=action.temp_exit_id,
                link_id=link_id,
                notes=notes,
                extra=extra,
            )
            for action in decision.actions
        ]

    def _process(self, employee_id: str, confidence: Optional[float], now: float,
                 notes: Optional[str] = None) -> Optional[List[PendingSyncItem]]:
        name = self.employee_name or employee_id
        self._set_state(KioskState.PROCESSING, 'Processing attendance...')
        with self._state_lock:
            self.employee_id = employee_id
            self.employee_name = name
            self.confidence = confidence

        try:
            status, from_ledger = self.resolver.resolve(employee_id)
            decision = decide_attendance_action(status, self.device.location_id)
            had_pending = bool(self.queue.pending_for(employee_id))
            items = self.queue.enqueue(self._build_events(employee_id, decision, now, confidence, notes))
        except Exception as e:
            logger.error(f'Could not record attendance for {employee_id}: {e}',
                         exc_info=not isinstance(e, KioskError))
            self.cooldown.mark(employee_id, now)
            self._set_state(KioskState.ERROR, 'Could not record attendance. Please try again.')
            return None

        self.cooldown.mark(employee_id, now)
        if from_ledger and not had_pending:
            with self._hint_lock:
                self._hint_checks.append((employee_id, self.device.location_id, decision))

        message = decision.message
        if not self.queue.monitor.online:
            message += SYNCING_SUFFIX
        self._set_state(KioskState.SUCCESS, message)
        with self._state_lock:
            self.employee_id = employee_id
            self.employee_name = name
            self.action = decision.primary
            self.confidence = confidence
        logger.info(f'✅ {name}: {decision.primary.value} ({len(items)} event(s) queued)')
        self.announcer.announce(f'{name}, {decision.message}')
        return items

    def submit_manual(self, employee_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Operator-submitted attendance, through the same decision and queue path.

        Raises:
            LookupError: if the directory does not know the employee
        """
        employee = self.store.get(employee_id)
        name = employee.full_name if employee else None
        if employee is None:
            try:
                record = self.ledger.fetch_employee(employee_id)
            except LedgerUnavailableError as e:
                logger.warning(f'Directory unreachable, recording manual attendance for {employee_id} anyway: {e}')
                record = {'id': employee_id}
            if record is None:
                raise LookupError(f'Unknown employee {employee_id}')
            name = record.get('full_name')

        with self._tick_lock:
            with self._state_lock:
                self.employee_name = name or employee_id
            logger.info(f'✍️ Manual attendance for {employee_id}')
            self._process(employee_id, None, self.clock(), notes=notes or 'manual')
            return self.snapshot()

    # ------------------------------------------------------------------
    # Kiosk requests

    def _require_present(self, employee_id: str, request: str):
        status, _ = self.resolver.resolve(employee_id)
        if status.status != EmployeeStatus.PRESENT:
            raise ActionNotAllowedError(
                f'Cannot {request}: employee {employee_id} is {status.status.value}'
            )
        return status

    def _record_request(self, employee_id: str, action: ActionType, location_id: str,
                        message: str, extra: Tuple[Tuple[str, Any], ...]) -> Dict[str, Any]:
        now = self.clock()
        decision = AttendanceDecision((PlannedAction(action, location_id),), message)
        self.queue.enqueue(self._build_events(employee_id, decision, now, None, extra=extra))
        self.cooldown.mark(employee_id, now)
        if not self.queue.monitor.online:
            message += SYNCING_SUFFIX
        self._set_state(KioskState.SUCCESS, message)
        with self._state_lock:
            self.employee_id = employee_id
            self.action = action
        self.announcer.announce(message)
        return self.snapshot()

    def request_break(self, employee_id: str, break_type: str = 'regular',
                      planned_minutes: int = 15) -> Dict[str, Any]:
        """Start a break for a present employee."""
        with self._tick_lock:
            status = self._require_present(employee_id, 'start a break')
            logger.info(f'☕ Break requested by {employee_id} ({break_type}, {planned_minutes} min)')
            return self._record_request(
                employee_id, ActionType.BREAK_START,
                status.location_id or self.device.location_id,
                MESSAGES[ActionType.BREAK_START],
                (('break_type', break_type), ('planned_minutes', int(planned_minutes))),
            )

    def request_temporary_exit(self, employee_id: str, reason: str,
                               estimated_hours: float = 1.0) -> Dict[str, Any]:
        """Ask for an approved temporary exit; the ledger decides on approval."""
        with self._tick_lock:
            status = self._require_present(employee_id, 'request a temporary exit')
            logger.info(f'🚪 Temporary exit requested by {employee_id}: {reason}')
            return self._record_request(
                employee_id, ActionType.TEMP_EXIT,
                status.location_id or self.device.location_id,
                TEMP_EXIT_REQUESTED,
                (('exit_reason', reason), ('estimated_hours', float(estimated_hours))),
            )

    # ------------------------------------------------------------------
    # Timers

    def on_clock(self) -> None:
        now = self.clock()
        self.clock_text = datetime.fromtimestamp(now).strftime('%H:%M:%S')
        self.advance()
        self.cooldown.prune(now)

    def run_hint_checks(self) -> None:
        """
        Compare recorded decisions with the ledger's determine_attendance_action
        hint. Advisory only: a divergence is logged, the queued events stand.
        """
        with self._hint_lock:
            checks, self._hint_checks = self._hint_checks, []
        for employee_id, location_id, decision in checks:
            self.resolver.verify(employee_id, location_id, decision)

    def reload_templates(self) -> None:
        try:
            self.store.refresh(self.ledger, self.config.cache_file)
        except KioskError as e:
            logger.error(f'Template reload failed: {e}')

    def check_idle(self) -> None:
        """Full reload after a long stretch without any detection."""
        now = self.clock()
        if now - self._last_activity < self.config.idle_reload_seconds:
            return
        if self.state not in (KioskState.STANDBY,) + RESULT_STATES:
            return
        logger.info(f'😴 No detections for {now - self._last_activity:.0f}s, reloading kiosk')
        self.full_reload()

    def full_reload(self) -> None:
        with self._tick_lock:
            if not self.manual_mode:
                self.camera.release()
                if not self._open_camera():
                    self._last_activity = self.clock()
                    return
            self._last_activity = self.clock()
            self._set_state(KioskState.STANDBY, self._standby_message())
        self.reload_templates()

