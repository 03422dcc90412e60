"""
Face enrollment workflow.

Drives the three-pose capture (front, left, right) that builds a new
FaceTemplate for an employee:

    setup -> capturing -> processing -> complete
                 ^             |
                 +---- retry --+

Each capture must pass the quality assessor and is descriptor-extracted on
the spot. Nothing is persisted or installed until all three poses are in;
any extraction or persistence failure throws away the whole attempt. Every
attempt leaves an audit record, whatever its outcome.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from ..config import Config
from ..employees import TemplateStore
from ..errors import DescriptorExtractionError, EnrollmentError, KioskError
from ..logging_config import get_logger
from ..models import Employee, FaceTemplate
from .extractor import DescriptorExtractor, DetectedFace, largest_face
from .quality import QualityAssessment, assess_face_quality

logger = get_logger(__name__)

POSES = (
    ('front', 'Look straight at the camera'),
    ('left', 'Turn your head slightly to the left'),
    ('right', 'Turn your head slightly to the right'),
)

PersistTemplate = Callable[[Employee, FaceTemplate], None]
AuditAttempt = Callable[[str, bool, float, int, Optional[str]], None]


class EnrollmentStep(str, Enum):
    SETUP = 'setup'
    CAPTURING = 'capturing'
    PROCESSING = 'processing'
    COMPLETE = 'complete'


@dataclass(frozen=True)
class CaptureResult:
    accepted: bool
    message: str
    quality: Optional[QualityAssessment] = None
    aborted: bool = False
    completed: bool = False


class EnrollmentWorkflow:
    """
    One operator-invoked enrollment session for one employee.

    Args:
        employee: Employee to enroll
        extractor: Descriptor extractor
        store: Template store the finished template is installed into
        config: Service configuration (quality thresholds)
        persist: Writes the template to the directory; raising aborts the attempt
        audit: Records (employee_id, success, quality_score, attempt_number, error)
    """

    def __init__(self, employee: Employee, extractor: DescriptorExtractor,
                 store: TemplateStore, config: Config,
                 persist: Optional[PersistTemplate] = None,
                 audit: Optional[AuditAttempt] = None):
        self.employee = employee
        self.extractor = extractor
        self.store = store
        self.config = config
        self.persist = persist
        self.audit = audit

        self.step = EnrollmentStep.SETUP
        self.attempt = 1
        self.last_error: Optional[str] = None
        self._descriptors: List[np.ndarray] = []
        self._scores: List[float] = []

    @property
    def captured(self) -> int:
        return len(self._descriptors)

    @property
    def total_poses(self) -> int:
        return len(POSES)

    @property
    def current_pose(self) -> Optional[str]:
        if self.step != EnrollmentStep.CAPTURING:
            return None
        return POSES[self.captured][0]

    @property
    def instruction(self) -> str:
        if self.step == EnrollmentStep.COMPLETE:
            return 'Face registration complete'
        if self.step != EnrollmentStep.CAPTURING:
            return 'Preparing camera...'
        return POSES[self.captured][1]

    def start(self) -> None:
        if self.step != EnrollmentStep.SETUP:
            raise EnrollmentError(f'Cannot start enrollment from step {self.step.value}')
        self.step = EnrollmentStep.CAPTURING
        logger.info(f'Enrollment started for {self.employee.full_name or self.employee.id}')

    def retry(self) -> None:
        """Discard captured poses and go back to capturing."""
        if self.step == EnrollmentStep.COMPLETE:
            raise EnrollmentError('Enrollment already complete')
        self._descriptors.clear()
        self._scores.clear()
        self.step = EnrollmentStep.CAPTURING

    def cancel(self, reason: str = 'Enrollment cancelled') -> None:
        """Abandon the current attempt. The attempt is audited like any other failure."""
        if self.step == EnrollmentStep.COMPLETE:
            raise EnrollmentError('Enrollment already complete')
        score = float(np.mean(self._scores)) if self._scores else 0.0
        self._abort(reason, score)

    def capture(self, face: Optional[DetectedFace]) -> CaptureResult:
        """
        Offer one detected face for the current pose.

        Returns:
            CaptureResult; a rejected capture leaves the workflow unchanged,
            an aborted one has cleared every captured pose
        """
        if self.step != EnrollmentStep.CAPTURING:
            raise EnrollmentError(f'Cannot capture in step {self.step.value}')
        if face is None:
            return CaptureResult(False, 'No face detected')

        quality = assess_face_quality(face.region, self.config)
        if not quality.is_good:
            return CaptureResult(False, quality.reason, quality)

        try:
            descriptor = self.extractor.extract(face)
        except DescriptorExtractionError as e:
            self._abort(str(e), quality.score)
            return CaptureResult(False, f'Capture failed, please start again: {e}', quality, aborted=True)

        self._descriptors.append(descriptor)
        self._scores.append(quality.score)
        logger.info(f'Captured pose {self.captured}/{self.total_poses} (quality {quality.score:.2f})')

        if self.captured < self.total_poses:
            return CaptureResult(True, f'Capture {self.captured} of {self.total_poses} completed', quality)

        return self._complete(quality)

    def _complete(self, quality: QualityAssessment) -> CaptureResult:
        self.step = EnrollmentStep.PROCESSING
        template = FaceTemplate(
            descriptors=tuple(self._descriptors),
            quality_scores=tuple(self._scores),
        )
        mean_score = float(np.mean(self._scores))

        if self.persist is not None:
            try:
                self.persist(self.employee, template)
            except KioskError as e:
                self._abort(f'Failed to save face data: {e}', mean_score)
                return CaptureResult(False, f'Registration failed: {e}', quality, aborted=True)

        self.employee = self.store.install_template(self.employee, template)
        self.step = EnrollmentStep.COMPLETE
        self._write_audit(True, mean_score, None)
        logger.info(f'✅ Face registered for {self.employee.full_name or self.employee.id}')
        return CaptureResult(True, 'Face registration complete', quality, completed=True)

    def _abort(self, reason: str, quality_score: float) -> None:
        logger.warning(f'Enrollment attempt {self.attempt} for {self.employee.id} aborted: {reason}')
        self.last_error = reason
        self._descriptors.clear()
        self._scores.clear()
        self._write_audit(False, quality_score, reason)
        self.attempt += 1
        self.step = EnrollmentStep.CAPTURING

    def _write_audit(self, success: bool, quality_score: float, error: Optional[str]) -> None:
        if self.audit is None:
            return
        try:
            self.audit(self.employee.id, success, quality_score, self.attempt, error)
        except KioskError as e:
            logger.warning(f'Could not log registration attempt: {e}')


def run_enrollment(workflow: EnrollmentWorkflow, camera, extractor: DescriptorExtractor,
                   timeout: float = 120.0, interval: float = 1.0,
                   on_progress: Optional[Callable[[str], None]] = None,
                   clock: Callable[[], float] = time.time,
                   sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Drive a workflow from a camera until it completes or times out.

    Returns:
        True if the template was installed
    """
    if workflow.step == EnrollmentStep.SETUP:
        workflow.start()

    deadline = clock() + timeout
    last_message = None
    while workflow.step != EnrollmentStep.COMPLETE and clock() < deadline:
        message = workflow.instruction
        frame = camera.read()
        if frame is not None:
            result = workflow.capture(largest_face(extractor.detect(frame)))
            message = result.message if not result.accepted else workflow.instruction
        if on_progress and message != last_message:
            on_progress(message)
            last_message = message
        sleep(interval)

    if workflow.step == EnrollmentStep.COMPLETE:
        return True

    workflow.cancel(f'Enrollment timed out after {timeout:.0f}s')
    if on_progress:
        on_progress('Enrollment timed out')
    return False
