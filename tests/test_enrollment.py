import pytest

from attendance_kiosk.errors import EnrollmentError
from attendance_kiosk.models import Employee
from attendance_kiosk.recognition.enrollment import EnrollmentStep, EnrollmentWorkflow, run_enrollment
from attendance_kiosk.recognition.matching import Matcher

from conftest import FakeCamera, FakeExtractor, ManualClock, enrolled_employee, make_face, unit, variant


@pytest.fixture
def employee():
    return Employee(id='emp-7', code='E7', full_name='Dana Reyes')


def _workflow(employee, store, config, ledger):
    return EnrollmentWorkflow(
        employee, FakeExtractor(), store, config,
        persist=lambda emp, template: ledger.save_face_template(
            emp.id, template.descriptors, template.quality_scores,
        ),
        audit=lambda emp_id, success, score, attempt, error: ledger.log_face_registration(
            emp_id, success, score, attempt_number=attempt, error=error,
        ),
    )


def test_three_poses_install_template_and_round_trip(employee, store, config, ledger, rng):
    base = unit(rng)
    store.replace_all([enrolled_employee('other', [unit(rng)])])
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()

    instructions = []
    for _ in range(3):
        instructions.append(workflow.instruction)
        result = workflow.capture(make_face(variant(base, rng)))
        assert result.accepted

    assert instructions == [
        'Look straight at the camera',
        'Turn your head slightly to the left',
        'Turn your head slightly to the right',
    ]
    assert result.completed
    assert workflow.step == EnrollmentStep.COMPLETE
    assert store.get('emp-7').face_registered
    assert len(ledger.saved_templates['emp-7']['descriptors']) == 3
    assert ledger.audit_log[-1]['success'] is True

    probe = variant(base, rng)
    assert Matcher(store).match(probe).employee_id == 'emp-7'


def test_low_quality_capture_is_not_accepted(employee, store, config, ledger, rng):
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()
    result = workflow.capture(make_face(unit(rng), width=30, height=30))
    assert not result.accepted
    assert not result.aborted
    assert workflow.captured == 0
    assert workflow.step == EnrollmentStep.CAPTURING


def test_failed_extraction_aborts_whole_attempt(employee, store, config, ledger, rng):
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()
    workflow.capture(make_face(unit(rng)))
    workflow.capture(make_face(unit(rng)))

    result = workflow.capture(make_face(None))

    assert result.aborted
    assert workflow.captured == 0
    assert workflow.step == EnrollmentStep.CAPTURING
    assert workflow.attempt == 2
    assert store.get('emp-7') is None
    assert 'emp-7' not in ledger.saved_templates
    assert ledger.audit_log == [{
        'employee_id': 'emp-7', 'success': False, 'quality_score': pytest.approx(result.quality.score),
        'attempt_number': 1, 'error': 'no embedding for this face',
    }]


def test_failed_save_installs_nothing(employee, store, config, ledger, rng):
    ledger.fail_save = True
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()
    for _ in range(3):
        result = workflow.capture(make_face(unit(rng)))

    assert result.aborted
    assert store.get('emp-7') is None
    assert workflow.step == EnrollmentStep.CAPTURING
    assert ledger.audit_log[-1]['success'] is False


def test_retry_after_failure_can_complete(employee, store, config, ledger, rng):
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()
    workflow.capture(make_face(None))
    for _ in range(3):
        workflow.capture(make_face(unit(rng)))
    assert workflow.step == EnrollmentStep.COMPLETE
    assert [entry['success'] for entry in ledger.audit_log] == [False, True]
    assert ledger.audit_log[-1]['attempt_number'] == 2


def test_audit_failure_does_not_break_enrollment(employee, store, config, ledger, rng):
    def broken_audit(*args):
        ledger.online = False
        ledger.log_face_registration(*args)

    workflow = EnrollmentWorkflow(employee, FakeExtractor(), store, config, audit=broken_audit)
    workflow.start()
    for _ in range(3):
        workflow.capture(make_face(unit(rng)))
    assert workflow.step == EnrollmentStep.COMPLETE


def test_out_of_order_use_raises(employee, store, config):
    workflow = EnrollmentWorkflow(employee, FakeExtractor(), store, config)
    with pytest.raises(EnrollmentError):
        workflow.capture(None)
    workflow.start()
    with pytest.raises(EnrollmentError):
        workflow.start()


def test_run_enrollment_drives_camera(employee, store, config, rng):
    base = unit(rng)
    extractor = FakeExtractor([make_face(base)])
    workflow = EnrollmentWorkflow(employee, extractor, store, config)
    camera = FakeCamera()
    camera.open()
    clock = ManualClock()
    messages = []

    done = run_enrollment(workflow, camera, extractor, timeout=30, interval=1,
                          on_progress=messages.append, clock=clock, sleep=clock.advance)

    assert done
    assert camera.reads == 3
    assert 'Face registration complete' in messages


def test_run_enrollment_timeout_is_audited(employee, store, config, ledger, rng):
    workflow = _workflow(employee, store, config, ledger)
    workflow.extractor.faces = []
    camera = FakeCamera()
    camera.open()
    clock = ManualClock()

    done = run_enrollment(workflow, camera, workflow.extractor, timeout=5, interval=1,
                          clock=clock, sleep=clock.advance)

    assert not done
    assert store.get(employee.id) is None
    assert len(ledger.audit_log) == 1
    assert ledger.audit_log[0]['success'] is False
    assert 'timed out' in ledger.audit_log[0]['error']
    assert workflow.attempt == 2


def test_cancel_after_partial_capture_discards_poses(employee, store, config, ledger, rng):
    workflow = _workflow(employee, store, config, ledger)
    workflow.start()
    assert workflow.capture(make_face(unit(rng))).accepted

    workflow.cancel()

    assert workflow.captured == 0
    assert workflow.step == EnrollmentStep.CAPTURING
    assert ledger.audit_log[-1]['quality_score'] > 0
