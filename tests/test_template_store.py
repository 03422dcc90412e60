import numpy as np
import pytest

from attendance_kiosk.employees import TemplateStore, employee_from_record
from attendance_kiosk.models import Employee, FaceTemplate

from conftest import enrolled_employee, unit


def _record(emp_id, encodings, registered=True, active=True):
    return {
        'id': emp_id,
        'employee_code': f'EMP{emp_id}',
        'full_name': f'Employee {emp_id}',
        'is_active': active,
        'face_registered': registered,
        'face_encodings': [list(map(float, e)) for e in encodings],
    }


def test_record_without_encodings_is_not_registered():
    employee = employee_from_record(_record('1', [], registered=True))
    assert not employee.face_registered
    assert employee.templates == []


def test_registered_employee_requires_templates_invariant():
    with pytest.raises(ValueError):
        Employee(id='1', code='E1', face_registered=False,
                 templates=[FaceTemplate((np.zeros(4),), (1.0,))])


def test_inactive_employees_are_dropped(rng):
    store = TemplateStore([
        enrolled_employee('1', [unit(rng)]),
        Employee(id='2', code='E2', is_active=False),
    ])
    assert len(store) == 1
    assert store.get('2') is None


def test_descriptor_matrix_lists_every_pose(rng):
    store = TemplateStore([enrolled_employee('1', [unit(rng), unit(rng)]), enrolled_employee('2', [unit(rng)])])
    matrix, owners = store.descriptor_matrix()
    assert matrix.shape == (3, 512)
    assert sorted(owners) == ['1', '1', '2']


def test_empty_store_matrix():
    matrix, owners = TemplateStore().descriptor_matrix()
    assert matrix.shape[0] == 0
    assert owners == []


def test_install_template_replaces_earlier_ones(rng):
    store = TemplateStore([enrolled_employee('1', [unit(rng)])])
    template = FaceTemplate(tuple(unit(rng) for _ in range(3)), (0.9, 0.8, 0.95))
    updated = store.install_template(Employee(id='1', code='E1'), template)
    assert updated.face_registered
    assert store.get('1').templates == [template]
    assert store.descriptor_matrix()[0].shape == (3, 512)


def test_refresh_loads_and_caches(ledger, config, rng):
    ledger.records = [_record('1', [unit(rng)]), _record('2', [unit(rng), unit(rng)])]
    store = TemplateStore()
    assert store.refresh(ledger, config.cache_file) == 2

    ledger.online = False
    offline_store = TemplateStore()
    assert offline_store.refresh(ledger, config.cache_file) == 2
    assert offline_store.get('2').templates[0].descriptors[1].shape == (512,)


def test_refresh_offline_without_cache_keeps_current(ledger, tmp_path, rng):
    store = TemplateStore([enrolled_employee('1', [unit(rng)])])
    ledger.online = False
    assert store.refresh(ledger, str(tmp_path / 'missing.pkl')) == 1
    assert store.get('1') is not None


def test_refresh_skips_malformed_records(ledger, rng):
    ledger.records = [_record('1', [unit(rng)]), {'face_registered': True, 'face_encodings': [[1.0]]}]
    store = TemplateStore()
    assert store.refresh(ledger) == 1
