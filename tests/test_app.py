import pytest

from attendance_kiosk.app import create_app
from attendance_kiosk.models import ActionType, EmployeeCurrentStatus, EmployeeStatus
from attendance_kiosk.runtime import KioskRuntime

from conftest import LOCATION_A, FakeCamera


@pytest.fixture
def runtime(config, device, ledger, store, queue, clock):
    ledger.records = [{'id': 'e1', 'employee_code': 'E1', 'full_name': 'Ana Lima'}]
    return KioskRuntime(config, device, ledger, store, queue, FakeCamera(), extractor=None,
                        clock=clock, sleep=lambda s: None)


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    app.config['TESTING'] = True
    return app.test_client()


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'ok'
    assert body['device_id'] == 'dev-1'
    assert body['online'] is True


def test_status_snapshot(client):
    body = client.get('/status').get_json()
    assert body['state'] == 'standby'
    assert body['mode'] == 'manual'


def test_manual_attendance(client, queue):
    response = client.post('/manual', json={'employee_id': 'e1'})
    assert response.status_code == 200
    assert response.get_json()['action'] == 'clock_in'
    assert len(queue) == 1


def test_manual_requires_employee(client):
    assert client.post('/manual', json={}).status_code == 400
    assert client.post('/manual', json={'employee_id': 'ghost'}).status_code == 404


def test_break_not_allowed_when_absent(client):
    response = client.post('/break', json={'employee_id': 'e1'})
    assert response.status_code == 409


def test_break_request(client, ledger, queue):
    ledger.statuses['e1'] = EmployeeCurrentStatus(EmployeeStatus.PRESENT, LOCATION_A, ActionType.CLOCK_IN)
    assert client.post('/break', json={'employee_id': 'e1', 'planned_minutes': 'x'}).status_code == 400
    assert client.post('/break', json={'employee_id': 'e1', 'planned_minutes': 20}).status_code == 200
    assert [i.payload['action'] for i in queue.pending()] == ['break_start']


def test_temporary_exit(client, ledger, queue):
    ledger.statuses['e1'] = EmployeeCurrentStatus(EmployeeStatus.PRESENT, LOCATION_A, ActionType.CLOCK_IN)
    assert client.post('/temporary-exit', json={'employee_id': 'e1'}).status_code == 400
    response = client.post('/temporary-exit', json={'employee_id': 'e1', 'reason': 'Bank'})
    assert response.status_code == 200
    assert [i.payload['action'] for i in queue.pending()] == ['temp_exit']


def test_sync_listing_and_operator_resolution(client, ledger, queue):
    ledger.reject_actions = {'clock_in'}
    client.post('/manual', json={'employee_id': 'e1'})
    queue.drain()

    body = client.get('/sync').get_json()
    assert body['pending'] == []
    key = body['failed'][0]['idempotency_key']

    ledger.reject_actions = set()
    assert client.post(f'/sync/{key}/retry').status_code == 200
    assert client.post(f'/sync/{key}/retry').status_code == 404
    assert client.post(f'/sync/{key}/discard').status_code == 200
    assert client.post('/sync/unknown/discard').status_code == 404
    assert len(queue) == 0


def test_manual_attendance_while_offline_is_queued(client, ledger):
    ledger.online = False
    response = client.post('/manual', json={'employee_id': 'ghost'})
    assert response.status_code == 200
    assert response.get_json()['message'].endswith('Recorded, syncing.')


def test_camera_retry(client, runtime):
    response = client.post('/camera/retry')
    assert response.status_code == 200
    assert runtime.camera.is_open
