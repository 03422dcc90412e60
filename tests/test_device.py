import json

import pytest

from attendance_kiosk.device import DeviceRegistry, hardware_fingerprint, load_credential
from attendance_kiosk.errors import DeviceNotRegisteredError
from attendance_kiosk.models import DeviceIdentity

from conftest import LOCATION_A


@pytest.fixture
def credential_file(tmp_path):
    return str(tmp_path / 'device.json')


def test_fingerprint_is_stable_hex():
    fingerprint = hardware_fingerprint()
    assert fingerprint == hardware_fingerprint()
    assert len(fingerprint) == 32
    int(fingerprint, 16)


def test_register_persists_credential(ledger, credential_file):
    identity = DeviceRegistry(ledger, credential_file).register('Lobby kiosk', 'LOBBY-1', LOCATION_A)

    assert identity.device_id == 'dev-1'
    assert identity.identifier == hardware_fingerprint()
    with open(credential_file, encoding='utf-8') as f:
        assert json.load(f)['device_id'] == 'dev-1'
    assert load_credential(credential_file) == identity


def test_resolve_prefers_credential_file(ledger, credential_file):
    registry = DeviceRegistry(ledger, credential_file)
    registry.register('Lobby kiosk', 'LOBBY-1', LOCATION_A)
    ledger.online = False

    assert registry.resolve().code == 'LOBBY-1'


def test_resolve_falls_back_to_fingerprint_lookup(ledger, credential_file):
    fingerprint = hardware_fingerprint()
    ledger.devices[fingerprint] = DeviceIdentity('dev-7', 'Dock', 'DOCK-1', fingerprint, LOCATION_A)

    identity = DeviceRegistry(ledger, credential_file).resolve()

    assert identity.device_id == 'dev-7'
    assert load_credential(credential_file).device_id == 'dev-7'


def test_unknown_device_is_not_registered(ledger, credential_file):
    with pytest.raises(DeviceNotRegisteredError):
        DeviceRegistry(ledger, credential_file).resolve()


def test_corrupt_credential_is_ignored(ledger, credential_file):
    with open(credential_file, 'w', encoding='utf-8') as f:
        f.write('{not json')
    assert load_credential(credential_file) is None
    with pytest.raises(DeviceNotRegisteredError):
        DeviceRegistry(ledger, credential_file).resolve()
