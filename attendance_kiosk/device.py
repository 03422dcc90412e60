"""
Device identity module.

A kiosk registers once with the ledger and keeps the returned device id in a
local credential file. The hardware fingerprint is only the identifier sent
at registration and the fallback lookup key when the credential is missing.
"""

import hashlib
import json
import os
import platform
import uuid
from typing import Optional

from .errors import DeviceNotRegisteredError
from .logging_config import get_logger
from .models import DeviceIdentity

logger = get_logger(__name__)


def hardware_fingerprint() -> str:
    """
    Derive a stable identifier from host characteristics.

    Returns:
        32 hex characters of a SHA-256 over host name, platform and MAC
    """
    parts = [
        platform.node(),
        platform.system(),
        platform.machine(),
        platform.processor(),
        f'{uuid.getnode():012x}',
    ]
    return hashlib.sha256('|'.join(parts).encode()).hexdigest()[:32]


def load_credential(path: str) -> Optional[DeviceIdentity]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return DeviceIdentity(**data)
    except (OSError, ValueError, TypeError) as e:
        logger.error(f'Device credential {path} is unreadable: {e}')
        return None


def save_credential(path: str, identity: DeviceIdentity) -> None:
    tmp_path = f'{path}.tmp'
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(identity.to_dict(), f, indent=2)
    os.replace(tmp_path, path)


class DeviceRegistry:
    """Registers this kiosk and resolves its identity on start."""

    def __init__(self, ledger, credential_file: str):
        self.ledger = ledger
        self.credential_file = credential_file

    def register(self, name: str, code: str, location_id: str) -> DeviceIdentity:
        """
        Register this kiosk with the ledger and persist the credential.

        Raises:
            LedgerRejectedError: Unknown location or duplicate device code
        """
        identifier = hardware_fingerprint()
        result = self.ledger.register_device(name, code, identifier, location_id)
        identity = DeviceIdentity(
            device_id=result.device_id,
            name=name,
            code=code,
            identifier=identifier,
            location_id=location_id,
        )
        save_credential(self.credential_file, identity)
        logger.info(f'✅ {result.message} (device_id={identity.device_id})')
        return identity

    def resolve(self) -> DeviceIdentity:
        """
        Identity of this kiosk: credential file first, then a lookup by
        fingerprint (which is then persisted).

        Raises:
            DeviceNotRegisteredError: Neither source knows this device
        """
        identity = load_credential(self.credential_file)
        if identity is not None:
            logger.info(f'Device {identity.code} ({identity.device_id}) loaded from credential file')
            return identity

        identity = self.ledger.lookup_device(hardware_fingerprint())
        if identity is None:
            raise DeviceNotRegisteredError('Device not registered. Please register this device first.')

        save_credential(self.credential_file, identity)
        logger.info(f'Device {identity.code} found by fingerprint, credential saved')
        return identity
