"""
Device heartbeat module.

Reports device, camera and network health to the ledger on its own timer.
A failed heartbeat is logged and dropped; it never touches the offline
queue or the recognition loop.
"""

import time
from typing import Callable, Optional

from .errors import KioskError, LedgerUnavailableError
from .logging_config import get_logger
from .models import DeviceIdentity
from .network import NetworkMonitor
from .utils.timing import retry_with_backoff

logger = get_logger(__name__)

CAMERA_STATUSES = ('working', 'error', 'permission_denied')
MANUAL_MODE_NOTE = 'Manual mode: face recognition unavailable'


class DeviceHeartbeat:
    """
    Sends periodic liveness reports.

    Args:
        ledger: Client exposing send_heartbeat(payload)
        device: This kiosk's identity (its online flag is updated)
        monitor: Shared network availability signal
        camera_status: Callable returning one of CAMERA_STATUSES
        manual_mode: Callable telling whether recognition is intentionally off;
            such a kiosk reports itself online with MANUAL_MODE_NOTE
        max_attempts: Attempts per heartbeat
    """

    def __init__(self, ledger, device: DeviceIdentity, monitor: NetworkMonitor,
                 camera_status: Callable[[], str],
                 manual_mode: Callable[[], bool] = lambda: False,
                 max_attempts: int = 3,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.device = device
        self.monitor = monitor
        self.camera_status = camera_status
        self.manual_mode = manual_mode
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.clock = clock
        self.last_sent: Optional[float] = None
        self.last_error: Optional[str] = None

    def build_payload(self) -> dict:
        camera = self.camera_status()
        if camera not in CAMERA_STATUSES:
            camera = 'error'
        status = 'online' if camera == 'working' else 'error'
        error_message = self.last_error
        if self.manual_mode():
            # the camera is closed on purpose, not failing
            status = 'online'
            error_message = error_message or MANUAL_MODE_NOTE
        return {
            'device_id': self.device.device_id,
            'status': status,
            'camera_status': camera,
            'network_status': 'connected' if self.monitor.online else 'disconnected',
            'error_message': error_message,
        }

    def beat(self) -> bool:
        """
        Send one heartbeat, retrying transport failures with backoff.

        Returns:
            True if the ledger accepted it
        """
        payload = self.build_payload()
        try:
            retry_with_backoff(
                lambda: self.ledger.send_heartbeat(payload),
                max_attempts=self.max_attempts,
                initial_delay=1.0,
                retry_on=(LedgerUnavailableError,),
                sleep=self.sleep,
            )
        except KioskError as e:
            self.device.online = False
            self.last_error = str(e)
            logger.warning(f'💔 Heartbeat failed: {e}')
            return False

        self.device.online = True
        self.last_sent = self.clock()
        self.last_error = None
        logger.debug(f"💓 Heartbeat sent (camera={payload['camera_status']}, network={payload['network_status']})")
        return True
