"""
Camera capability module.

The runtime only sees the CameraSource interface. OpenCVCameraSource backs it
with cv2.VideoCapture for:
- Local webcams (index 0, 1, 2)
- RTSP / HTTP streams

Includes connection retries with exponential backoff and reconnection after
repeated read failures.
"""

import time
from typing import Callable, Optional, Protocol, Union
from urllib.parse import urlsplit, urlunsplit

import cv2
import numpy as np

from .errors import CameraUnavailableError
from .logging_config import get_logger

logger = get_logger(__name__)

MAX_READ_FAILURES = 10


class CameraSource(Protocol):
    """Exclusive handle on the kiosk camera."""

    @property
    def is_open(self) -> bool:
        ...

    def open(self) -> None:
        """Raises CameraUnavailableError if the camera cannot be opened."""
        ...

    def read(self) -> Optional[np.ndarray]:
        """Next frame, or None if this read failed."""
        ...

    def release(self) -> None:
        ...


def _sanitize_url(url: str) -> str:
    """Remove password from URL for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.hostname or ''
    if parts.port:
        netloc = f'{netloc}:{parts.port}'
    if parts.username:
        netloc = f'{parts.username}@{netloc}'
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _parse_source(camera_source: str) -> Union[int, str]:
    try:
        return int(camera_source)
    except ValueError:
        return camera_source


class OpenCVCameraSource:
    """
    cv2.VideoCapture backed camera.

    Args:
        camera_source: Camera index or stream URL
        max_retries: Connection attempts per open()
        sleep: Sleep function used between attempts
    """

    def __init__(self, camera_source: str, max_retries: int = 5,
                 sleep: Callable[[float], None] = time.sleep):
        self.camera_source = camera_source
        self.max_retries = max_retries
        self.sleep = sleep
        self._capture: Optional[cv2.VideoCapture] = None
        self._consecutive_failures = 0

    @property
    def is_open(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    def open(self) -> None:
        source = _parse_source(self.camera_source)
        camera_type = 'local' if isinstance(source, int) else 'stream'
        label = source if camera_type == 'local' else _sanitize_url(source)

        for attempt in range(self.max_retries):
            logger.info(f'Connecting to {camera_type} camera {label} (attempt {attempt + 1}/{self.max_retries})...')
            capture = cv2.VideoCapture(source)

            if capture is not None and capture.isOpened():
                if isinstance(source, str) and source.startswith('rtsp://'):
                    capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
                ret, frame = capture.read()
                if ret and frame is not None:
                    logger.info(f'✅ Camera connected ({camera_type}), frame size {frame.shape[1]}x{frame.shape[0]}')
                    self._capture = capture
                    self._consecutive_failures = 0
                    return
                logger.warning('Camera opened but failed to read frame')
                capture.release()
            else:
                logger.warning('Failed to open camera')

            if attempt < self.max_retries - 1:
                wait_time = 2 ** attempt
                logger.info(f'Retrying in {wait_time} seconds...')
                self.sleep(wait_time)

        raise CameraUnavailableError(f'Cannot connect to camera after {self.max_retries} attempts')

    def read(self) -> Optional[np.ndarray]:
        if self._capture is None:
            raise CameraUnavailableError('Camera is not open')

        ret, frame = self._capture.read()
        if ret and frame is not None:
            self._consecutive_failures = 0
            return frame

        self._consecutive_failures += 1
        logger.warning(f'Failed to read frame ({self._consecutive_failures}/{MAX_READ_FAILURES})')
        if self._consecutive_failures >= MAX_READ_FAILURES:
            logger.error(f'Too many failures ({self._consecutive_failures}), reconnecting...')
            self.release()
            self.open()
        return None

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info('Camera released')
