"""
Configuration module for the attendance kiosk.

Loads configuration from environment variables with sensible defaults.
All settings are immutable after initialization.
"""

import os
from dataclasses import dataclass


MATCH_METRICS = ('cosine', 'euclidean')


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for the kiosk.

    Ledger Integration:
        ledger_url: Base URL of the attendance ledger (PostgREST style API)
        ledger_api_key: API key sent as `apikey` and bearer token
        ledger_timeout: Per-request timeout in seconds
        ledger_status_timeout: Timeout of the status read made while a recognition
            is being processed

    Device:
        device_credential_file: JSON file holding the registered device identity
        device_name / device_code / location_id: Used by `register`

    Camera:
        camera_source: Camera index (0, 1, 2) or stream URL
        camera_retries: Connection attempts before giving up

    Quality Thresholds:
        min_face_ratio / max_face_ratio: Face area as a share of the frame
        max_yaw_degrees / max_pitch_degrees: Head pose tolerance
        min_brightness / max_brightness: Mean gray level bounds of the face crop
        min_blur_variance: Minimum Laplacian variance (higher = sharper required)
        min_detection_score: Minimum detector confidence

    Matching:
        match_metric: 'cosine' or 'euclidean'
        match_threshold: Maximum distance accepted as a match
        match_ambiguity_epsilon: Two employees closer than this are ambiguous

    Runtime:
        detection_interval: Seconds between recognition ticks
        confirm_hold_seconds: How long a match is shown before processing
        result_hold_seconds: How long success/error stays on screen
        cooldown_seconds: Minimum gap before the same employee is processed again
        recognition_timeout: Attempt window before giving up on a face
        idle_reload_seconds: Idle time before a full reload
        clock_interval: Clock display refresh period

    Templates:
        reload_templates_interval: Seconds between template refreshes
        cache_file: Path to template cache file

    Sync:
        queue_db: SQLite file backing the offline queue
        sync_interval: Seconds between queue drains
        sync_max_attempts: Attempts before an item is a permanent failure
        sync_backoff_base / sync_backoff_max: Exponential backoff bounds

    Heartbeat:
        heartbeat_interval: Seconds between heartbeats
        heartbeat_retries: Attempts per heartbeat

    Service:
        http_port: Port of the local Flask surface
        voice_enabled: Announce results
        debug_mode: Enable debug logging
    """

    # Ledger
    ledger_url: str
    ledger_api_key: str
    ledger_timeout: float
    ledger_status_timeout: float

    # Device
    device_credential_file: str
    device_name: str
    device_code: str
    location_id: str

    # Camera
    camera_source: str
    camera_retries: int

    # Quality
    min_face_ratio: float
    max_face_ratio: float
    max_yaw_degrees: float
    max_pitch_degrees: float
    min_brightness: float
    max_brightness: float
    min_blur_variance: float
    min_detection_score: float

    # Matching
    match_metric: str
    match_threshold: float
    match_ambiguity_epsilon: float

    # Runtime
    detection_interval: float
    confirm_hold_seconds: float
    result_hold_seconds: float
    cooldown_seconds: float
    recognition_timeout: float
    idle_reload_seconds: float
    clock_interval: float

    # Templates
    reload_templates_interval: float
    cache_file: str

    # Sync
    queue_db: str
    sync_interval: float
    sync_max_attempts: int
    sync_backoff_base: float
    sync_backoff_max: float

    # Heartbeat
    heartbeat_interval: float
    heartbeat_retries: int

    # Service
    http_port: int
    voice_enabled: bool
    debug_mode: bool


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


def load_config() -> Config:
    """
    Load configuration from environment variables.

    Returns:
        Config: Immutable configuration object

    Raises:
        ValueError: If MATCH_METRIC is not a supported metric
    """
    metric = os.getenv('MATCH_METRIC', 'cosine').lower()
    if metric not in MATCH_METRICS:
        raise ValueError(f'MATCH_METRIC must be one of {MATCH_METRICS}, got {metric!r}')

    return Config(
        # Ledger
        ledger_url=os.getenv('LEDGER_URL', 'http://localhost:54321').rstrip('/'),
        ledger_api_key=os.getenv('LEDGER_API_KEY', ''),
        ledger_timeout=float(os.getenv('LEDGER_TIMEOUT', '5')),
        ledger_status_timeout=float(os.getenv('LEDGER_STATUS_TIMEOUT', '2')),

        # Device
        device_credential_file=os.getenv('DEVICE_CREDENTIAL_FILE', 'device.json'),
        device_name=os.getenv('DEVICE_NAME', ''),
        device_code=os.getenv('DEVICE_CODE', ''),
        location_id=os.getenv('LOCATION_ID', ''),

        # Camera
        camera_source=os.getenv('CAMERA_SOURCE', '0'),
        camera_retries=int(os.getenv('CAMERA_RETRIES', '5')),

        # Quality
        min_face_ratio=float(os.getenv('MIN_FACE_RATIO', '0.05')),
        max_face_ratio=float(os.getenv('MAX_FACE_RATIO', '0.4')),
        max_yaw_degrees=float(os.getenv('MAX_YAW', '25')),
        max_pitch_degrees=float(os.getenv('MAX_PITCH', '20')),
        min_brightness=float(os.getenv('MIN_BRIGHTNESS', '40')),
        max_brightness=float(os.getenv('MAX_BRIGHTNESS', '220')),
        min_blur_variance=float(os.getenv('MIN_BLUR_VAR', '50.0')),
        min_detection_score=float(os.getenv('MIN_DET_SCORE', '0.6')),

        # Matching
        match_metric=metric,
        match_threshold=float(os.getenv('MATCH_THRESHOLD', '0.6')),
        match_ambiguity_epsilon=float(os.getenv('MATCH_AMBIGUITY_EPSILON', '0.05')),

        # Runtime
        detection_interval=float(os.getenv('DETECTION_INTERVAL', '2.0')),
        confirm_hold_seconds=float(os.getenv('CONFIRM_HOLD', '1.5')),
        result_hold_seconds=float(os.getenv('RESULT_HOLD', '3.0')),
        cooldown_seconds=float(os.getenv('COOLDOWN_SECONDS', '30')),
        recognition_timeout=float(os.getenv('RECOGNITION_TIMEOUT', '10')),
        idle_reload_seconds=float(os.getenv('IDLE_RELOAD_SECONDS', '300')),
        clock_interval=float(os.getenv('CLOCK_INTERVAL', '1.0')),

        # Templates
        reload_templates_interval=float(os.getenv('RELOAD_INTERVAL', '300')),
        cache_file=os.getenv('CACHE_FILE', 'face_templates_cache.pkl'),

        # Sync
        queue_db=os.getenv('QUEUE_DB', 'offline_queue.db'),
        sync_interval=float(os.getenv('SYNC_INTERVAL', '5')),
        sync_max_attempts=int(os.getenv('SYNC_MAX_ATTEMPTS', '8')),
        sync_backoff_base=float(os.getenv('SYNC_BACKOFF_BASE', '2')),
        sync_backoff_max=float(os.getenv('SYNC_BACKOFF_MAX', '300')),

        # Heartbeat
        heartbeat_interval=float(os.getenv('HEARTBEAT_INTERVAL', '30')),
        heartbeat_retries=int(os.getenv('HEARTBEAT_RETRIES', '3')),

        # Service
        http_port=int(os.getenv('HTTP_PORT', '5001')),
        voice_enabled=_flag('VOICE_ENABLED', 'true'),
        debug_mode=_flag('DEBUG', 'false'),
    )
