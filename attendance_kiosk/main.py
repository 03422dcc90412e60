"""
Attendance Kiosk - Main Entry Point

Face recognition attendance kiosk for one device at one location.

Commands:
- run: start the kiosk runtime and its HTTP API
- register: one-time registration of this device with the ledger
- enroll: three-pose face enrollment of an employee using the kiosk camera
"""

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .app import create_app
from .announcer import LoggingAnnouncer
from .camera import OpenCVCameraSource
from .config import Config, load_config
from .device import DeviceRegistry
from .employees import TemplateStore, employee_from_record
from .errors import DeviceNotRegisteredError, KioskError, ModelLoadError
from .face_app import InsightFaceExtractor
from .ledger import LedgerClient
from .logging_config import get_logger, setup_logging
from .network import NetworkMonitor
from .offline_queue import OfflineQueue
from .recognition.enrollment import EnrollmentWorkflow, run_enrollment
from .runtime import KioskRuntime
from .storage import SqliteQueueStorage

logger = get_logger(__name__)


def _load_local_env() -> None:
    """Load environment variables from attendance_kiosk/.env if present."""
    env_path = Path(__file__).resolve().parent / '.env'
    if not env_path.exists():
        return

    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Attendance Kiosk - Face Recognition Attendance'
    )
    parser.add_argument(
        '--ledger-url',
        type=str,
        help='Ledger service URL (or set LEDGER_URL)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Run the kiosk')
    run_parser.add_argument(
        '--port',
        type=int,
        help='HTTP API port (or set HTTP_PORT)'
    )

    register_parser = subparsers.add_parser('register', help='Register this device')
    register_parser.add_argument('--name', required=True, help='Device name')
    register_parser.add_argument('--code', required=True, help='Unique device code')
    register_parser.add_argument('--location', required=True, help='Location id')

    enroll_parser = subparsers.add_parser('enroll', help='Enroll an employee face')
    enroll_parser.add_argument('--employee-id', required=True, help='Employee id')
    enroll_parser.add_argument(
        '--timeout',
        type=float,
        default=120.0,
        help='Seconds to wait for three good captures'
    )

    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> Config:
    config = load_config()
    if args.ledger_url:
        config = replace(config, ledger_url=args.ledger_url)
    if args.debug:
        config = replace(config, debug_mode=True)
    if getattr(args, 'port', None):
        config = replace(config, http_port=args.port)
    if not config.ledger_url:
        raise SystemExit('Missing ledger URL. Provide --ledger-url or set LEDGER_URL in .env/environment.')
    return config


def _load_extractor():
    """InsightFace extractor, or None when the model cannot be loaded."""
    try:
        return InsightFaceExtractor.load()
    except ModelLoadError as e:
        logger.error(f'❌ Face model unavailable, switching to manual mode: {e}')
        return None


def cmd_run(config: Config) -> int:
    monitor = NetworkMonitor()
    ledger = LedgerClient.from_config(config, monitor)
    device = DeviceRegistry(ledger, config.device_credential_file).resolve()
    setup_logging(device.code, config.debug_mode)

    extractor = _load_extractor()
    queue = OfflineQueue(
        SqliteQueueStorage(config.queue_db),
        ledger.deliver,
        monitor=monitor,
        max_attempts=config.sync_max_attempts,
        backoff_base=config.sync_backoff_base,
        backoff_max=config.sync_backoff_max,
    )
    if len(queue):
        logger.info(f'📦 {len(queue)} undelivered events restored from {config.queue_db}')

    camera = OpenCVCameraSource(config.camera_source, max_retries=config.camera_retries)
    runtime = KioskRuntime(
        config, device, ledger, TemplateStore(), queue, camera,
        extractor=extractor, announcer=LoggingAnnouncer(config.voice_enabled),
    )

    with runtime:
        app = create_app(runtime)
        logger.info(f'HTTP API: http://localhost:{config.http_port}/status')
        app.run(
            host='0.0.0.0',
            port=config.http_port,
            threaded=True,
            debug=False,
            use_reloader=False
        )
    return 0


def cmd_register(config: Config, args: argparse.Namespace) -> int:
    ledger = LedgerClient.from_config(config)
    identity = DeviceRegistry(ledger, config.device_credential_file).register(
        args.name, args.code, args.location,
    )
    print(f'Registered device {identity.code}: {identity.device_id}')
    print(f'Credential saved to {config.device_credential_file}')
    return 0


def cmd_enroll(config: Config, args: argparse.Namespace) -> int:
    ledger = LedgerClient.from_config(config)
    record = ledger.fetch_employee(args.employee_id)
    if record is None:
        print(f'Unknown employee {args.employee_id}')
        return 1
    record = dict(record, face_registered=False, face_encodings=None)
    employee = employee_from_record(record)

    extractor = InsightFaceExtractor.load()
    camera = OpenCVCameraSource(config.camera_source, max_retries=config.camera_retries)
    workflow = EnrollmentWorkflow(
        employee, extractor, TemplateStore(), config,
        persist=lambda emp, template: ledger.save_face_template(
            emp.id, template.descriptors, template.quality_scores,
        ),
        audit=lambda emp_id, success, score, attempt, error: ledger.log_face_registration(
            emp_id, success, score, attempt_number=attempt, error=error,
        ),
    )

    camera.open()
    try:
        done = run_enrollment(workflow, camera, extractor, timeout=args.timeout, on_progress=print)
    finally:
        camera.release()

    if not done:
        print(f'Enrollment did not complete ({workflow.captured}/{workflow.total_poses} poses captured)')
        return 1
    print(f'Face registered for {employee.full_name or employee.id}')
    return 0


def main(argv=None) -> None:
    """Main entry point."""
    _load_local_env()
    args = parse_args(argv)
    config = _build_config(args)

    setup_logging(config.device_code or args.command, config.debug_mode)

    logger.info('=' * 60)
    logger.info(f'Attendance Kiosk - {args.command}')
    logger.info('=' * 60)
    logger.info(f'Ledger: {config.ledger_url}')
    logger.info('=' * 60)

    try:
        if args.command == 'run':
            code = cmd_run(config)
        elif args.command == 'register':
            code = cmd_register(config, args)
        else:
            code = cmd_enroll(config, args)
    except KeyboardInterrupt:
        logger.info('Received keyboard interrupt, shutting down...')
        code = 0
    except DeviceNotRegisteredError as e:
        logger.error(f'{e} Run `attendance-kiosk register` first.')
        code = 2
    except KioskError as e:
        logger.error(f'Fatal error: {e}', exc_info=True)
        code = 1
    sys.exit(code)


if __name__ == '__main__':
    main()
