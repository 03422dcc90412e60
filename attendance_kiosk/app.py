"""
Flask application for the kiosk's local HTTP API.

Provides:
- GET /health: Service health check
- GET /status: Runtime state snapshot
- GET /sync: Pending and failed deliveries
- POST /sync/<key>/retry, POST /sync/<key>/discard: Operator resolution
- POST /manual: Manual attendance
- POST /break, POST /temporary-exit: Kiosk requests
- POST /camera/retry: Leave the camera error state
"""

from flask import Flask, jsonify, request
from flask_cors import CORS

from .errors import ActionNotAllowedError, KioskError, LedgerUnavailableError
from .logging_config import get_logger
from .runtime import KioskRuntime
from .utils.timing import format_uptime

logger = get_logger(__name__)


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def create_app(runtime: KioskRuntime) -> Flask:
    """
    Create and configure Flask application.

    Args:
        runtime: Running kiosk runtime

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    CORS(app)

    def _employee_id(body: dict):
        employee_id = body.get('employee_id')
        if not employee_id:
            return None
        return str(employee_id)

    @app.route('/health')
    def health():
        """Health check endpoint."""
        device = runtime.device
        return jsonify({
            'status': 'ok',
            'service': 'attendance-kiosk',
            'device_id': device.device_id,
            'device_code': device.code,
            'online': runtime.queue.monitor.online,
            'camera': runtime.camera_status(),
            'uptime': format_uptime(runtime.clock() - runtime.started_at),
        })

    @app.route('/status')
    def status():
        return jsonify(runtime.snapshot())

    @app.route('/sync')
    def sync():
        return jsonify({
            'pending': [item.to_dict() for item in runtime.queue.pending()],
            'failed': [item.to_dict() for item in runtime.queue.failed()],
        })

    @app.route('/sync/<key>/retry', methods=['POST'])
    def sync_retry(key):
        if not runtime.queue.retry(key):
            return _error(f'No failed item {key}', 404)
        return jsonify({'status': 'requeued', 'idempotency_key': key})

    @app.route('/sync/<key>/discard', methods=['POST'])
    def sync_discard(key):
        if not runtime.queue.discard(key):
            return _error(f'No queued item {key}', 404)
        return jsonify({'status': 'discarded', 'idempotency_key': key})

    @app.route('/manual', methods=['POST'])
    def manual():
        body = request.get_json(silent=True) or {}
        employee_id = _employee_id(body)
        if employee_id is None:
            return _error('employee_id is required', 400)
        try:
            return jsonify(runtime.submit_manual(employee_id, notes=body.get('notes')))
        except LookupError as e:
            return _error(str(e), 404)

    @app.route('/break', methods=['POST'])
    def start_break():
        body = request.get_json(silent=True) or {}
        employee_id = _employee_id(body)
        if employee_id is None:
            return _error('employee_id is required', 400)
        try:
            planned_minutes = int(body.get('planned_minutes', 15))
        except (TypeError, ValueError):
            return _error('planned_minutes must be an integer', 400)
        try:
            return jsonify(runtime.request_break(
                employee_id, body.get('break_type', 'regular'), planned_minutes,
            ))
        except ActionNotAllowedError as e:
            return _error(str(e), 409)

    @app.route('/temporary-exit', methods=['POST'])
    def temporary_exit():
        body = request.get_json(silent=True) or {}
        employee_id = _employee_id(body)
        reason = body.get('reason')
        if employee_id is None or not reason:
            return _error('employee_id and reason are required', 400)
        try:
            hours = float(body.get('estimated_hours', 1.0))
        except (TypeError, ValueError):
            return _error('estimated_hours must be a number', 400)
        try:
            return jsonify(runtime.request_temporary_exit(employee_id, reason, hours))
        except ActionNotAllowedError as e:
            return _error(str(e), 409)

    @app.route('/camera/retry', methods=['POST'])
    def camera_retry():
        ok = runtime.retry_camera()
        return jsonify({'status': 'ok' if ok else 'error', 'camera_error': runtime.camera_error}), (200 if ok else 503)

    @app.errorhandler(LedgerUnavailableError)
    def ledger_unavailable(e):
        logger.warning(f'Request failed, ledger unreachable: {e}')
        return _error(str(e), 503)

    @app.errorhandler(KioskError)
    def kiosk_error(e):
        logger.error(f'Request failed: {e}')
        return _error(str(e), 502)

    return app
