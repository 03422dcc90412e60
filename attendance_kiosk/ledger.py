"""
Attendance ledger client.

Talks to the remote ledger over its PostgREST style API:
- POST /rest/v1/rpc/<function> for the attendance contracts
- GET/POST/PATCH /rest/v1/<table> for the employee directory, device
  records, heartbeats and enrollment audit logs

Every RPC answer is parsed into one of a closed set of result dataclasses.
Anything else raises LedgerContractError instead of being trusted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import requests

from .config import Config
from .errors import LedgerContractError, LedgerRejectedError, LedgerUnavailableError
from .logging_config import get_logger
from .models import ActionType, DeviceIdentity, EmployeeCurrentStatus, EmployeeStatus
from .network import NetworkMonitor

logger = get_logger(__name__)

HINT_ACTIONS = ('clock_in', 'clock_out', 'location_transfer', 'temp_return')


@dataclass(frozen=True)
class ActionHint:
    """Result of determine_attendance_action."""
    action: str
    message: str
    temp_exit_id: Optional[str] = None
    previous_location_id: Optional[str] = None


@dataclass(frozen=True)
class ActionOutcome:
    """Result of process_attendance_action, start_break and end_break."""
    message: str
    event_id: Optional[str] = None
    duplicate: bool = False


@dataclass(frozen=True)
class TemporaryExitOutcome:
    """Result of request_temporary_exit."""
    temp_exit_id: str
    status: str
    message: str


@dataclass(frozen=True)
class DeviceRegistration:
    """Result of register_device."""
    device_id: str
    message: str


def _require_dict(data: Any, operation: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise LedgerContractError(f'{operation}: expected an object, got {type(data).__name__}')
    return data


def _check_success(data: Dict[str, Any], operation: str) -> None:
    success = data.get('success')
    if success is True:
        return
    if success is False:
        raise LedgerRejectedError(str(data.get('error') or data.get('message') or f'{operation} rejected'))
    raise LedgerContractError(f'{operation}: missing boolean "success"')


def parse_action_hint(data: Any) -> ActionHint:
    data = _require_dict(data, 'determine_attendance_action')
    action = data.get('action')
    if action not in HINT_ACTIONS:
        raise LedgerContractError(f'determine_attendance_action: unknown action {action!r}')
    if action == 'temp_return' and not data.get('temp_exit_id'):
        raise LedgerContractError('determine_attendance_action: temp_return without temp_exit_id')
    return ActionHint(
        action=action,
        message=str(data.get('message', '')),
        temp_exit_id=data.get('temp_exit_id'),
        previous_location_id=data.get('previous_location_id'),
    )


def parse_action_outcome(data: Any, operation: str) -> ActionOutcome:
    data = _require_dict(data, operation)
    _check_success(data, operation)
    return ActionOutcome(
        message=str(data.get('message', '')),
        event_id=data.get('event_id') or data.get('break_id'),
        duplicate=bool(data.get('duplicate', False)),
    )


def parse_temporary_exit(data: Any) -> TemporaryExitOutcome:
    data = _require_dict(data, 'request_temporary_exit')
    _check_success(data, 'request_temporary_exit')
    if not data.get('temp_exit_id') or data.get('status') not in ('approved', 'pending'):
        raise LedgerContractError('request_temporary_exit: missing temp_exit_id or status')
    return TemporaryExitOutcome(
        temp_exit_id=str(data['temp_exit_id']),
        status=data['status'],
        message=str(data.get('message', '')),
    )


def parse_device_registration(data: Any) -> DeviceRegistration:
    data = _require_dict(data, 'register_device')
    _check_success(data, 'register_device')
    if not data.get('device_id'):
        raise LedgerContractError('register_device: success without device_id')
    return DeviceRegistration(device_id=str(data['device_id']), message=str(data.get('message', '')))


def _parse_action_type(value: Any) -> Optional[ActionType]:
    if value is None:
        return None
    # the ledger stores temporary exits as temp_out/temp_in events
    aliases = {'temp_out': 'temp_exit', 'temp_in': 'temp_return'}
    try:
        return ActionType(aliases.get(value, value))
    except ValueError:
        raise LedgerContractError(f'unknown event type {value!r}')


def parse_employee_status(data: Any) -> EmployeeCurrentStatus:
    data = _require_dict(data, 'get_employee_current_status_with_breaks')
    status = data.get('status')
    location_id = data.get('location_id')
    last_event_type = _parse_action_type(data.get('last_event_type'))

    if status == 'temporary_exit':
        if not data.get('temp_exit_id'):
            raise LedgerContractError('temporary_exit status without temp_exit_id')
        return EmployeeCurrentStatus(
            EmployeeStatus.TEMPORARY_EXIT,
            location_id=location_id,
            last_event_type=last_event_type or ActionType.TEMP_EXIT,
            temp_exit_id=str(data['temp_exit_id']),
            exit_reason=data.get('exit_reason'),
        )
    if status == 'on_break':
        return EmployeeCurrentStatus(
            EmployeeStatus.ON_BREAK,
            location_id=location_id,
            last_event_type=last_event_type or ActionType.BREAK_START,
            break_id=data.get('break_id'),
        )
    if status == 'checked_in':
        if not location_id:
            raise LedgerContractError('checked_in status without location_id')
        return EmployeeCurrentStatus(
            EmployeeStatus.PRESENT,
            location_id=location_id,
            last_event_type=last_event_type or ActionType.CLOCK_IN,
        )
    if status == 'checked_out':
        return EmployeeCurrentStatus(
            EmployeeStatus.ABSENT,
            location_id=location_id,
            last_event_type=last_event_type,
        )
    raise LedgerContractError(f'unknown employee status {status!r}')


class LedgerClient:
    """
    HTTP client for the attendance ledger.

    Transport failures, timeouts and 5xx/408/429 answers raise
    LedgerUnavailableError and flip the shared NetworkMonitor offline; any
    answer at all flips it back online.
    """

    def __init__(self, base_url: str, api_key: str = '', timeout: float = 5.0,
                 status_timeout: Optional[float] = None,
                 monitor: Optional[NetworkMonitor] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.status_timeout = status_timeout or timeout
        self.monitor = monitor or NetworkMonitor()
        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})
        if api_key:
            self.session.headers.update({
                'apikey': api_key,
                'Authorization': f'Bearer {api_key}',
            })

    @classmethod
    def from_config(cls, config: Config, monitor: Optional[NetworkMonitor] = None) -> 'LedgerClient':
        return cls(config.ledger_url, config.ledger_api_key, config.ledger_timeout,
                   config.ledger_status_timeout, monitor)

    # ------------------------------------------------------------------
    # Transport

    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> Any:
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            self.monitor.mark_offline(str(e))
            raise LedgerUnavailableError(f'{method} {path}: {e}') from e

        if response.status_code >= 500 or response.status_code in (408, 429):
            self.monitor.mark_offline(f'HTTP {response.status_code}')
            raise LedgerUnavailableError(f'{method} {path}: HTTP {response.status_code}')

        self.monitor.mark_online()

        if response.status_code >= 400:
            raise LedgerRejectedError(f'{method} {path}: HTTP {response.status_code} {response.text[:200]}')

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise LedgerContractError(f'{method} {path}: response is not JSON') from e

    def _rpc(self, function: str, body: Dict[str, Any], idempotency_key: Optional[str] = None,
             timeout: Optional[float] = None) -> Any:
        headers = {}
        if idempotency_key:
            body = dict(body, idempotency_key=idempotency_key)
            headers['Idempotency-Key'] = idempotency_key
        return self._request('POST', f'/rest/v1/rpc/{function}', timeout=timeout,
                             json=body, headers=headers)

    # ------------------------------------------------------------------
    # Attendance contracts

    def determine_attendance_action(self, employee_id: str, location_id: str) -> ActionHint:
        data = self._rpc('determine_attendance_action', {
            'emp_id': employee_id,
            'current_location_id': location_id,
        })
        return parse_action_hint(data)

    def get_employee_status(self, employee_id: str) -> EmployeeCurrentStatus:
        data = self._rpc('get_employee_current_status_with_breaks', {'emp_id': employee_id},
                         timeout=self.status_timeout)
        return parse_employee_status(data)

    def process_attendance_action(self, employee_id: str, location_id: str, device_id: str,
                                  action_type: str, confidence: Optional[float] = None,
                                  notes: Optional[str] = None, temp_exit_id: Optional[str] = None,
                                  idempotency_key: Optional[str] = None) -> ActionOutcome:
        data = self._rpc('process_attendance_action', {
            'emp_id': employee_id,
            'location_id': location_id,
            'device_id': device_id,
            'action_type': action_type,
            'confidence_score': confidence,
            'notes': notes,
            'temp_exit_id': temp_exit_id,
        }, idempotency_key)
        return parse_action_outcome(data, 'process_attendance_action')

    def start_break(self, employee_id: str, location_id: str, device_id: str,
                    break_type: str = 'regular', planned_minutes: int = 15,
                    idempotency_key: Optional[str] = None) -> ActionOutcome:
        data = self._rpc('start_break', {
            'emp_id': employee_id,
            'location_id': location_id,
            'device_id': device_id,
            'break_type': break_type,
            'planned_duration': planned_minutes,
        }, idempotency_key)
        return parse_action_outcome(data, 'start_break')

    def end_break(self, employee_id: str, location_id: str, device_id: str,
                  idempotency_key: Optional[str] = None) -> ActionOutcome:
        data = self._rpc('end_break', {
            'emp_id': employee_id,
            'location_id': location_id,
            'device_id': device_id,
        }, idempotency_key)
        return parse_action_outcome(data, 'end_break')

    def request_temporary_exit(self, employee_id: str, location_id: str, device_id: str,
                               reason: str, estimated_hours: float = 1.0,
                               idempotency_key: Optional[str] = None) -> TemporaryExitOutcome:
        data = self._rpc('request_temporary_exit', {
            'emp_id': employee_id,
            'location_id': location_id,
            'device_id': device_id,
            'exit_reason': reason,
            'estimated_duration_hours': estimated_hours,
        }, idempotency_key)
        return parse_temporary_exit(data)

    def register_device(self, name: str, code: str, identifier: str, location_id: str) -> DeviceRegistration:
        data = self._rpc('register_device', {
            'device_name': name,
            'device_code': code,
            'device_identifier': identifier,
            'location_id': location_id,
        })
        return parse_device_registration(data)

    def deliver(self, payload: Dict[str, Any], idempotency_key: str) -> str:
        """
        Deliver one queued attendance payload through the matching contract.

        Returns:
            The ledger's human readable message
        """
        action = ActionType(payload['action'])
        common = dict(
            employee_id=payload['employee_id'],
            location_id=payload['location_id'],
            device_id=payload['device_id'],
            idempotency_key=idempotency_key,
        )
        if action == ActionType.BREAK_START:
            outcome = self.start_break(
                break_type=payload.get('break_type', 'regular'),
                planned_minutes=int(payload.get('planned_minutes', 15)),
                **common,
            )
        elif action == ActionType.BREAK_END:
            outcome = self.end_break(**common)
        elif action == ActionType.TEMP_EXIT:
            outcome = self.request_temporary_exit(
                reason=payload.get('exit_reason', 'Other'),
                estimated_hours=float(payload.get('estimated_hours', 1.0)),
                **common,
            )
        else:
            outcome = self.process_attendance_action(
                action_type=action.value,
                confidence=payload.get('confidence'),
                notes=payload.get('notes'),
                temp_exit_id=payload.get('temp_exit_id'),
                **common,
            )
        return outcome.message

    # ------------------------------------------------------------------
    # Directory, devices, audit

    def fetch_enrolled_employees(self) -> List[Dict[str, Any]]:
        data = self._request('GET', '/rest/v1/employees', params={
            'select': 'id,employee_code,full_name,is_active,face_registered,'
                      'face_encodings,face_registration_date',
            'is_active': 'eq.true',
            'face_registered': 'eq.true',
        })
        if not isinstance(data, list):
            raise LedgerContractError('employees: expected a list')
        return data

    def fetch_employee(self, employee_id: str) -> Optional[Dict[str, Any]]:
        data = self._request('GET', '/rest/v1/employees', params={
            'select': 'id,employee_code,full_name,is_active,face_registered',
            'id': f'eq.{employee_id}',
        })
        if not isinstance(data, list):
            raise LedgerContractError('employees: expected a list')
        return data[0] if data else None

    def save_face_template(self, employee_id: str, descriptors: Sequence[np.ndarray],
                           quality_scores: Sequence[float]) -> None:
        """Write all descriptors and flip face_registered in one request."""
        self._request('PATCH', '/rest/v1/employees', params={'id': f'eq.{employee_id}'}, json={
            'face_encodings': [np.asarray(d, dtype=float).tolist() for d in descriptors],
            'face_quality_scores': [float(s) for s in quality_scores],
            'face_registered': True,
            'face_registration_date': datetime.now(timezone.utc).isoformat(),
        }, headers={'Prefer': 'return=minimal'})

    def log_face_registration(self, employee_id: str, success: bool, quality_score: float,
                              attempt_number: int = 1, error: Optional[str] = None) -> None:
        self._request('POST', '/rest/v1/face_registration_logs', json={
            'employee_id': employee_id,
            'attempt_number': attempt_number,
            'success': success,
            'quality_score': round(float(quality_score), 3),
            'error_message': error,
        }, headers={'Prefer': 'return=minimal'})

    def lookup_device(self, identifier: str) -> Optional[DeviceIdentity]:
        data = self._request('GET', '/rest/v1/devices', params={
            'select': 'id,device_name,device_code,device_identifier,location_id,locations(location_name)',
            'device_identifier': f'eq.{identifier}',
            'is_active': 'eq.true',
        })
        if not isinstance(data, list):
            raise LedgerContractError('devices: expected a list')
        if not data:
            return None
        row = data[0]
        return DeviceIdentity(
            device_id=str(row['id']),
            name=row.get('device_name', ''),
            code=row.get('device_code', ''),
            identifier=row.get('device_identifier', identifier),
            location_id=str(row['location_id']),
            location_name=(row.get('locations') or {}).get('location_name', ''),
        )

    def send_heartbeat(self, payload: Dict[str, Any]) -> None:
        self._request('POST', '/rest/v1/device_heartbeats', json=payload,
                      headers={'Prefer': 'return=minimal'})
