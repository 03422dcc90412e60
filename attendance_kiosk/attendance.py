"""
Attendance decision module.

Decides which attendance action a recognition means for an employee, given
the status the ledger derives from its event history.

Precedence:
1. temporary exit -> temp_return (tagged with the exit request id)
2. on break       -> break_end, wherever the employee is recognized
3. present here   -> clock_out
4. present elsewhere -> transfer_out at the old location, then transfer_in here
5. absent         -> clock_in (or transfer_in completing a split transfer)
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import KioskError, LedgerUnavailableError
from .ledger import ActionHint
from .logging_config import get_logger
from .models import ActionType, EmployeeCurrentStatus, EmployeeStatus

logger = get_logger(__name__)

MESSAGES = {
    ActionType.CLOCK_IN: 'Successfully clocked in. Have a great day!',
    ActionType.CLOCK_OUT: 'Successfully clocked out. See you tomorrow!',
    ActionType.TRANSFER_IN: 'Successfully transferred to this location.',
    ActionType.BREAK_END: 'Welcome back! Break completed.',
    ActionType.TEMP_RETURN: 'Welcome back! Returning from temporary exit.',
    ActionType.BREAK_START: 'Break started. Enjoy your break!',
    ActionType.TEMP_EXIT: 'Temporary exit requested.',
}


@dataclass(frozen=True)
class PlannedAction:
    type: ActionType
    location_id: str
    temp_exit_id: Optional[str] = None


@dataclass(frozen=True)
class AttendanceDecision:
    """
    One recognition's outcome. A transfer is two linked actions in order;
    everything else is a single action.
    """
    actions: Tuple[PlannedAction, ...]
    message: str

    @property
    def primary(self) -> ActionType:
        return self.actions[-1].type

    @property
    def is_transfer(self) -> bool:
        return len(self.actions) == 2


def decide_attendance_action(status: EmployeeCurrentStatus, current_location_id: str) -> AttendanceDecision:
    """
    Decide the attendance action for a recognized employee.

    Args:
        status: Ledger-derived current status of the employee
        current_location_id: Location of this kiosk

    Returns:
        AttendanceDecision with the ordered actions to record
    """
    if status.status == EmployeeStatus.TEMPORARY_EXIT:
        action = PlannedAction(ActionType.TEMP_RETURN, current_location_id, status.temp_exit_id)
        message = MESSAGES[ActionType.TEMP_RETURN]
        if status.exit_reason:
            message = f'Welcome back from temporary exit! ({status.exit_reason})'
        return AttendanceDecision((action,), message)

    if status.status == EmployeeStatus.ON_BREAK:
        return AttendanceDecision(
            (PlannedAction(ActionType.BREAK_END, current_location_id),),
            MESSAGES[ActionType.BREAK_END],
        )

    if status.status == EmployeeStatus.PRESENT:
        if status.location_id == current_location_id:
            return AttendanceDecision(
                (PlannedAction(ActionType.CLOCK_OUT, current_location_id),),
                MESSAGES[ActionType.CLOCK_OUT],
            )
        return AttendanceDecision(
            (
                PlannedAction(ActionType.TRANSFER_OUT, status.location_id),
                PlannedAction(ActionType.TRANSFER_IN, current_location_id),
            ),
            MESSAGES[ActionType.TRANSFER_IN],
        )

    if (status.last_event_type == ActionType.TRANSFER_OUT
            and status.location_id
            and status.location_id != current_location_id):
        return AttendanceDecision(
            (PlannedAction(ActionType.TRANSFER_IN, current_location_id),),
            MESSAGES[ActionType.TRANSFER_IN],
        )

    return AttendanceDecision(
        (PlannedAction(ActionType.CLOCK_IN, current_location_id),),
        MESSAGES[ActionType.CLOCK_IN],
    )


def agrees_with_hint(decision: AttendanceDecision, hint: ActionHint) -> bool:
    """
    Compare a local decision with determine_attendance_action.

    Break handling has no counterpart in the hint contract and always agrees.
    """
    primary = decision.primary
    if primary in (ActionType.BREAK_END, ActionType.BREAK_START):
        return True
    if hint.action == 'temp_return':
        return primary == ActionType.TEMP_RETURN and decision.actions[-1].temp_exit_id == hint.temp_exit_id
    if hint.action == 'location_transfer':
        return decision.is_transfer
    if hint.action == 'clock_out':
        return primary == ActionType.CLOCK_OUT
    return primary in (ActionType.CLOCK_IN, ActionType.TRANSFER_IN) and not decision.is_transfer


def advance_status(status: EmployeeCurrentStatus, payload: Dict[str, Any]) -> EmployeeCurrentStatus:
    """
    Project an undelivered action of this kiosk onto a ledger status.
    """
    action = ActionType(payload['action'])
    location_id = payload.get('location_id')

    if action in (ActionType.CLOCK_IN, ActionType.TRANSFER_IN,
                  ActionType.TEMP_RETURN, ActionType.BREAK_END):
        return EmployeeCurrentStatus(EmployeeStatus.PRESENT, location_id, action)
    if action in (ActionType.CLOCK_OUT, ActionType.TRANSFER_OUT):
        return EmployeeCurrentStatus(EmployeeStatus.ABSENT, location_id, action)
    if action == ActionType.BREAK_START:
        return EmployeeCurrentStatus(EmployeeStatus.ON_BREAK, status.location_id or location_id, action)
    # a temporary exit request only becomes an exit once approved and used
    return status


class StatusResolver:
    """
    Reads an employee's status from the ledger.

    When the ledger is unreachable the last status it reported is used.
    Either way, actions this kiosk decided but has not delivered yet are
    projected on top, so consecutive offline recognitions stay consistent.
    """

    def __init__(self, ledger: Any, pending_for: Any):
        self.ledger = ledger
        self.pending_for = pending_for
        self._last_known: Dict[str, EmployeeCurrentStatus] = {}

    def resolve(self, employee_id: str) -> Tuple[EmployeeCurrentStatus, bool]:
        """
        Returns:
            Tuple of (status, True if the ledger answered this time)
        """
        from_ledger = True
        try:
            status = self.ledger.get_employee_status(employee_id)
            self._last_known[employee_id] = status
        except LedgerUnavailableError as e:
            logger.warning(f'Status query failed for {employee_id}, using last known status: {e}')
            status = self._last_known.get(employee_id, EmployeeCurrentStatus.absent())
            from_ledger = False

        pending: Iterable[Any] = self.pending_for(employee_id)
        for item in pending:
            status = advance_status(status, item.payload)
        return status, from_ledger

    def record_delivery(self, item: Any) -> None:
        """
        Move the last known status past an item the ledger just accepted, so
        an outage right after delivery does not fall back to a stale status.
        """
        employee_id = item.employee_id
        known = self._last_known.get(employee_id, EmployeeCurrentStatus.absent())
        self._last_known[employee_id] = advance_status(known, item.payload)

    def verify(self, employee_id: str, location_id: str, decision: AttendanceDecision) -> Optional[bool]:
        """
        Cross-check a decision against the ledger's own hint.

        Returns:
            True/False for agreement, None when the ledger could not be asked
        """
        try:
            hint = self.ledger.determine_attendance_action(employee_id, location_id)
        except KioskError as e:
            logger.debug(f'Ledger hint unavailable for {employee_id}: {e}')
            return None
        agrees = agrees_with_hint(decision, hint)
        if not agrees:
            logger.warning(
                f'Decision {decision.primary.value} for {employee_id} differs from ledger hint {hint.action}'
            )
        return agrees
