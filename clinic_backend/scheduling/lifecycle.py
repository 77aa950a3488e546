"""
Appointment status state machine.

SCHEDULED -> CHECKED_IN | CANCELLED | ABSENT
CHECKED_IN -> IN_PROGRESS | CANCELLED
IN_PROGRESS -> COMPLETED | CANCELLED
COMPLETED, CANCELLED, ABSENT -> (terminal)

A transition never mutates the appointment it is given: it returns a new
snapshot, the audit entry to persist and the plan-item commands to dispatch
once the appointment's own change is committed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import NamedTuple, Optional

from clinic_backend.core.errors import InvalidTransition, LifecycleInvariantError, NoOpTransition, ValidationError
from clinic_backend.scheduling.types import (
    AppointmentRecord,
    AppointmentStatus,
    AuditAction,
    AuditEntry,
    PlanItemStatus,
    PlanItemSyncCommand,
    ReasonCode,
)

ALLOWED_TRANSITIONS = MappingProxyType({
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.ABSENT,
    }),
    AppointmentStatus.CHECKED_IN: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.ABSENT: frozenset(),
})

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

PLAN_ITEM_TARGETS = MappingProxyType({
    AppointmentStatus.IN_PROGRESS: PlanItemStatus.IN_PROGRESS,
    AppointmentStatus.COMPLETED: PlanItemStatus.COMPLETED,
    AppointmentStatus.CANCELLED: PlanItemStatus.READY_FOR_BOOKING,
})


class StatusPresentation(NamedTuple):
    label: str
    colour: str


STATUS_PRESENTATION = MappingProxyType({
    AppointmentStatus.SCHEDULED: StatusPresentation('Scheduled', 'blue'),
    AppointmentStatus.CHECKED_IN: StatusPresentation('Checked in', 'purple'),
    AppointmentStatus.IN_PROGRESS: StatusPresentation('In progress', 'orange'),
    AppointmentStatus.COMPLETED: StatusPresentation('Completed', 'green'),
    AppointmentStatus.CANCELLED: StatusPresentation('Cancelled', 'red'),
    AppointmentStatus.ABSENT: StatusPresentation('Absent', 'gray'),
})


def _verify_total_mappings() -> None:
    for name, mapping in (('ALLOWED_TRANSITIONS', ALLOWED_TRANSITIONS), ('STATUS_PRESENTATION', STATUS_PRESENTATION)):
        missing = set(AppointmentStatus) - set(mapping)
        if missing:
            raise RuntimeError(f'{name} has no entry for {sorted(status.value for status in missing)}')


_verify_total_mappings()


def status_presentation(status: AppointmentStatus) -> StatusPresentation:
    return STATUS_PRESENTATION[AppointmentStatus(status)]


def parse_status(value: str) -> AppointmentStatus:
    normalized = (value or '').strip().upper()
    if normalized == 'NO_SHOW':
        normalized = AppointmentStatus.ABSENT.value
    try:
        return AppointmentStatus(normalized)
    except ValueError as exc:
        raise ValidationError(
            f'Invalid status value: {value}',
            code='INVALID_STATUS',
            details={'status': value, 'allowed': [status.value for status in AppointmentStatus]},
        ) from exc


def parse_reason_code(value: Optional[str]) -> Optional[ReasonCode]:
    if value is None:
        return None
    if isinstance(value, ReasonCode):
        return value
    normalized = value.strip().upper()
    if not normalized:
        return None
    try:
        return ReasonCode(normalized)
    except ValueError as exc:
        raise ValidationError(
            f'Invalid reason code: {value}',
            code='INVALID_REASON_CODE',
            details={'reason_code': value, 'allowed': [reason.value for reason in ReasonCode]},
        ) from exc


def plan_item_command(
    appointment: AppointmentRecord,
    target_status: PlanItemStatus,
    occurred_at: datetime,
) -> Optional[PlanItemSyncCommand]:
    if not appointment.has_linked_plan_items:
        return None
    return PlanItemSyncCommand(
        appointment_code=appointment.code,
        patient_code=appointment.patient_code,
        treatment_plan_code=appointment.linked_treatment_plan_code,
        plan_item_codes=appointment.plan_item_codes,
        target_status=target_status,
        occurred_at=occurred_at,
    )


@dataclass(frozen=True)
class TransitionResult:
    appointment: AppointmentRecord
    audit: AuditEntry
    commands: list[PlanItemSyncCommand] = field(default_factory=list)


def ensure_status(appointment: AppointmentRecord, expected: AppointmentStatus) -> AppointmentRecord:
    if appointment.status != expected:
        raise LifecycleInvariantError(
            f'Appointment {appointment.code} ended in {appointment.status.value}, expected {expected.value}.',
            details={'appointment_code': appointment.code, 'status': appointment.status.value, 'expected': expected.value},
        )
    return appointment


def validate_transition(current: AppointmentStatus, target: AppointmentStatus, appointment_code: str = '') -> None:
    allowed = ALLOWED_TRANSITIONS[current]
    details = {
        'appointment_code': appointment_code,
        'current_status': current.value,
        'requested_status': target.value,
        'allowed_statuses': sorted(status.value for status in allowed),
    }

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            f'Appointment is in terminal status {current.value}; no further transitions are allowed.',
            details=details,
        )
    if current == target:
        raise NoOpTransition(f'Appointment is already in {current.value} status.', details=details)
    if target not in allowed:
        raise InvalidTransition(f'Cannot transition from {current.value} to {target.value}.', details=details)


def transition(
    appointment: AppointmentRecord,
    target_status: AppointmentStatus,
    reason_code: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    now: datetime,
    performed_by: Optional[str] = None,
    emit_plan_commands: bool = True,
) -> TransitionResult:
    target_status = AppointmentStatus(target_status)
    current = appointment.status
    validate_transition(current, target_status, appointment.code)

    reason = parse_reason_code(reason_code)
    if target_status == AppointmentStatus.CANCELLED and reason is None:
        raise ValidationError(
            'Reason code is required when cancelling an appointment.',
            code='REASON_CODE_REQUIRED',
            details={'appointment_code': appointment.code, 'requested_status': target_status.value},
        )

    changes: dict = {'status': target_status}
    if current == AppointmentStatus.CHECKED_IN and target_status == AppointmentStatus.IN_PROGRESS:
        changes['actual_start_time'] = now
    if current == AppointmentStatus.IN_PROGRESS and target_status == AppointmentStatus.COMPLETED:
        changes['actual_end_time'] = now
    if notes is not None:
        changes['notes'] = notes

    updated = ensure_status(appointment.model_copy(update=changes), target_status)

    commands: list[PlanItemSyncCommand] = []
    if emit_plan_commands and target_status in PLAN_ITEM_TARGETS:
        command = plan_item_command(updated, PLAN_ITEM_TARGETS[target_status], now)
        if command is not None:
            commands.append(command)

    audit = AuditEntry(
        appointment_code=appointment.code,
        action=AuditAction.STATUS_CHANGE,
        old_status=current,
        new_status=target_status,
        reason_code=reason,
        notes=notes,
        performed_by=performed_by,
        created_at=now,
    )
    return TransitionResult(appointment=updated, audit=audit, commands=commands)
