"""
Guards for the two time-changing operations layered on the lifecycle.

Delay keeps the appointment and its resources and moves it later, preserving
its duration. Reschedule is a cancel-plus-create pair that the caller must
apply as one unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from clinic_backend.core.errors import InvalidDelayTime, InvalidTransition, SlotConflict, ValidationError
from clinic_backend.scheduling.conflicts import ResourceConflict, TimeRange, detect_booking_conflicts
from clinic_backend.scheduling.lifecycle import ensure_status, parse_reason_code, plan_item_command, transition
from clinic_backend.scheduling.timeutils import ensure_utc, local_date
from clinic_backend.scheduling.types import (
    AppointmentRecord,
    AppointmentStatus,
    AuditAction,
    AuditEntry,
    PlanItemStatus,
    PlanItemSyncCommand,
    ReasonCode,
)

logger = logging.getLogger(__name__)

MOVABLE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CHECKED_IN})

CONFLICT_CODES = {
    'employee': 'EMPLOYEE_SLOT_TAKEN',
    'participant': 'PARTICIPANT_SLOT_TAKEN',
    'room': 'ROOM_SLOT_TAKEN',
    'patient': 'PATIENT_HAS_CONFLICT',
}

NOT_MOVABLE_CODES = {
    'delay': 'APPOINTMENT_NOT_DELAYABLE',
    'reschedule': 'APPOINTMENT_NOT_RESCHEDULABLE',
}


def slot_conflict_error(conflicts: Sequence[ResourceConflict], window: TimeRange) -> SlotConflict:
    first = conflicts[0]
    return SlotConflict(
        f'{first.resource_type.capitalize()} {first.resource_code} is already booked '
        f'({first.appointment_code}) during {window.start.isoformat()} - {window.end.isoformat()}.',
        code=CONFLICT_CODES.get(first.resource_type, SlotConflict.default_code),
        details={
            'requested_start_time': window.start.isoformat(),
            'requested_end_time': window.end.isoformat(),
            'conflicts': [conflict.to_dict() for conflict in conflicts],
        },
    )


def ensure_movable(appointment: AppointmentRecord, operation: str) -> None:
    if appointment.status not in MOVABLE_STATUSES:
        raise InvalidTransition(
            f'Cannot {operation} appointment in status {appointment.status.value}. '
            f'Only SCHEDULED or CHECKED_IN appointments can be moved.',
            code=NOT_MOVABLE_CODES[operation],
            details={
                'appointment_code': appointment.code,
                'current_status': appointment.status.value,
                'requested_operation': operation,
                'allowed_statuses': sorted(status.value for status in MOVABLE_STATUSES),
            },
        )


@dataclass(frozen=True)
class DelayPlan:
    appointment: AppointmentRecord
    audit: AuditEntry


def plan_delay(
    appointment: AppointmentRecord,
    new_start_time: datetime,
    reason_code: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    existing_appointments: Sequence[AppointmentRecord],
    now: datetime,
    performed_by: Optional[str] = None,
) -> DelayPlan:
    ensure_movable(appointment, 'delay')
    reason = parse_reason_code(reason_code)

    new_start = ensure_utc(new_start_time)
    old_start = appointment.appointment_start_time
    time_details = {
        'appointment_code': appointment.code,
        'current_start_time': old_start.isoformat(),
        'requested_start_time': new_start.isoformat(),
    }
    if new_start <= old_start:
        raise InvalidDelayTime(
            f'New start time ({new_start.isoformat()}) must be after the current start time ({old_start.isoformat()}).',
            details=time_details,
        )
    if new_start < now:
        raise InvalidDelayTime(
            f'Cannot delay appointment to a time in the past: {new_start.isoformat()}.',
            code='DELAY_TIME_IN_PAST',
            details=time_details,
        )

    window = TimeRange(new_start, new_start + appointment.duration)
    conflicts = detect_booking_conflicts(
        window,
        employee_code=appointment.employee_code,
        participant_codes=appointment.participant_codes,
        room_code=appointment.room_code,
        patient_code=appointment.patient_code,
        appointments=existing_appointments,
        exclude_code=appointment.code,
    )
    if conflicts:
        raise slot_conflict_error(conflicts, window)

    if local_date(old_start) != local_date(new_start):
        logger.warning(
            'Appointment %s delayed from %s to %s (crosses date boundary)',
            appointment.code, local_date(old_start), local_date(new_start),
        )

    changes = {'appointment_start_time': window.start, 'appointment_end_time': window.end}
    if notes is not None:
        changes['notes'] = notes
    updated = ensure_status(appointment.model_copy(update=changes), appointment.status)

    return DelayPlan(
        appointment=updated,
        audit=AuditEntry(
            appointment_code=appointment.code,
            action=AuditAction.DELAY,
            old_status=appointment.status,
            new_status=appointment.status,
            old_start_time=old_start,
            new_start_time=window.start,
            reason_code=reason,
            notes=notes,
            performed_by=performed_by,
            created_at=now,
        ),
    )


@dataclass(frozen=True)
class ReschedulePlan:
    cancelled: AppointmentRecord
    replacement: AppointmentRecord
    audits: list[AuditEntry] = field(default_factory=list)
    commands: list[PlanItemSyncCommand] = field(default_factory=list)


def plan_reschedule(
    appointment: AppointmentRecord,
    new_date: date,
    new_start_time: datetime,
    duration_minutes: int,
    *,
    new_code: str,
    existing_appointments: Sequence[AppointmentRecord],
    now: datetime,
    new_room_code: Optional[str] = None,
    new_employee_code: Optional[str] = None,
    new_participant_codes: Optional[Sequence[str]] = None,
    reason_code: Optional[str] = None,
    notes: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> ReschedulePlan:
    ensure_movable(appointment, 'reschedule')

    new_start = ensure_utc(new_start_time)
    if local_date(new_start) != new_date:
        raise ValidationError(
            f'New start time {new_start.isoformat()} does not fall on {new_date.isoformat()}.',
            code='RESCHEDULE_DATE_MISMATCH',
            details={'new_date': new_date.isoformat(), 'new_start_time': new_start.isoformat()},
        )
    if new_start < now:
        raise ValidationError(
            f'Cannot reschedule to a time in the past: {new_start.isoformat()}.',
            code='START_TIME_IN_PAST',
            details={'new_start_time': new_start.isoformat()},
        )

    employee_code = new_employee_code or appointment.employee_code
    participant_codes = tuple(
        new_participant_codes if new_participant_codes is not None else appointment.participant_codes
    )
    room_code = new_room_code or appointment.room_code
    window = TimeRange(new_start, new_start + timedelta(minutes=duration_minutes))

    conflicts = detect_booking_conflicts(
        window,
        employee_code=employee_code,
        participant_codes=participant_codes,
        room_code=room_code,
        patient_code=appointment.patient_code,
        appointments=existing_appointments,
        exclude_code=appointment.code,
    )
    if conflicts:
        raise slot_conflict_error(conflicts, window)

    replacement = AppointmentRecord(
        code=new_code,
        patient_code=appointment.patient_code,
        employee_code=employee_code,
        participant_codes=participant_codes,
        room_code=room_code,
        service_codes=appointment.service_codes,
        status=AppointmentStatus.SCHEDULED,
        appointment_start_time=window.start,
        appointment_end_time=window.end,
        notes=notes if notes is not None else f'Rescheduled from {appointment.code}',
        linked_treatment_plan_code=appointment.linked_treatment_plan_code,
        plan_item_codes=appointment.plan_item_codes,
    )

    # Plan items move straight to the replacement; no READY_FOR_BOOKING bounce.
    cancellation = transition(
        appointment,
        AppointmentStatus.CANCELLED,
        reason_code or ReasonCode.RESCHEDULED.value,
        now=now,
        performed_by=performed_by,
        emit_plan_commands=False,
    )
    cancelled = ensure_status(
        cancellation.appointment.model_copy(update={'rescheduled_to_code': replacement.code}),
        AppointmentStatus.CANCELLED,
    )

    commands = []
    command = plan_item_command(replacement, PlanItemStatus.SCHEDULED, now)
    if command is not None:
        commands.append(command)

    audits = [
        cancellation.audit.model_copy(update={
            'action': AuditAction.RESCHEDULE_SOURCE,
            'notes': f'Rescheduled to {replacement.code}',
        }),
        AuditEntry(
            appointment_code=replacement.code,
            action=AuditAction.RESCHEDULE_TARGET,
            new_status=AppointmentStatus.SCHEDULED,
            old_start_time=appointment.appointment_start_time,
            new_start_time=replacement.appointment_start_time,
            reason_code=cancellation.audit.reason_code,
            notes=f'Rescheduled from {appointment.code}',
            performed_by=performed_by,
            created_at=now,
        ),
    ]
    return ReschedulePlan(cancelled=cancelled, replacement=replacement, audits=audits, commands=commands)
