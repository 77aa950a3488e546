from datetime import datetime, timezone

import pytest

from clinic_backend.core.errors import InvalidTransition, NoOpTransition, ValidationError
from clinic_backend.scheduling.lifecycle import (
    ALLOWED_TRANSITIONS,
    STATUS_PRESENTATION,
    TERMINAL_STATUSES,
    parse_reason_code,
    parse_status,
    status_presentation,
    transition,
)
from clinic_backend.scheduling.types import (
    AppointmentRecord,
    AppointmentStatus,
    AuditAction,
    PlanItemStatus,
    ReasonCode,
)

NOW = datetime(2030, 6, 10, 9, 5, tzinfo=timezone.utc)
S = AppointmentStatus


def _appointment(status: AppointmentStatus = S.SCHEDULED, **overrides) -> AppointmentRecord:
    values = {
        'code': 'APT-20300610-001',
        'patient_code': 'P1',
        'employee_code': 'D1',
        'room_code': 'R1',
        'service_codes': ('CLEAN',),
        'status': status,
        'appointment_start_time': datetime(2030, 6, 10, 9, 0, tzinfo=timezone.utc),
        'appointment_end_time': datetime(2030, 6, 10, 9, 40, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return AppointmentRecord(**values)


VALID = [
    (S.SCHEDULED, S.CHECKED_IN),
    (S.SCHEDULED, S.CANCELLED),
    (S.SCHEDULED, S.ABSENT),
    (S.CHECKED_IN, S.IN_PROGRESS),
    (S.CHECKED_IN, S.CANCELLED),
    (S.IN_PROGRESS, S.COMPLETED),
    (S.IN_PROGRESS, S.CANCELLED),
]


@pytest.mark.parametrize(('current', 'target'), VALID)
def test_allowed_transitions_succeed(current: AppointmentStatus, target: AppointmentStatus) -> None:
    result = transition(_appointment(current), target, 'OTHER', now=NOW, performed_by='U1')

    assert result.appointment.status == target
    assert result.audit.action == AuditAction.STATUS_CHANGE
    assert result.audit.old_status == current
    assert result.audit.new_status == target
    assert result.audit.performed_by == 'U1'


INVALID = [
    (current, target)
    for current in S
    for target in S
    if current != target and current not in TERMINAL_STATUSES and (current, target) not in VALID
]


@pytest.mark.parametrize(('current', 'target'), INVALID)
def test_disallowed_transitions_are_rejected(current: AppointmentStatus, target: AppointmentStatus) -> None:
    with pytest.raises(InvalidTransition) as exception_info:
        transition(_appointment(current), target, 'OTHER', now=NOW)

    assert exception_info.value.code == 'INVALID_TRANSITION'
    assert exception_info.value.details['current_status'] == current.value
    assert exception_info.value.details['requested_status'] == target.value


def test_scheduled_cannot_jump_to_completed() -> None:
    assert (S.SCHEDULED, S.COMPLETED) in INVALID


@pytest.mark.parametrize('terminal', sorted(TERMINAL_STATUSES, key=lambda status: status.value))
@pytest.mark.parametrize('target', list(S))
def test_terminal_statuses_reject_everything(terminal: AppointmentStatus, target: AppointmentStatus) -> None:
    with pytest.raises(InvalidTransition) as exception_info:
        transition(_appointment(terminal), target, 'OTHER', now=NOW)

    assert exception_info.value.details['allowed_statuses'] == []


def test_terminal_set_matches_the_state_machine() -> None:
    assert TERMINAL_STATUSES == {S.COMPLETED, S.CANCELLED, S.ABSENT}
    assert set(ALLOWED_TRANSITIONS) == set(S)


@pytest.mark.parametrize('status', [S.SCHEDULED, S.CHECKED_IN, S.IN_PROGRESS])
def test_same_status_is_a_noop_error(status: AppointmentStatus) -> None:
    with pytest.raises(NoOpTransition) as exception_info:
        transition(_appointment(status), status, now=NOW)

    assert exception_info.value.code == 'NO_OP_TRANSITION'


def test_cancel_requires_reason_code() -> None:
    with pytest.raises(ValidationError) as exception_info:
        transition(_appointment(), S.CANCELLED, now=NOW)

    assert exception_info.value.code == 'REASON_CODE_REQUIRED'


def test_unknown_reason_code_is_rejected() -> None:
    with pytest.raises(ValidationError) as exception_info:
        transition(_appointment(), S.CANCELLED, 'BORED', now=NOW)

    assert exception_info.value.code == 'INVALID_REASON_CODE'


def test_start_and_completion_stamp_actual_times() -> None:
    started = transition(_appointment(S.CHECKED_IN), S.IN_PROGRESS, now=NOW).appointment
    finished_at = datetime(2030, 6, 10, 9, 50, tzinfo=timezone.utc)
    finished = transition(started, S.COMPLETED, now=finished_at).appointment

    assert started.actual_start_time == NOW
    assert started.actual_end_time is None
    assert finished.actual_start_time == NOW
    assert finished.actual_end_time == finished_at


def test_transition_returns_new_snapshot_without_touching_input() -> None:
    original = _appointment(S.SCHEDULED, notes='first visit')

    result = transition(original, S.CHECKED_IN, notes='arrived early', now=NOW)

    assert original.status == S.SCHEDULED
    assert original.notes == 'first visit'
    assert result.appointment.notes == 'arrived early'
    assert result.appointment is not original


@pytest.mark.parametrize(
    ('current', 'target', 'plan_status'),
    [
        (S.CHECKED_IN, S.IN_PROGRESS, PlanItemStatus.IN_PROGRESS),
        (S.IN_PROGRESS, S.COMPLETED, PlanItemStatus.COMPLETED),
        (S.SCHEDULED, S.CANCELLED, PlanItemStatus.READY_FOR_BOOKING),
    ],
)
def test_linked_plan_items_follow_the_appointment(current, target, plan_status) -> None:
    appointment = _appointment(current, linked_treatment_plan_code='TP-1', plan_item_codes=('TPI-1', 'TPI-2'))

    result = transition(appointment, target, 'PATIENT_REQUEST', now=NOW)

    assert len(result.commands) == 1
    command = result.commands[0]
    assert command.target_status == plan_status
    assert command.treatment_plan_code == 'TP-1'
    assert command.plan_item_codes == ('TPI-1', 'TPI-2')
    assert command.occurred_at == NOW


def test_no_plan_commands_without_linked_items_or_for_other_targets() -> None:
    assert transition(_appointment(S.CHECKED_IN), S.IN_PROGRESS, now=NOW).commands == []

    linked = _appointment(linked_treatment_plan_code='TP-1')
    assert transition(linked, S.CHECKED_IN, now=NOW).commands == []
    assert transition(linked, S.ABSENT, now=NOW).commands == []


def test_plan_commands_can_be_suppressed() -> None:
    linked = _appointment(linked_treatment_plan_code='TP-1')

    result = transition(linked, S.CANCELLED, 'RESCHEDULED', now=NOW, emit_plan_commands=False)

    assert result.commands == []
    assert result.audit.reason_code == ReasonCode.RESCHEDULED


def test_every_status_has_a_presentation() -> None:
    assert set(STATUS_PRESENTATION) == set(S)
    assert status_presentation(S.CANCELLED).colour == 'red'
    assert status_presentation('ABSENT').label == 'Absent'


@pytest.mark.parametrize(
    ('raw', 'expected'),
    [('scheduled', S.SCHEDULED), (' checked_in ', S.CHECKED_IN), ('NO_SHOW', S.ABSENT), ('absent', S.ABSENT)],
)
def test_parse_status_normalizes_input(raw: str, expected: AppointmentStatus) -> None:
    assert parse_status(raw) == expected


def test_parse_status_rejects_unknown_values() -> None:
    with pytest.raises(ValidationError) as exception_info:
        parse_status('FINISHED')

    assert exception_info.value.code == 'INVALID_STATUS'


def test_parse_reason_code_treats_blank_as_missing() -> None:
    assert parse_reason_code(None) is None
    assert parse_reason_code('  ') is None
    assert parse_reason_code('doctor_unavailable') == ReasonCode.DOCTOR_UNAVAILABLE
