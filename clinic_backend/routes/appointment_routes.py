from datetime import date, datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ValidationInfo, field_validator
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import (
    CREATE_APPOINTMENTS,
    DELAY_APPOINTMENTS,
    READ_APPOINTMENTS,
    RESCHEDULE_APPOINTMENTS,
    UPDATE_APPOINTMENT_STATUS,
    Actor,
    require_capability,
)
from clinic_backend.core.config import MAX_APPOINTMENT_NOTES_LENGTH
from clinic_backend.core.errors import SchedulingError
from clinic_backend.routes.common import build_appointment_service, ensure_database_ready, get_db, to_http_exception
from clinic_backend.scheduling.lifecycle import status_presentation
from clinic_backend.scheduling.types import AppointmentRecord

router = APIRouter(tags=['appointments'])


def _normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


def _normalize_code(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'{label} is required.')
    return normalized


def _normalize_optional_code(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _normalize_code_list(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    return list(dict.fromkeys(value.strip() for value in values if value and value.strip()))


class CreateAppointmentRequest(BaseModel):
    patient_code: str
    employee_code: str
    room_code: str
    service_codes: list[str]
    start_time: datetime
    participant_codes: list[str] = []
    notes: str | None = None
    treatment_plan_code: str | None = None
    plan_item_codes: list[str] = []

    @field_validator('patient_code', 'employee_code', 'room_code')
    @classmethod
    def validate_codes(cls, value: str, info: ValidationInfo) -> str:
        return _normalize_code(value, info.field_name.replace('_', ' ').capitalize())

    @field_validator('service_codes')
    @classmethod
    def validate_service_codes(cls, value: list[str]) -> list[str]:
        normalized = _normalize_code_list(value)
        if not normalized:
            raise ValueError('At least one service is required.')
        return normalized

    @field_validator('participant_codes', 'plan_item_codes')
    @classmethod
    def validate_code_lists(cls, value: list[str]) -> list[str]:
        return _normalize_code_list(value)

    @field_validator('treatment_plan_code')
    @classmethod
    def validate_treatment_plan_code(cls, value: str | None) -> str | None:
        return _normalize_optional_code(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class UpdateStatusRequest(BaseModel):
    status: str
    reason_code: str | None = None
    notes: str | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        return _normalize_code(value, 'Status').upper()

    @field_validator('reason_code')
    @classmethod
    def validate_reason_code(cls, value: str | None) -> str | None:
        normalized = _normalize_optional_code(value)
        return normalized.upper() if normalized else None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class DelayAppointmentRequest(BaseModel):
    new_start_time: datetime
    reason_code: str | None = None
    notes: str | None = None

    @field_validator('reason_code')
    @classmethod
    def validate_reason_code(cls, value: str | None) -> str | None:
        normalized = _normalize_optional_code(value)
        return normalized.upper() if normalized else None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class RescheduleAppointmentRequest(BaseModel):
    new_date: date
    new_start_time: datetime
    new_room_code: str | None = None
    new_employee_code: str | None = None
    new_participant_codes: list[str] | None = None
    reason_code: str | None = None
    notes: str | None = None

    @field_validator('new_room_code', 'new_employee_code')
    @classmethod
    def validate_optional_codes(cls, value: str | None) -> str | None:
        return _normalize_optional_code(value)

    @field_validator('new_participant_codes')
    @classmethod
    def validate_participant_codes(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_code_list(value)

    @field_validator('reason_code')
    @classmethod
    def validate_reason_code(cls, value: str | None) -> str | None:
        normalized = _normalize_optional_code(value)
        return normalized.upper() if normalized else None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class AppointmentResponse(BaseModel):
    appointment_code: str
    patient_code: str
    employee_code: str
    participant_codes: list[str]
    room_code: str
    service_codes: list[str]
    status: str
    status_label: str
    status_colour: str
    start_time: datetime
    end_time: datetime
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    notes: str | None = None
    linked_treatment_plan_code: str | None = None
    plan_item_codes: list[str] = []
    rescheduled_to_code: str | None = None


class AppointmentOperationResponse(BaseModel):
    appointment: AppointmentResponse
    warnings: list[str] = []
    side_effect_errors: list[dict] = []


class RescheduleResponse(BaseModel):
    cancelled: AppointmentResponse
    created: AppointmentResponse
    warnings: list[str] = []
    side_effect_errors: list[dict] = []


def build_appointment_response(record: AppointmentRecord) -> AppointmentResponse:
    presentation = status_presentation(record.status)
    return AppointmentResponse(
        appointment_code=record.code,
        patient_code=record.patient_code,
        employee_code=record.employee_code,
        participant_codes=list(record.participant_codes),
        room_code=record.room_code,
        service_codes=list(record.service_codes),
        status=record.status.value,
        status_label=presentation.label,
        status_colour=presentation.colour,
        start_time=record.appointment_start_time,
        end_time=record.appointment_end_time,
        actual_start_time=record.actual_start_time,
        actual_end_time=record.actual_end_time,
        notes=record.notes,
        linked_treatment_plan_code=record.linked_treatment_plan_code,
        plan_item_codes=list(record.plan_item_codes),
        rescheduled_to_code=record.rescheduled_to_code,
    )


@router.post('', response_model=AppointmentOperationResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    actor: Actor = Depends(require_capability(CREATE_APPOINTMENTS)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        outcome = build_appointment_service(db).create_appointment(
            data.patient_code,
            data.employee_code,
            data.room_code,
            data.service_codes,
            data.start_time,
            data.participant_codes,
            data.notes,
            treatment_plan_code=data.treatment_plan_code,
            plan_item_codes=data.plan_item_codes,
            performed_by=actor.employee_code,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentOperationResponse(
        appointment=build_appointment_response(outcome.appointment),
        warnings=outcome.warnings,
        side_effect_errors=outcome.side_effect_errors,
    )


@router.get('/{appointment_code}', response_model=AppointmentResponse)
def get_appointment(
    appointment_code: str,
    actor: Actor = Depends(require_capability(READ_APPOINTMENTS)),
    db: Session = Depends(get_db),
):
    del actor
    ensure_database_ready()

    try:
        record = build_appointment_service(db).get_appointment(appointment_code.strip())
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return build_appointment_response(record)


@router.patch('/{appointment_code}/status', response_model=AppointmentOperationResponse)
def update_appointment_status(
    appointment_code: str,
    data: UpdateStatusRequest,
    actor: Actor = Depends(require_capability(UPDATE_APPOINTMENT_STATUS)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        outcome = build_appointment_service(db).update_appointment_status(
            appointment_code.strip(),
            data.status,
            data.reason_code,
            data.notes,
            performed_by=actor.employee_code,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentOperationResponse(
        appointment=build_appointment_response(outcome.appointment),
        warnings=outcome.warnings,
        side_effect_errors=outcome.side_effect_errors,
    )


@router.patch('/{appointment_code}/delay', response_model=AppointmentOperationResponse)
def delay_appointment(
    appointment_code: str,
    data: DelayAppointmentRequest,
    actor: Actor = Depends(require_capability(DELAY_APPOINTMENTS)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        outcome = build_appointment_service(db).delay_appointment(
            appointment_code.strip(),
            data.new_start_time,
            data.reason_code,
            data.notes,
            performed_by=actor.employee_code,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentOperationResponse(appointment=build_appointment_response(outcome.appointment))


@router.post('/{appointment_code}/reschedule', response_model=RescheduleResponse)
def reschedule_appointment(
    appointment_code: str,
    data: RescheduleAppointmentRequest,
    actor: Actor = Depends(require_capability(RESCHEDULE_APPOINTMENTS)),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        outcome = build_appointment_service(db).reschedule_appointment(
            appointment_code.strip(),
            data.new_date,
            data.new_start_time,
            data.new_room_code,
            new_employee_code=data.new_employee_code,
            new_participant_codes=data.new_participant_codes,
            reason_code=data.reason_code,
            notes=data.notes,
            performed_by=actor.employee_code,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return RescheduleResponse(
        cancelled=build_appointment_response(outcome.cancelled),
        created=build_appointment_response(outcome.created),
        warnings=outcome.warnings,
        side_effect_errors=outcome.side_effect_errors,
    )
