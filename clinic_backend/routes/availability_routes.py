from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import READ_APPOINTMENTS, Actor, require_capability
from clinic_backend.core.errors import SchedulingError
from clinic_backend.routes.common import build_appointment_service, ensure_database_ready, get_db, to_http_exception
from clinic_backend.scheduling.lifecycle import ALLOWED_TRANSITIONS, status_presentation
from clinic_backend.scheduling.slot_resolver import SlotResolution
from clinic_backend.scheduling.types import AppointmentStatus, ReasonCode

router = APIRouter(tags=['availability'])


class TimeSlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    available_compatible_room_codes: list[str]


class AvailableTimesResponse(BaseModel):
    date: date
    employee_code: str
    participant_codes: list[str]
    total_duration_minutes: int
    compatible_room_codes: list[str]
    slots: list[TimeSlotResponse]
    warnings: list[str]


class StatusOptionResponse(BaseModel):
    status: str
    label: str
    colour: str
    allowed_transitions: list[str]


def _normalize_codes(values: list[str] | None) -> list[str]:
    codes: list[str] = []
    for value in values or []:
        # Accept both repeated parameters and comma separated lists.
        codes.extend(code.strip() for code in value.split(',') if code.strip())
    return list(dict.fromkeys(codes))


def build_available_times_response(
    resolution: SlotResolution,
    employee_code: str,
    participant_codes: list[str],
) -> AvailableTimesResponse:
    return AvailableTimesResponse(
        date=resolution.day,
        employee_code=employee_code,
        participant_codes=participant_codes,
        total_duration_minutes=resolution.total_duration_minutes,
        compatible_room_codes=resolution.compatible_room_codes,
        slots=[
            TimeSlotResponse(
                start_time=slot.start_time,
                end_time=slot.end_time,
                available_compatible_room_codes=slot.available_compatible_room_codes,
            )
            for slot in resolution.slots
        ],
        warnings=resolution.warnings,
    )


@router.get('/times', response_model=AvailableTimesResponse)
def list_available_times(
    day: date = Query(..., alias='date'),
    employee_code: str = Query(...),
    service_codes: list[str] = Query(...),
    participant_codes: list[str] | None = Query(default=None),
    strict: bool = Query(default=False),
    actor: Actor = Depends(require_capability(READ_APPOINTMENTS)),
    db: Session = Depends(get_db),
):
    del actor
    ensure_database_ready()

    employee_code = employee_code.strip()
    participants = [code for code in _normalize_codes(participant_codes) if code != employee_code]

    try:
        resolution = build_appointment_service(db).resolve_available_times(
            day,
            employee_code,
            _normalize_codes(service_codes),
            participants,
            strict=strict,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return build_available_times_response(resolution, employee_code, participants)


@router.get('/reason-codes', response_model=list[str])
def list_reason_codes():
    return [reason.value for reason in ReasonCode]


@router.get('/statuses', response_model=list[StatusOptionResponse])
def list_statuses():
    options: list[StatusOptionResponse] = []
    for appointment_status in AppointmentStatus:
        presentation = status_presentation(appointment_status)
        options.append(StatusOptionResponse(
            status=appointment_status.value,
            label=presentation.label,
            colour=presentation.colour,
            allowed_transitions=sorted(target.value for target in ALLOWED_TRANSITIONS[appointment_status]),
        ))
    return options
