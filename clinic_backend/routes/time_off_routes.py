from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import VALIDATE_TIME_OFF, Actor, require_capability
from clinic_backend.core.errors import SchedulingError
from clinic_backend.routes.appointment_routes import AppointmentResponse, build_appointment_response
from clinic_backend.routes.common import build_time_off_service, ensure_database_ready, get_db, to_http_exception
from clinic_backend.services.time_off_service import DEFAULT_TIME_OFF_TYPE

router = APIRouter(tags=['time-off'])


class TimeOffValidationRequest(BaseModel):
    employee_code: str
    start_date: date
    end_date: date
    time_off_type: str = DEFAULT_TIME_OFF_TYPE
    exclude_request_code: str | None = None

    @field_validator('employee_code')
    @classmethod
    def validate_employee_code(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Employee code is required.')
        return normalized

    @field_validator('time_off_type')
    @classmethod
    def validate_time_off_type(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not normalized:
            raise ValueError('Time-off type is required.')
        return normalized

    @model_validator(mode='after')
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError('End date cannot be before start date.')
        return self


class LeaveBalanceResponse(BaseModel):
    year: int
    time_off_type: str
    total_days_allowed: float
    days_taken: float
    days_remaining: float


class TimeOffValidationResponse(BaseModel):
    employee_code: str
    start_date: date
    end_date: date
    requested_days: int
    balance: LeaveBalanceResponse | None = None
    affected_appointments: list[AppointmentResponse] = []
    warnings: list[str] = []


@router.post('/validate', response_model=TimeOffValidationResponse)
def validate_time_off(
    data: TimeOffValidationRequest,
    actor: Actor = Depends(require_capability(VALIDATE_TIME_OFF)),
    db: Session = Depends(get_db),
):
    del actor
    ensure_database_ready()

    try:
        result = build_time_off_service(db).validate_time_off(
            data.employee_code,
            data.start_date,
            data.end_date,
            data.time_off_type,
            data.exclude_request_code,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    balance = None
    if result.balance is not None:
        balance = LeaveBalanceResponse(
            year=result.balance.year,
            time_off_type=result.balance.time_off_type,
            total_days_allowed=result.balance.total_days_allowed,
            days_taken=result.balance.days_taken,
            days_remaining=result.balance.days_remaining,
        )

    return TimeOffValidationResponse(
        employee_code=result.employee_code,
        start_date=result.start_date,
        end_date=result.end_date,
        requested_days=result.requested_days,
        balance=balance,
        affected_appointments=[build_appointment_response(record) for record in result.affected_appointments],
        warnings=result.warnings,
    )
