"""
Domain types shared by the scheduling core.

These are plain value objects: the core never talks to storage, it only
receives these records from the collaborators and hands new ones back.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinic_backend.core import config
from clinic_backend.scheduling.timeutils import ensure_utc, local_datetime


class AppointmentStatus(str, Enum):
    SCHEDULED = 'SCHEDULED'
    CHECKED_IN = 'CHECKED_IN'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    ABSENT = 'ABSENT'


# Statuses that occupy the employee, participants, room and patient.
BUSY_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.IN_PROGRESS,
})


class ReasonCode(str, Enum):
    PREVIOUS_CASE_OVERRUN = 'PREVIOUS_CASE_OVERRUN'
    DOCTOR_UNAVAILABLE = 'DOCTOR_UNAVAILABLE'
    EQUIPMENT_FAILURE = 'EQUIPMENT_FAILURE'
    PATIENT_REQUEST = 'PATIENT_REQUEST'
    OPERATIONAL_REDIRECT = 'OPERATIONAL_REDIRECT'
    RESCHEDULED = 'RESCHEDULED'
    OTHER = 'OTHER'


class EmployeeRole(str, Enum):
    DOCTOR = 'DOCTOR'
    DENTIST = 'DENTIST'
    ASSISTANT = 'ASSISTANT'
    NURSE = 'NURSE'
    OTHER = 'OTHER'


PRIMARY_ROLES = frozenset({EmployeeRole.DOCTOR, EmployeeRole.DENTIST})
CLINICAL_ROLES = PRIMARY_ROLES | {EmployeeRole.ASSISTANT, EmployeeRole.NURSE}


class PlanItemStatus(str, Enum):
    READY_FOR_BOOKING = 'READY_FOR_BOOKING'
    SCHEDULED = 'SCHEDULED'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'


class TimeOffStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    CANCELLED = 'CANCELLED'


BLOCKING_TIME_OFF_STATUSES = frozenset({TimeOffStatus.PENDING, TimeOffStatus.APPROVED})


class AuditAction(str, Enum):
    CREATE = 'CREATE'
    STATUS_CHANGE = 'STATUS_CHANGE'
    DELAY = 'DELAY'
    RESCHEDULE_SOURCE = 'RESCHEDULE_SOURCE'
    RESCHEDULE_TARGET = 'RESCHEDULE_TARGET'


class SchedulingPolicy(BaseModel):
    """Business policy fed into slot resolution."""
    model_config = ConfigDict(frozen=True)

    slot_interval_minutes: int = Field(default=15, gt=0)
    min_shift_minutes: int = Field(default=180, ge=0)
    max_shift_minutes: int = Field(default=480, gt=0)
    enforce_shift_duration: bool = False

    @classmethod
    def from_config(cls) -> 'SchedulingPolicy':
        return cls(
            slot_interval_minutes=config.SLOT_INTERVAL_MINUTES,
            min_shift_minutes=config.MIN_SHIFT_MINUTES,
            max_shift_minutes=config.MAX_SHIFT_MINUTES,
            enforce_shift_duration=config.ENFORCE_SHIFT_DURATION,
        )


class EmployeeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    role: EmployeeRole = EmployeeRole.OTHER
    is_active: bool = True
    specialization_ids: frozenset[int] = frozenset()


class RoomRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    is_active: bool = True


class ShiftRecord(BaseModel):
    """One rostered shift. An end at or before the start means the shift runs past midnight."""
    model_config = ConfigDict(frozen=True)

    employee_code: str
    work_date: date
    shift_start: time
    shift_end: time

    @model_validator(mode='after')
    def validate_times(self):
        if self.shift_start == self.shift_end:
            raise ValueError('Shift start and end cannot be equal')
        return self

    def window(self) -> tuple[datetime, datetime]:
        start = local_datetime(self.work_date, self.shift_start)
        end_day = self.work_date if self.shift_end > self.shift_start else self.work_date + timedelta(days=1)
        return start, local_datetime(end_day, self.shift_end)


class HolidayDate(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    name: str = ''


class ServiceRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_code: str
    duration_minutes: float
    buffer_minutes: float = 0
    required_specialization_id: Optional[int] = None
    is_active: bool = True


class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    available_compatible_room_codes: list[str] = Field(min_length=1)


class AppointmentRecord(BaseModel):
    """Snapshot of an appointment. Transitions return new snapshots, never mutate."""
    model_config = ConfigDict(frozen=True)

    code: str
    patient_code: str
    employee_code: str
    participant_codes: tuple[str, ...] = ()
    room_code: str
    service_codes: tuple[str, ...]
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    appointment_start_time: datetime
    appointment_end_time: datetime
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    notes: Optional[str] = None
    linked_treatment_plan_code: Optional[str] = None
    plan_item_codes: tuple[str, ...] = ()
    rescheduled_to_code: Optional[str] = None

    @field_validator('appointment_start_time', 'appointment_end_time', 'actual_start_time', 'actual_end_time')
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode='after')
    def validate_window(self):
        if self.appointment_end_time <= self.appointment_start_time:
            raise ValueError('Appointment end time must be after start time')
        return self

    @property
    def duration(self) -> timedelta:
        return self.appointment_end_time - self.appointment_start_time

    @property
    def is_busy(self) -> bool:
        return self.status in BUSY_STATUSES

    @property
    def has_linked_plan_items(self) -> bool:
        return bool(self.plan_item_codes or self.linked_treatment_plan_code)

    def involves_employee(self, employee_code: str) -> bool:
        return self.employee_code == employee_code or employee_code in self.participant_codes


class TimeOffRequestRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    employee_code: str
    start_date: date
    end_date: date
    time_off_type: str = 'ANNUAL_LEAVE'
    status: TimeOffStatus = TimeOffStatus.PENDING
    reason: str = ''
    request_code: Optional[str] = None

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date < self.start_date:
            raise ValueError('Time-off end date cannot be before start date')
        return self


class LeaveBalanceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    employee_code: str
    year: int
    time_off_type: str
    total_days_allowed: float
    days_taken: float
    days_remaining: float


class PlanItemSyncCommand(BaseModel):
    """Instruction for the treatment-plan collaborator; executed outside the core."""
    model_config = ConfigDict(frozen=True)

    appointment_code: str
    patient_code: str
    treatment_plan_code: Optional[str] = None
    plan_item_codes: tuple[str, ...] = ()
    target_status: PlanItemStatus
    occurred_at: datetime


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    appointment_code: str
    action: AuditAction
    old_status: Optional[AppointmentStatus] = None
    new_status: Optional[AppointmentStatus] = None
    old_start_time: Optional[datetime] = None
    new_start_time: Optional[datetime] = None
    reason_code: Optional[ReasonCode] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None
    created_at: datetime
