"""
Overlap predicates shared by booking and time-off validation.

Two different interval semantics live here on purpose:
appointments are minute-granular half-open ranges, time-off requests are
whole-day inclusive ranges.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, NamedTuple, Optional

from clinic_backend.scheduling.types import (
    BLOCKING_TIME_OFF_STATUSES,
    AppointmentRecord,
    TimeOffRequestRecord,
)


class TimeRange(NamedTuple):
    start: datetime
    end: datetime


class DateRange(NamedTuple):
    start: date
    end: date


def overlaps(range_a: TimeRange, range_b: TimeRange) -> bool:
    """Half-open overlap: back-to-back ranges do not conflict."""
    return range_a.start < range_b.end and range_b.start < range_a.end


def dates_overlap(range_a: DateRange, range_b: DateRange) -> bool:
    """Inclusive overlap for date-granular ranges."""
    return range_a.start <= range_b.end and range_b.start <= range_a.end


def appointment_range(appointment: AppointmentRecord) -> TimeRange:
    return TimeRange(appointment.appointment_start_time, appointment.appointment_end_time)


@dataclass(frozen=True)
class ResourceConflict:
    resource_type: str  # employee / participant / room / patient
    resource_code: str
    appointment_code: str
    start_time: datetime
    end_time: datetime

    def to_dict(self) -> dict:
        return {
            'resource_type': self.resource_type,
            'resource_code': self.resource_code,
            'conflicting_appointment_code': self.appointment_code,
            'conflicting_start_time': self.start_time.isoformat(),
            'conflicting_end_time': self.end_time.isoformat(),
        }


def busy_overlapping(
    window: TimeRange,
    appointments: Iterable[AppointmentRecord],
    exclude_code: Optional[str] = None,
) -> list[AppointmentRecord]:
    return [
        appointment
        for appointment in appointments
        if appointment.is_busy
        and appointment.code != exclude_code
        and overlaps(window, appointment_range(appointment))
    ]


def employee_is_free(
    employee_code: str,
    window: TimeRange,
    appointments: Iterable[AppointmentRecord],
    exclude_code: Optional[str] = None,
) -> bool:
    return not any(
        appointment.involves_employee(employee_code)
        for appointment in busy_overlapping(window, appointments, exclude_code)
    )


def room_is_free(
    room_code: str,
    window: TimeRange,
    appointments: Iterable[AppointmentRecord],
    exclude_code: Optional[str] = None,
) -> bool:
    return not any(
        appointment.room_code == room_code
        for appointment in busy_overlapping(window, appointments, exclude_code)
    )


def detect_booking_conflicts(
    window: TimeRange,
    *,
    employee_code: str,
    participant_codes: Iterable[str] = (),
    room_code: Optional[str] = None,
    patient_code: Optional[str] = None,
    appointments: Iterable[AppointmentRecord],
    exclude_code: Optional[str] = None,
) -> list[ResourceConflict]:
    """Every resource of a proposed booking that collides with an existing busy appointment."""
    participant_codes = list(participant_codes)
    conflicts: list[ResourceConflict] = []

    for appointment in busy_overlapping(window, appointments, exclude_code):
        def _conflict(resource_type: str, resource_code: str) -> ResourceConflict:
            return ResourceConflict(
                resource_type=resource_type,
                resource_code=resource_code,
                appointment_code=appointment.code,
                start_time=appointment.appointment_start_time,
                end_time=appointment.appointment_end_time,
            )

        if appointment.involves_employee(employee_code):
            conflicts.append(_conflict('employee', employee_code))
        for participant_code in participant_codes:
            if appointment.involves_employee(participant_code):
                conflicts.append(_conflict('participant', participant_code))
        if room_code and appointment.room_code == room_code:
            conflicts.append(_conflict('room', room_code))
        if patient_code and appointment.patient_code == patient_code:
            conflicts.append(_conflict('patient', patient_code))

    return conflicts


def time_off_overlaps(
    day_range: DateRange,
    requests: Iterable[TimeOffRequestRecord],
    employee_codes: Optional[Iterable[str]] = None,
    blocking_only: bool = True,
) -> list[TimeOffRequestRecord]:
    codes = set(employee_codes) if employee_codes is not None else None
    return [
        request
        for request in requests
        if (codes is None or request.employee_code in codes)
        and (not blocking_only or request.status in BLOCKING_TIME_OFF_STATUSES)
        and dates_overlap(day_range, DateRange(request.start_date, request.end_date))
    ]
