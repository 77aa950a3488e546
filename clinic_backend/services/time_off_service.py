"""Checks a proposed time-off request against existing requests, bookings and leave balance."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from clinic_backend.core.errors import NotFound, SlotConflict, ValidationError
from clinic_backend.repositories.scheduling_repository import SchedulingRepository
from clinic_backend.scheduling.conflicts import DateRange, time_off_overlaps
from clinic_backend.scheduling.timeutils import day_bounds
from clinic_backend.scheduling.types import AppointmentRecord, LeaveBalanceRecord

logger = logging.getLogger(__name__)

DEFAULT_TIME_OFF_TYPE = 'ANNUAL_LEAVE'
LEAVE_BALANCE_MISSING_WARNING = 'LEAVE_BALANCE_MISSING'
APPOINTMENTS_IN_RANGE_WARNING = 'APPOINTMENTS_IN_RANGE'


@dataclass(frozen=True)
class TimeOffValidation:
    employee_code: str
    start_date: date
    end_date: date
    requested_days: int
    balance: Optional[LeaveBalanceRecord] = None
    affected_appointments: list[AppointmentRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def requested_days(start_date: date, end_date: date) -> int:
    """Whole days in the inclusive range."""
    return (end_date - start_date).days + 1


def check_leave_balance(balance: LeaveBalanceRecord, days: int) -> None:
    details = {
        'employee_code': balance.employee_code,
        'year': balance.year,
        'time_off_type': balance.time_off_type,
        'total_days_allowed': balance.total_days_allowed,
        'days_taken': balance.days_taken,
        'days_remaining': balance.days_remaining,
        'requested_days': days,
    }

    if not math.isclose(balance.days_remaining, balance.total_days_allowed - balance.days_taken, abs_tol=1e-6):
        raise ValidationError(
            f'Leave balance for {balance.employee_code} is inconsistent: '
            f'{balance.total_days_allowed} allowed - {balance.days_taken} taken != {balance.days_remaining} remaining.',
            code='LEAVE_BALANCE_INCONSISTENT',
            details=details,
        )
    if balance.days_remaining < 0:
        raise ValidationError(
            f'Leave balance for {balance.employee_code} is negative.',
            code='LEAVE_BALANCE_NEGATIVE',
            details=details,
        )
    if balance.days_remaining < days:
        raise ValidationError(
            f'Requested {days} days but only {balance.days_remaining:g} remain.',
            code='INSUFFICIENT_LEAVE_BALANCE',
            details=details,
        )


class TimeOffService:
    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    def validate_time_off(
        self,
        employee_code: str,
        start_date: date,
        end_date: date,
        time_off_type: str = DEFAULT_TIME_OFF_TYPE,
        exclude_request_code: Optional[str] = None,
    ) -> TimeOffValidation:
        if end_date < start_date:
            raise ValidationError(
                'Time-off end date cannot be before the start date.',
                code='INVALID_DATE_RANGE',
                details={'start_date': start_date.isoformat(), 'end_date': end_date.isoformat()},
            )
        if self.repository.get_employee(employee_code) is None:
            raise NotFound(
                f'Employee {employee_code} not found.',
                code='EMPLOYEE_NOT_FOUND',
                details={'employee_code': employee_code},
            )

        day_range = DateRange(start_date, end_date)
        existing = [
            request
            for request in self.repository.get_time_off_requests([employee_code], start_date, end_date)
            if exclude_request_code is None or request.request_code != exclude_request_code
        ]
        overlapping = time_off_overlaps(day_range, existing, [employee_code])
        if overlapping:
            first = overlapping[0]
            raise SlotConflict(
                f'Employee {employee_code} already has time off from {first.start_date} to {first.end_date}.',
                code='TIME_OFF_OVERLAP',
                details={
                    'employee_code': employee_code,
                    'requested_start_date': start_date.isoformat(),
                    'requested_end_date': end_date.isoformat(),
                    'conflicts': [
                        {
                            'request_code': request.request_code,
                            'start_date': request.start_date.isoformat(),
                            'end_date': request.end_date.isoformat(),
                            'status': request.status.value,
                        }
                        for request in overlapping
                    ],
                },
            )

        days = requested_days(start_date, end_date)
        warnings: list[str] = []

        # A request spanning a year boundary is charged to the year it starts in.
        balance = self.repository.get_leave_balance(employee_code, start_date.year, time_off_type)
        if balance is None:
            logger.warning('No %s leave balance for %s in %s', time_off_type, employee_code, start_date.year)
            warnings.append(LEAVE_BALANCE_MISSING_WARNING)
        else:
            check_leave_balance(balance, days)

        range_start, _ = day_bounds(start_date)
        _, range_end = day_bounds(end_date)
        appointments = self.repository.get_existing_appointments(
            range_start,
            range_end,
            employee_codes=[employee_code],
        )
        if appointments:
            logger.warning(
                'Time off for %s (%s..%s) overlaps %s booked appointments',
                employee_code, start_date, end_date, len(appointments),
            )
            warnings.append(APPOINTMENTS_IN_RANGE_WARNING)

        return TimeOffValidation(
            employee_code=employee_code,
            start_date=start_date,
            end_date=end_date,
            requested_days=days,
            balance=balance,
            affected_appointments=appointments,
            warnings=warnings,
        )
