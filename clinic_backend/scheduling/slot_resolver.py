"""
Bookable slot computation for multi-service appointments.

Candidates are generated on a fixed grid aligned to the start of each
(merged) shift window of the primary employee, then filtered against the
participants' rosters, every existing busy appointment and the rooms that can
host all requested services.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Sequence

from clinic_backend.core.errors import ValidationError
from clinic_backend.scheduling.calendar_index import CalendarIndex
from clinic_backend.scheduling.cancellation import CancellationToken
from clinic_backend.scheduling.conflicts import TimeRange, employee_is_free, room_is_free
from clinic_backend.scheduling.types import AppointmentRecord, SchedulingPolicy, ServiceRequirement, TimeSlot

logger = logging.getLogger(__name__)

HOLIDAY_WARNING = 'DATE_IS_HOLIDAY'
HOLIDAY_UNKNOWN_WARNING = 'HOLIDAY_CALENDAR_UNAVAILABLE'
NO_COMPATIBLE_ROOM_WARNING = 'NO_COMPATIBLE_ROOM'
EMPLOYEE_NOT_ROSTERED_WARNING = 'EMPLOYEE_NOT_ROSTERED'
PARTICIPANT_NOT_ROSTERED_WARNING = 'PARTICIPANT_NOT_ROSTERED'


@dataclass(frozen=True)
class SlotResolution:
    day: date
    total_duration_minutes: int
    compatible_room_codes: list[str]
    slots: list[TimeSlot] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def total_duration_minutes(services: Sequence[ServiceRequirement]) -> int:
    """Sum of duration plus buffer over all services, in whole minutes."""
    if not services:
        raise ValidationError('At least one service is required.', code='SERVICES_REQUIRED')

    total = 0.0
    for service in services:
        if service.duration_minutes <= 0:
            raise ValidationError(
                f'Service {service.service_code} has a non-positive duration.',
                code='INVALID_SERVICE_DURATION',
                details={'service_code': service.service_code, 'duration_minutes': service.duration_minutes},
            )
        if service.buffer_minutes < 0:
            raise ValidationError(
                f'Service {service.service_code} has a negative buffer.',
                code='INVALID_SERVICE_BUFFER',
                details={'service_code': service.service_code, 'buffer_minutes': service.buffer_minutes},
            )
        total += service.duration_minutes + service.buffer_minutes

    # Half minutes round up.
    minutes = int(Decimal(str(total)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if minutes <= 0:
        raise ValidationError('Total appointment duration must be positive.', code='INVALID_SERVICE_DURATION')
    return minutes


def compatible_rooms(
    services: Sequence[ServiceRequirement],
    room_compatibility: Mapping[str, Iterable[str]],
) -> list[str]:
    """Rooms able to host every requested service (intersection of per-service sets)."""
    room_sets = [set(room_compatibility.get(service.service_code, ())) for service in services]
    if not room_sets:
        return []
    return sorted(set.intersection(*room_sets))


def _within_any(window: TimeRange, shifts: Sequence[TimeRange]) -> bool:
    return any(shift.start <= window.start and window.end <= shift.end for shift in shifts)


class SlotResolver:
    def __init__(self, policy: Optional[SchedulingPolicy] = None):
        self.policy = policy or SchedulingPolicy()

    def candidate_starts(self, shift: TimeRange, duration_minutes: int) -> list[datetime]:
        step = timedelta(minutes=self.policy.slot_interval_minutes)
        duration = timedelta(minutes=duration_minutes)
        starts: list[datetime] = []
        current = shift.start
        while current + duration <= shift.end:
            starts.append(current)
            current += step
        return starts

    def resolve(
        self,
        day: date,
        primary_employee_code: str,
        participant_codes: Sequence[str],
        services: Sequence[ServiceRequirement],
        room_compatibility: Mapping[str, Iterable[str]],
        calendar: CalendarIndex,
        existing_appointments: Sequence[AppointmentRecord],
        cancel_token: Optional[CancellationToken] = None,
        not_before: Optional[datetime] = None,
    ) -> SlotResolution:
        duration_minutes = total_duration_minutes(services)
        rooms = compatible_rooms(services, room_compatibility)
        participant_codes = [code for code in dict.fromkeys(participant_codes) if code != primary_employee_code]
        warnings: list[str] = []

        def _empty(*reasons: str) -> SlotResolution:
            return SlotResolution(
                day=day,
                total_duration_minutes=duration_minutes,
                compatible_room_codes=rooms,
                slots=[],
                warnings=warnings + list(reasons),
            )

        holiday = calendar.is_holiday(day)
        if holiday:
            return _empty(HOLIDAY_WARNING)
        if holiday is None:
            warnings.append(HOLIDAY_UNKNOWN_WARNING)

        if not calendar.has_shift(primary_employee_code, day):
            return _empty(EMPLOYEE_NOT_ROSTERED_WARNING)
        participant_windows: dict[str, list[TimeRange]] = {}
        for code in participant_codes:
            if not calendar.has_shift(code, day):
                return _empty(PARTICIPANT_NOT_ROSTERED_WARNING)
            participant_windows[code] = calendar.shift_windows(code, day, self.policy)

        if not rooms:
            return _empty(NO_COMPATIBLE_ROOM_WARNING)

        slots: list[TimeSlot] = []
        duration = timedelta(minutes=duration_minutes)
        for shift in calendar.shift_windows(primary_employee_code, day, self.policy):
            for start in self.candidate_starts(shift, duration_minutes):
                if cancel_token:
                    cancel_token.raise_if_cancelled()
                if not_before is not None and start < not_before:
                    continue

                window = TimeRange(start, start + duration)
                if not all(_within_any(window, participant_windows[code]) for code in participant_codes):
                    continue
                if not employee_is_free(primary_employee_code, window, existing_appointments):
                    continue
                if not all(employee_is_free(code, window, existing_appointments) for code in participant_codes):
                    continue

                free_rooms = [room for room in rooms if room_is_free(room, window, existing_appointments)]
                if not free_rooms:
                    continue

                slots.append(TimeSlot(
                    start_time=window.start,
                    end_time=window.end,
                    available_compatible_room_codes=free_rooms,
                ))

        slots.sort(key=lambda slot: slot.start_time)
        logger.debug(
            'Resolved %s slots for %s on %s (%s minutes, rooms=%s)',
            len(slots), primary_employee_code, day, duration_minutes, rooms,
        )
        return SlotResolution(
            day=day,
            total_duration_minutes=duration_minutes,
            compatible_room_codes=rooms,
            slots=slots,
            warnings=warnings,
        )
