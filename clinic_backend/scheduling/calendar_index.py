"""
Per-employee, per-date roster lookup.

An index is built once for a date range (normally one calendar month) and
never mutated afterwards; a refresh builds a new index and swaps it in whole.
Employees whose shifts could not be fetched are tracked as *unknown*, which is
distinct from *not rostered*.
"""

import logging
import time as monotonic_time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Callable, Hashable, Iterable, Optional

from clinic_backend.core.errors import UpstreamUnavailable
from clinic_backend.scheduling.cancellation import CancellationToken
from clinic_backend.scheduling.conflicts import TimeRange
from clinic_backend.scheduling.timeutils import minutes_between
from clinic_backend.scheduling.types import HolidayDate, SchedulingPolicy, ShiftRecord

logger = logging.getLogger(__name__)

ShiftSource = Callable[[str, date, date], list[ShiftRecord]]
HolidaySource = Callable[[date, date], list[HolidayDate]]


class RosterStatus(str, Enum):
    ROSTERED = 'ROSTERED'
    NOT_ROSTERED = 'NOT_ROSTERED'
    UNKNOWN = 'UNKNOWN'


class CalendarIndex:
    def __init__(
        self,
        start_date: date,
        end_date: date,
        shifts: dict[tuple[str, date], list[ShiftRecord]],
        loaded_employees: Iterable[str],
        unknown_employees: Iterable[str] = (),
        holidays: Optional[Iterable[HolidayDate]] = None,
    ):
        self.start_date = start_date
        self.end_date = end_date
        self._shifts = MappingProxyType({
            key: tuple(sorted(records, key=lambda shift: shift.window()[0]))
            for key, records in shifts.items()
        })
        self._loaded = frozenset(loaded_employees)
        self._unknown = frozenset(unknown_employees)
        self._holidays = (
            MappingProxyType({holiday.day: holiday for holiday in holidays})
            if holidays is not None else None
        )

    @classmethod
    def build(
        cls,
        employee_codes: Iterable[str],
        start_date: date,
        end_date: date,
        shift_source: ShiftSource,
        holiday_source: Optional[HolidaySource] = None,
        max_workers: int = 1,
        cancel_token: Optional[CancellationToken] = None,
    ) -> 'CalendarIndex':
        codes = list(dict.fromkeys(employee_codes))
        fetched: dict[str, Optional[list[ShiftRecord]]] = {}

        def _fetch(employee_code: str) -> Optional[list[ShiftRecord]]:
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                return shift_source(employee_code, start_date, end_date)
            except UpstreamUnavailable:
                logger.exception('Shift data unavailable for employee %s (%s..%s)', employee_code, start_date, end_date)
                return None

        workers = max(1, min(max_workers, len(codes)))
        if workers == 1:
            for code in codes:
                fetched[code] = _fetch(code)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                for code, records in zip(codes, executor.map(_fetch, codes)):
                    fetched[code] = records

        holidays: Optional[list[HolidayDate]] = None
        if holiday_source is not None:
            try:
                holidays = holiday_source(start_date, end_date)
            except UpstreamUnavailable:
                logger.warning('Holiday calendar unavailable for %s..%s; continuing without it', start_date, end_date)

        shifts: dict[tuple[str, date], list[ShiftRecord]] = defaultdict(list)
        for code, records in fetched.items():
            for shift in records or ():
                if start_date <= shift.work_date <= end_date:
                    shifts[(code, shift.work_date)].append(shift)

        return cls(
            start_date=start_date,
            end_date=end_date,
            shifts=dict(shifts),
            loaded_employees=[code for code, records in fetched.items() if records is not None],
            unknown_employees=[code for code, records in fetched.items() if records is None],
            holidays=holidays,
        )

    @property
    def holidays_known(self) -> bool:
        return self._holidays is not None

    @property
    def is_complete(self) -> bool:
        return self.holidays_known and not self._unknown

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def roster_status(self, employee_code: str, day: date) -> RosterStatus:
        if employee_code not in self._loaded or not self.covers(day):
            return RosterStatus.UNKNOWN
        if self._shifts.get((employee_code, day)):
            return RosterStatus.ROSTERED
        return RosterStatus.NOT_ROSTERED

    def _require_known(self, employee_code: str, day: date) -> None:
        if self.roster_status(employee_code, day) == RosterStatus.UNKNOWN:
            raise UpstreamUnavailable(
                f'Shift data for {employee_code} on {day.isoformat()} is not loaded.',
                code='SHIFT_DATA_UNAVAILABLE',
                details={'employee_code': employee_code, 'date': day.isoformat()},
            )

    def shifts_on(self, employee_code: str, day: date) -> list[ShiftRecord]:
        self._require_known(employee_code, day)
        return list(self._shifts.get((employee_code, day), ()))

    def has_shift(self, employee_code: str, day: date) -> bool:
        self._require_known(employee_code, day)
        return bool(self._shifts.get((employee_code, day)))

    def shift_windows(
        self,
        employee_code: str,
        day: date,
        policy: Optional[SchedulingPolicy] = None,
    ) -> list[TimeRange]:
        """Shift windows for the day as absolute ranges, overlapping or touching shifts merged."""
        windows: list[TimeRange] = []
        for shift in self.shifts_on(employee_code, day):
            start, end = shift.window()
            if policy is not None and not self._within_policy(shift, start, end, policy):
                continue
            windows.append(TimeRange(start, end))

        windows.sort()
        merged: list[TimeRange] = []
        for window in windows:
            if merged and window.start <= merged[-1].end:
                merged[-1] = TimeRange(merged[-1].start, max(merged[-1].end, window.end))
            else:
                merged.append(window)
        return merged

    @staticmethod
    def _within_policy(shift: ShiftRecord, start, end, policy: SchedulingPolicy) -> bool:
        length = minutes_between(start, end)
        if policy.min_shift_minutes <= length <= policy.max_shift_minutes:
            return True
        logger.warning(
            'Shift for %s on %s lasts %s minutes, outside the %s-%s minute policy',
            shift.employee_code, shift.work_date, length, policy.min_shift_minutes, policy.max_shift_minutes,
        )
        return not policy.enforce_shift_duration

    def is_holiday(self, day: date) -> Optional[bool]:
        """True/False when the holiday calendar is loaded, None when it is unknown."""
        if self._holidays is None or not self.covers(day):
            return None
        return day in self._holidays

    def holidays_in_range(self, start: date, end: date) -> set[HolidayDate]:
        if self._holidays is None:
            return set()
        return {holiday for day, holiday in self._holidays.items() if start <= day <= end}


class CalendarIndexCache:
    """Read-mostly cache of built indexes; entries are replaced whole, never patched."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 256,
        clock: Callable[[], float] = monotonic_time.monotonic,
    ):
        self._ttl_seconds = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[Hashable, tuple[float, CalendarIndex]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_build(self, key: Hashable, builder: Callable[[], CalendarIndex]) -> CalendarIndex:
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry[0] < self._ttl_seconds:
            return entry[1]

        index = builder()

        # Partially loaded indexes are served once but never cached.
        if index.is_complete:
            with self._lock:
                now = self._clock()
                self._entries = {
                    cached_key: entry
                    for cached_key, entry in self._entries.items()
                    if cached_key != key and now - entry[0] < self._ttl_seconds
                }
                while len(self._entries) >= self._max_entries:
                    # Insertion order is build order, so the first entry is the oldest.
                    del self._entries[next(iter(self._entries))]
                self._entries[key] = (now, index)
        return index

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
