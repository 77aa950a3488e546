"""
Orchestrates the scheduling core against the persistence collaborators.

Each public method is one exposed operation. Reads feed the pure core; writes
happen under per-resource row locks after the conflict check has been repeated
against freshly read bookings, and plan-item side effects run only after the
appointment's own change has committed.
"""

import calendar as month_calendar
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from clinic_backend.core import config
from clinic_backend.core.errors import (
    NoAvailability,
    NotFound,
    PartialSideEffectFailure,
    SchedulingError,
    UpstreamUnavailable,
    ValidationError,
)
from clinic_backend.repositories.scheduling_repository import SchedulingRepository
from clinic_backend.repositories.treatment_plan_gateway import TreatmentPlanGateway
from clinic_backend.scheduling.calendar_index import CalendarIndex, CalendarIndexCache
from clinic_backend.scheduling.cancellation import CancellationToken
from clinic_backend.scheduling.conflicts import DateRange, TimeRange, detect_booking_conflicts, time_off_overlaps
from clinic_backend.scheduling.delay_reschedule import ensure_movable, plan_delay, plan_reschedule, slot_conflict_error
from clinic_backend.scheduling.lifecycle import parse_reason_code, parse_status, plan_item_command, transition
from clinic_backend.scheduling.slot_resolver import (
    HOLIDAY_UNKNOWN_WARNING,
    SlotResolution,
    SlotResolver,
    compatible_rooms,
    total_duration_minutes,
)
from clinic_backend.scheduling.timeutils import ensure_utc, local_date, utc_now
from clinic_backend.scheduling.types import (
    CLINICAL_ROLES,
    PRIMARY_ROLES,
    AppointmentRecord,
    AppointmentStatus,
    AuditAction,
    AuditEntry,
    EmployeeRecord,
    PlanItemStatus,
    PlanItemSyncCommand,
    SchedulingPolicy,
    ServiceRequirement,
)

logger = logging.getLogger(__name__)

EMPLOYEE_TIME_OFF_WARNING = 'EMPLOYEE_ON_TIME_OFF'
PARTICIPANT_TIME_OFF_WARNING = 'PARTICIPANT_ON_TIME_OFF'


@dataclass(frozen=True)
class AppointmentOutcome:
    appointment: AppointmentRecord
    warnings: list[str] = field(default_factory=list)
    side_effect_errors: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class RescheduleOutcome:
    cancelled: AppointmentRecord
    created: AppointmentRecord
    warnings: list[str] = field(default_factory=list)
    side_effect_errors: list[dict] = field(default_factory=list)


def month_range(day: date) -> tuple[date, date]:
    """The month around ``day``, plus the day before it for shifts running past midnight."""
    last_day = month_calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1) - timedelta(days=1), day.replace(day=last_day)


def booking_lock_keys(
    employee_codes: Iterable[str],
    room_codes: Iterable[str],
    patient_code: str,
    code_day: Optional[date] = None,
) -> list[str]:
    keys = {f'employee:{code}' for code in employee_codes if code}
    keys.update(f'room:{code}' for code in room_codes if code)
    keys.add(f'patient:{patient_code}')
    if code_day is not None:
        keys.add(f'appointment-code:{code_day.strftime("%Y%m%d")}')
    return sorted(keys)


def _covered(window: TimeRange, shifts: Sequence[TimeRange]) -> bool:
    return any(shift.start <= window.start and window.end <= shift.end for shift in shifts)


class AppointmentService:
    def __init__(
        self,
        repository: SchedulingRepository,
        plan_gateway: Optional[TreatmentPlanGateway] = None,
        *,
        policy: Optional[SchedulingPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        calendar_cache: Optional[CalendarIndexCache] = None,
        roster_fetch_workers: Optional[int] = None,
        resolution_timeout_seconds: Optional[float] = None,
    ):
        self.repository = repository
        self.plan_gateway = plan_gateway
        self.policy = policy or SchedulingPolicy.from_config()
        self.resolver = SlotResolver(self.policy)
        self.clock = clock
        self.calendar_cache = calendar_cache
        self.roster_fetch_workers = roster_fetch_workers or config.ROSTER_FETCH_WORKERS
        self.resolution_timeout_seconds = (
            resolution_timeout_seconds
            if resolution_timeout_seconds is not None
            else config.SLOT_RESOLUTION_TIMEOUT_SECONDS
        )

    # -- reference data ---------------------------------------------------

    def _load_services(self, service_codes: Iterable[str]) -> list[ServiceRequirement]:
        codes = list(dict.fromkeys(code.strip() for code in service_codes or () if code and code.strip()))
        if not codes:
            raise ValidationError('At least one service is required.', code='SERVICES_REQUIRED')

        services = self.repository.get_service_definitions(codes)
        found = {service.service_code for service in services}
        missing = [code for code in codes if code not in found]
        if missing:
            raise ValidationError(
                f'Services not found: {", ".join(missing)}',
                code='SERVICES_NOT_FOUND',
                details={'service_codes': missing},
            )

        inactive = [service.service_code for service in services if not service.is_active]
        if inactive:
            raise ValidationError(
                f'Services are inactive: {", ".join(inactive)}',
                code='SERVICES_INACTIVE',
                details={'service_codes': inactive},
            )
        return services

    def _load_staff(
        self,
        employee_code: str,
        participant_codes: Optional[Iterable[str]],
        services: Sequence[ServiceRequirement],
    ) -> tuple[EmployeeRecord, list[str]]:
        participants = [code for code in dict.fromkeys(participant_codes or ()) if code and code != employee_code]
        employees = self.repository.get_employees([employee_code, *participants])

        primary = employees.get(employee_code)
        if primary is None:
            raise NotFound(
                f'Employee {employee_code} not found.',
                code='EMPLOYEE_NOT_FOUND',
                details={'employee_code': employee_code},
            )
        if not primary.is_active:
            raise ValidationError(
                f'Employee {employee_code} is inactive.',
                code='EMPLOYEE_INACTIVE',
                details={'employee_code': employee_code},
            )
        if primary.role not in PRIMARY_ROLES:
            raise ValidationError(
                f'Employee {employee_code} ({primary.role.value}) cannot lead an appointment; a doctor or dentist is required.',
                code='EMPLOYEE_NOT_DOCTOR',
                details={'employee_code': employee_code, 'role': primary.role.value},
            )

        for code in participants:
            participant = employees.get(code)
            if participant is None:
                raise NotFound(
                    f'Participant {code} not found.',
                    code='PARTICIPANT_NOT_FOUND',
                    details={'employee_code': code},
                )
            if not participant.is_active:
                raise ValidationError(
                    f'Participant {code} is inactive.',
                    code='PARTICIPANT_INACTIVE',
                    details={'employee_code': code},
                )
            if participant.role not in CLINICAL_ROLES:
                raise ValidationError(
                    f'Participant {code} ({participant.role.value}) is not clinical staff.',
                    code='PARTICIPANT_NOT_CLINICAL',
                    details={'employee_code': code, 'role': participant.role.value},
                )

        required = {
            service.required_specialization_id
            for service in services
            if service.required_specialization_id is not None
        }
        missing = sorted(required - primary.specialization_ids)
        if missing:
            raise ValidationError(
                f'Employee {employee_code} lacks the specializations required by the requested services.',
                code='EMPLOYEE_NOT_QUALIFIED',
                details={'employee_code': employee_code, 'missing_specialization_ids': missing},
            )

        return primary, participants

    def _require_room(self, room_code: str, services: Sequence[ServiceRequirement]) -> None:
        room = self.repository.get_room(room_code)
        if room is None:
            raise NotFound(f'Room {room_code} not found.', code='ROOM_NOT_FOUND', details={'room_code': room_code})
        if not room.is_active:
            raise ValidationError(f'Room {room_code} is inactive.', code='ROOM_INACTIVE', details={'room_code': room_code})

        rooms = compatible_rooms(
            services,
            self.repository.get_room_compatibility([service.service_code for service in services]),
        )
        if room_code not in rooms:
            raise ValidationError(
                f'Room {room_code} cannot host every requested service.',
                code='ROOM_NOT_COMPATIBLE',
                details={'room_code': room_code, 'compatible_room_codes': rooms},
            )

    def _require_appointment(self, appointment_code: str, for_update: bool = False) -> AppointmentRecord:
        appointment = self.repository.get_appointment(appointment_code, for_update=for_update)
        if appointment is None:
            raise NotFound(
                f'Appointment {appointment_code} not found.',
                code='APPOINTMENT_NOT_FOUND',
                details={'appointment_code': appointment_code},
            )
        return appointment

    # -- roster -----------------------------------------------------------

    def _calendar_for(
        self,
        day: date,
        employee_codes: Iterable[str],
        cancel_token: Optional[CancellationToken] = None,
        use_cache: bool = True,
    ) -> CalendarIndex:
        start_date, end_date = month_range(day)
        codes = tuple(sorted(set(employee_codes)))
        workers = self.roster_fetch_workers if self.repository.supports_concurrent_reads else 1

        def _build() -> CalendarIndex:
            return CalendarIndex.build(
                codes,
                start_date,
                end_date,
                shift_source=self.repository.get_shifts,
                holiday_source=self.repository.get_holidays,
                max_workers=workers,
                cancel_token=cancel_token,
            )

        # Commits re-read the roster; only slot listing is served from the cache.
        if self.calendar_cache is None or not use_cache:
            return _build()
        return self.calendar_cache.get_or_build((start_date, end_date, codes), _build)

    @staticmethod
    def _check_holiday(calendar: CalendarIndex, day: date, warnings: list[str]) -> None:
        holiday = calendar.is_holiday(day)
        if holiday:
            raise ValidationError(
                f'{day.isoformat()} is a clinic holiday.',
                code='DATE_IS_HOLIDAY',
                details={'date': day.isoformat()},
            )
        if holiday is None:
            logger.warning('Holiday calendar unknown for %s; booking without holiday check', day)
            warnings.append(HOLIDAY_UNKNOWN_WARNING)

    def _coverage_windows(self, calendar: CalendarIndex, employee_code: str, day: date) -> list[TimeRange]:
        windows: list[TimeRange] = []
        for work_date in (day - timedelta(days=1), day):
            if calendar.covers(work_date):
                windows.extend(calendar.shift_windows(employee_code, work_date, self.policy))
        return windows

    def _ensure_shift_coverage(
        self,
        calendar: CalendarIndex,
        day: date,
        window: TimeRange,
        employee_code: str,
        participant_codes: Sequence[str],
    ) -> None:
        checks = [(employee_code, 'EMPLOYEE_SHIFT_NOT_COVERING', 'Employee')]
        checks.extend((code, 'PARTICIPANT_SHIFT_NOT_COVERING', 'Participant') for code in participant_codes)

        for code, error_code, label in checks:
            shifts = self._coverage_windows(calendar, code, day)
            if not _covered(window, shifts):
                raise ValidationError(
                    f'{label} {code} has no shift covering {window.start.isoformat()} - {window.end.isoformat()}.',
                    code=error_code,
                    details={
                        'employee_code': code,
                        'requested_start_time': window.start.isoformat(),
                        'requested_end_time': window.end.isoformat(),
                        'shift_windows': [
                            {'start_time': shift.start.isoformat(), 'end_time': shift.end.isoformat()}
                            for shift in shifts
                        ],
                    },
                )

    def _time_off_warnings(self, day: date, employee_code: str, participant_codes: Sequence[str]) -> list[str]:
        requests = self.repository.get_time_off_requests([employee_code, *participant_codes], day, day)
        warnings: list[str] = []
        for request in time_off_overlaps(DateRange(day, day), requests):
            logger.warning(
                'Employee %s has %s time off covering %s',
                request.employee_code, request.status.value, day,
            )
            warning = EMPLOYEE_TIME_OFF_WARNING if request.employee_code == employee_code else PARTICIPANT_TIME_OFF_WARNING
            if warning not in warnings:
                warnings.append(warning)
        return warnings

    def _fresh_bookings(
        self,
        window: TimeRange,
        employee_codes: Iterable[str],
        room_codes: Iterable[str],
        patient_code: str,
    ) -> list[AppointmentRecord]:
        return self.repository.get_existing_appointments(
            window.start,
            window.end,
            employee_codes=list(employee_codes),
            room_codes=list(room_codes),
            patient_codes=[patient_code],
        )

    # -- side effects -----------------------------------------------------

    def _dispatch(self, commands: Sequence[PlanItemSyncCommand]) -> list[dict]:
        """Run plan-item commands; failures are reported, never rolled back."""
        errors: list[dict] = []
        for command in commands:
            if self.plan_gateway is None:
                logger.debug('No treatment plan gateway; dropping command for %s', command.appointment_code)
                continue
            try:
                self.plan_gateway.apply(command)
            except SchedulingError as exc:
                failure = PartialSideEffectFailure(
                    f'Appointment {command.appointment_code} was updated but its treatment plan items were not.',
                    code='PLAN_ITEM_SYNC_FAILED',
                    details={
                        'appointment_code': command.appointment_code,
                        'target_status': command.target_status.value,
                        'plan_item_codes': list(command.plan_item_codes),
                        'cause': exc.to_dict(),
                    },
                )
                logger.error('%s Cause: %s', failure.message, exc.code)
                errors.append(failure.to_dict())
        return errors

    # -- operations -------------------------------------------------------

    def resolve_available_times(
        self,
        day: date,
        employee_code: str,
        service_codes: Sequence[str],
        participant_codes: Sequence[str] = (),
        *,
        cancel_token: Optional[CancellationToken] = None,
        strict: bool = False,
    ) -> SlotResolution:
        token = cancel_token or CancellationToken(timeout_seconds=self.resolution_timeout_seconds)

        services = self._load_services(service_codes)
        _, participants = self._load_staff(employee_code, participant_codes, services)
        compatibility = self.repository.get_room_compatibility([service.service_code for service in services])
        token.raise_if_cancelled()

        calendar = self._calendar_for(day, [employee_code, *participants], token)
        token.raise_if_cancelled()

        existing = self.repository.get_appointments_on(
            day,
            employee_codes=[employee_code, *participants],
            room_codes=compatible_rooms(services, compatibility),
        )
        resolution = self.resolver.resolve(
            day,
            employee_code,
            participants,
            services,
            compatibility,
            calendar,
            existing,
            cancel_token=token,
            not_before=self.clock(),
        )
        resolution = replace(
            resolution,
            warnings=resolution.warnings + self._time_off_warnings(day, employee_code, participants),
        )

        if strict and not resolution.slots:
            raise NoAvailability(
                f'No bookable times for {employee_code} on {day.isoformat()}.',
                details={
                    'date': day.isoformat(),
                    'employee_code': employee_code,
                    'participant_codes': participants,
                    'service_codes': [service.service_code for service in services],
                    'warnings': resolution.warnings,
                },
            )
        return resolution

    def create_appointment(
        self,
        patient_code: str,
        employee_code: str,
        room_code: str,
        service_codes: Sequence[str],
        start_time: datetime,
        participant_codes: Sequence[str] = (),
        notes: Optional[str] = None,
        *,
        treatment_plan_code: Optional[str] = None,
        plan_item_codes: Sequence[str] = (),
        performed_by: Optional[str] = None,
    ) -> AppointmentOutcome:
        patient_code = (patient_code or '').strip()
        if not patient_code:
            raise ValidationError('Patient code is required.', code='PATIENT_REQUIRED')

        now = self.clock()
        start = ensure_utc(start_time)
        if start < now:
            raise ValidationError(
                f'Cannot book an appointment in the past: {start.isoformat()}.',
                code='START_TIME_IN_PAST',
                details={'start_time': start.isoformat()},
            )

        services = self._load_services(service_codes)
        _, participants = self._load_staff(employee_code, participant_codes, services)
        self._require_room(room_code, services)

        window = TimeRange(start, start + timedelta(minutes=total_duration_minutes(services)))
        day = local_date(start)
        warnings: list[str] = []

        calendar = self._calendar_for(day, [employee_code, *participants], use_cache=False)
        self._check_holiday(calendar, day, warnings)
        self._ensure_shift_coverage(calendar, day, window, employee_code, participants)
        warnings.extend(self._time_off_warnings(day, employee_code, participants))

        try:
            self.repository.lock_resources(
                booking_lock_keys([employee_code, *participants], [room_code], patient_code, code_day=day),
            )
            conflicts = detect_booking_conflicts(
                window,
                employee_code=employee_code,
                participant_codes=participants,
                room_code=room_code,
                patient_code=patient_code,
                appointments=self._fresh_bookings(window, [employee_code, *participants], [room_code], patient_code),
            )
            if conflicts:
                raise slot_conflict_error(conflicts, window)

            appointment = AppointmentRecord(
                code=self.repository.next_appointment_code(day),
                patient_code=patient_code,
                employee_code=employee_code,
                participant_codes=tuple(participants),
                room_code=room_code,
                service_codes=tuple(service.service_code for service in services),
                status=AppointmentStatus.SCHEDULED,
                appointment_start_time=window.start,
                appointment_end_time=window.end,
                notes=notes,
                linked_treatment_plan_code=treatment_plan_code,
                plan_item_codes=tuple(dict.fromkeys(plan_item_codes or ())),
            )
            self.repository.insert_appointment(appointment)
            self.repository.record_audit(AuditEntry(
                appointment_code=appointment.code,
                action=AuditAction.CREATE,
                new_status=AppointmentStatus.SCHEDULED,
                new_start_time=appointment.appointment_start_time,
                notes=notes,
                performed_by=performed_by,
                created_at=now,
            ))
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise

        logger.info(
            'Appointment %s booked for patient %s with %s in %s at %s',
            appointment.code, patient_code, employee_code, room_code, appointment.appointment_start_time.isoformat(),
        )

        command = plan_item_command(appointment, PlanItemStatus.SCHEDULED, now)
        side_effect_errors = self._dispatch([command] if command else [])
        return AppointmentOutcome(appointment=appointment, warnings=warnings, side_effect_errors=side_effect_errors)

    def update_appointment_status(
        self,
        appointment_code: str,
        target_status: str,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        *,
        performed_by: Optional[str] = None,
    ) -> AppointmentOutcome:
        target = parse_status(target_status)
        now = self.clock()

        try:
            appointment = self._require_appointment(appointment_code, for_update=True)
            result = transition(appointment, target, reason_code, notes, now=now, performed_by=performed_by)
            self.repository.update_appointment(result.appointment)
            self.repository.record_audit(result.audit)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise

        logger.info(
            'Appointment %s moved from %s to %s',
            appointment_code, appointment.status.value, result.appointment.status.value,
        )
        side_effect_errors = self._dispatch(result.commands)
        return AppointmentOutcome(appointment=result.appointment, side_effect_errors=side_effect_errors)

    def delay_appointment(
        self,
        appointment_code: str,
        new_start_time: datetime,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        *,
        performed_by: Optional[str] = None,
    ) -> AppointmentOutcome:
        now = self.clock()
        new_start = ensure_utc(new_start_time)

        try:
            appointment = self._require_appointment(appointment_code, for_update=True)
            ensure_movable(appointment, 'delay')

            employees = [appointment.employee_code, *appointment.participant_codes]
            self.repository.lock_resources(
                booking_lock_keys(employees, [appointment.room_code], appointment.patient_code),
            )
            window = TimeRange(new_start, new_start + appointment.duration)
            plan = plan_delay(
                appointment,
                new_start,
                reason_code,
                notes,
                existing_appointments=self._fresh_bookings(
                    window, employees, [appointment.room_code], appointment.patient_code,
                ),
                now=now,
                performed_by=performed_by,
            )
            self.repository.update_appointment(plan.appointment)
            self.repository.record_audit(plan.audit)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise

        logger.info(
            'Appointment %s delayed from %s to %s',
            appointment_code,
            appointment.appointment_start_time.isoformat(),
            plan.appointment.appointment_start_time.isoformat(),
        )
        return AppointmentOutcome(appointment=plan.appointment)

    def reschedule_appointment(
        self,
        appointment_code: str,
        new_date: date,
        new_start_time: datetime,
        new_room_code: Optional[str] = None,
        *,
        new_employee_code: Optional[str] = None,
        new_participant_codes: Optional[Sequence[str]] = None,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> RescheduleOutcome:
        now = self.clock()
        parse_reason_code(reason_code)

        original = self._require_appointment(appointment_code)
        ensure_movable(original, 'reschedule')

        employee_code = new_employee_code or original.employee_code
        room_code = new_room_code or original.room_code
        services = self._load_services(original.service_codes)
        _, participants = self._load_staff(
            employee_code,
            new_participant_codes if new_participant_codes is not None else original.participant_codes,
            services,
        )
        self._require_room(room_code, services)
        duration_minutes = total_duration_minutes(services)

        new_start = ensure_utc(new_start_time)
        window = TimeRange(new_start, new_start + timedelta(minutes=duration_minutes))
        warnings: list[str] = []
        writes_started = False
        replacement_code = None

        try:
            appointment = self._require_appointment(appointment_code, for_update=True)
            employees = {employee_code, *participants, appointment.employee_code, *appointment.participant_codes}
            self.repository.lock_resources(booking_lock_keys(
                employees,
                {room_code, appointment.room_code},
                appointment.patient_code,
                code_day=new_date,
            ))

            replacement_code = self.repository.next_appointment_code(new_date)
            plan = plan_reschedule(
                appointment,
                new_date,
                new_start,
                duration_minutes,
                new_code=replacement_code,
                existing_appointments=self._fresh_bookings(
                    window, [employee_code, *participants], [room_code], appointment.patient_code,
                ),
                now=now,
                new_room_code=room_code,
                new_employee_code=employee_code,
                new_participant_codes=participants,
                reason_code=reason_code,
                notes=notes,
                performed_by=performed_by,
            )

            calendar = self._calendar_for(new_date, [employee_code, *participants], use_cache=False)
            self._check_holiday(calendar, new_date, warnings)
            self._ensure_shift_coverage(calendar, new_date, window, employee_code, participants)
            warnings.extend(self._time_off_warnings(new_date, employee_code, participants))

            writes_started = True
            self.repository.update_appointment(plan.cancelled)
            self.repository.insert_appointment(plan.replacement)
            for audit in plan.audits:
                self.repository.record_audit(audit)
            self.repository.commit()
        except Exception as exc:
            self.repository.rollback()
            if writes_started:
                self._raise_if_half_applied(appointment_code, replacement_code, exc)
            raise

        logger.info(
            'Appointment %s rescheduled to %s at %s',
            appointment_code, plan.replacement.code, plan.replacement.appointment_start_time.isoformat(),
        )
        side_effect_errors = self._dispatch(plan.commands)
        return RescheduleOutcome(
            cancelled=plan.cancelled,
            created=plan.replacement,
            warnings=warnings,
            side_effect_errors=side_effect_errors,
        )

    def _raise_if_half_applied(self, appointment_code: str, replacement_code: Optional[str], exc: Exception) -> None:
        """Surface a reschedule that left the original cancelled without its replacement."""
        try:
            current = self.repository.get_appointment(appointment_code)
            replacement = self.repository.get_appointment(replacement_code) if replacement_code else None
        except UpstreamUnavailable:
            logger.exception('Could not verify the state of appointment %s after a failed reschedule', appointment_code)
            return

        if current is None or current.status != AppointmentStatus.CANCELLED or replacement is not None:
            return

        logger.error(
            'Reschedule of %s left it cancelled without a replacement; manual follow-up required',
            appointment_code,
        )
        raise PartialSideEffectFailure(
            f'Appointment {appointment_code} was cancelled but its replacement was not created.',
            code='RESCHEDULE_INCOMPLETE',
            details={
                'cancelled': current.model_dump(mode='json'),
                'created': None,
                'cause': exc.to_dict() if isinstance(exc, SchedulingError) else {'message': str(exc)},
            },
        ) from exc

    def get_appointment(self, appointment_code: str) -> AppointmentRecord:
        return self._require_appointment(appointment_code)
