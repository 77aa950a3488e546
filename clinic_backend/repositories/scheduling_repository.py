"""
SQLAlchemy implementation of the data the scheduling core consumes.

Everything leaving this module is a domain record from
``clinic_backend.scheduling.types``; rows never escape. Database failures are
reported as ``UpstreamUnavailable`` and uniqueness violations as
``SlotConflict`` so callers only ever deal with the scheduling error taxonomy.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Iterator, Optional

from pydantic import ValidationError as RecordValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from clinic_backend.core.errors import SlotConflict, UpstreamUnavailable
from clinic_backend.models.appointment import (
    Appointment,
    AppointmentAuditLog,
    AppointmentParticipant,
    AppointmentPlanItem,
    AppointmentServiceLink,
    SchedulingResourceLock,
)
from clinic_backend.models.employee import Employee, EmployeeSpecialization
from clinic_backend.models.service import DentalService, Room, RoomService
from clinic_backend.models.shift import EmployeeShift, Holiday
from clinic_backend.models.time_off import LeaveBalance, TimeOffRequest
from clinic_backend.scheduling.timeutils import day_bounds, ensure_utc, to_naive_utc, utc_now
from clinic_backend.scheduling.types import (
    BUSY_STATUSES,
    AppointmentRecord,
    AuditEntry,
    EmployeeRecord,
    EmployeeRole,
    HolidayDate,
    LeaveBalanceRecord,
    RoomRecord,
    ServiceRequirement,
    ShiftRecord,
    TimeOffRequestRecord,
)

logger = logging.getLogger(__name__)

ACTIVE_SHIFT_STATUS = 'ACTIVE'
APPOINTMENT_CODE_PREFIX = 'APT'


def appointment_code_prefix(day: date) -> str:
    return f'{APPOINTMENT_CODE_PREFIX}-{day.strftime("%Y%m%d")}-'


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(value) if value is not None else None


def _employee_role(value: Optional[str]) -> EmployeeRole:
    try:
        return EmployeeRole((value or '').strip().upper())
    except ValueError:
        return EmployeeRole.OTHER


def to_appointment_record(row: Appointment) -> AppointmentRecord:
    return AppointmentRecord(
        code=row.appointment_code,
        patient_code=row.patient_code,
        employee_code=row.employee_code,
        participant_codes=tuple(participant.employee_code for participant in row.participants),
        room_code=row.room_code,
        service_codes=tuple(link.service_code for link in row.services),
        status=row.status,
        appointment_start_time=_aware(row.start_time),
        appointment_end_time=_aware(row.end_time),
        actual_start_time=_aware(row.actual_start_time),
        actual_end_time=_aware(row.actual_end_time),
        notes=row.notes,
        linked_treatment_plan_code=row.linked_treatment_plan_code,
        plan_item_codes=tuple(sorted(item.item_code for item in row.plan_items)),
        rescheduled_to_code=row.rescheduled_to_code,
    )


class SchedulingRepository:
    """Reads and writes for one request, bound to a single session.

    ``session_factory`` is optional: when given, roster reads may run on
    worker threads, each with its own short-lived session.
    """

    def __init__(self, db: Session, session_factory: Optional[Callable[[], Session]] = None):
        self.db = db
        self.session_factory = session_factory

    @property
    def supports_concurrent_reads(self) -> bool:
        return self.session_factory is not None

    @contextmanager
    def _guard(self, operation: str, session: Optional[Session] = None) -> Iterator[None]:
        session = session or self.db
        try:
            yield
        except IntegrityError as exc:
            session.rollback()
            logger.warning('Write conflict while %s: %s', operation, exc.orig)
            raise SlotConflict(
                'The booking collided with a concurrent write. Refresh and try again.',
                code='WRITE_CONFLICT',
                details={'operation': operation},
            ) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception('Database error while %s', operation)
            raise UpstreamUnavailable(
                'Database unavailable. Verify DATABASE_URL and database credentials.',
                details={'operation': operation},
            ) from exc

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        if self.session_factory is None:
            yield self.db
            return
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    # -- roster -----------------------------------------------------------

    def get_shifts(self, employee_code: str, start_date: date, end_date: date) -> list[ShiftRecord]:
        with self._reader() as session, self._guard('loading shifts', session):
            rows = session.query(EmployeeShift).filter(
                EmployeeShift.employee_code == employee_code,
                EmployeeShift.work_date >= start_date,
                EmployeeShift.work_date <= end_date,
                EmployeeShift.status == ACTIVE_SHIFT_STATUS,
            ).order_by(EmployeeShift.work_date.asc(), EmployeeShift.start_time.asc()).all()

            shifts: list[ShiftRecord] = []
            for row in rows:
                try:
                    shifts.append(ShiftRecord(
                        employee_code=row.employee_code,
                        work_date=row.work_date,
                        shift_start=row.start_time,
                        shift_end=row.end_time,
                    ))
                except RecordValidationError:
                    logger.warning('Skipping malformed shift %s for %s on %s', row.id, employee_code, row.work_date)
            return shifts

    def get_holidays(self, start_date: date, end_date: date) -> list[HolidayDate]:
        with self._reader() as session, self._guard('loading holidays', session):
            rows = session.query(Holiday).filter(
                Holiday.holiday_date >= start_date,
                Holiday.holiday_date <= end_date,
            ).all()
            return [HolidayDate(day=row.holiday_date, name=row.name or '') for row in rows]

    # -- reference data ---------------------------------------------------

    def get_employees(self, employee_codes: Iterable[str]) -> dict[str, EmployeeRecord]:
        codes = list(dict.fromkeys(employee_codes))
        if not codes:
            return {}

        with self._guard('loading employees'):
            rows = self.db.query(Employee).filter(Employee.employee_code.in_(codes)).all()
            specializations: dict[str, set[int]] = {code: set() for code in codes}
            for employee_code, specialization_id in self.db.query(
                EmployeeSpecialization.employee_code,
                EmployeeSpecialization.specialization_id,
            ).filter(EmployeeSpecialization.employee_code.in_(codes)).all():
                specializations[employee_code].add(specialization_id)

        return {
            row.employee_code: EmployeeRecord(
                code=row.employee_code,
                role=_employee_role(row.role),
                is_active=bool(row.is_active),
                specialization_ids=frozenset(specializations.get(row.employee_code, ())),
            )
            for row in rows
        }

    def get_employee(self, employee_code: str) -> Optional[EmployeeRecord]:
        return self.get_employees([employee_code]).get(employee_code)

    def get_room(self, room_code: str) -> Optional[RoomRecord]:
        with self._guard('loading room'):
            row = self.db.query(Room).filter(Room.room_code == room_code).first()
        if row is None:
            return None
        return RoomRecord(code=row.room_code, is_active=bool(row.is_active))

    def get_service_definitions(self, service_codes: Iterable[str]) -> list[ServiceRequirement]:
        """Definitions in request order; unknown codes are simply absent."""
        codes = list(dict.fromkeys(service_codes))
        if not codes:
            return []

        with self._guard('loading services'):
            rows = self.db.query(DentalService).filter(DentalService.service_code.in_(codes)).all()

        by_code = {
            row.service_code: ServiceRequirement(
                service_code=row.service_code,
                duration_minutes=row.duration_minutes,
                buffer_minutes=row.buffer_minutes or 0,
                required_specialization_id=row.specialization_id,
                is_active=bool(row.is_active),
            )
            for row in rows
        }
        return [by_code[code] for code in codes if code in by_code]

    def get_room_compatibility(self, service_codes: Iterable[str]) -> dict[str, list[str]]:
        """Active rooms able to host each service."""
        codes = list(dict.fromkeys(service_codes))
        compatibility: dict[str, list[str]] = {code: [] for code in codes}
        if not codes:
            return compatibility

        with self._guard('loading room compatibility'):
            rows = self.db.query(RoomService.service_code, RoomService.room_code).join(
                Room, Room.room_code == RoomService.room_code,
            ).filter(
                RoomService.service_code.in_(codes),
                Room.is_active.is_(True),
            ).order_by(RoomService.room_code.asc()).all()

        for service_code, room_code in rows:
            compatibility[service_code].append(room_code)
        return compatibility

    # -- appointments -----------------------------------------------------

    def _appointment_query(self, session: Session):
        return session.query(Appointment).options(
            selectinload(Appointment.participants),
            selectinload(Appointment.services),
            selectinload(Appointment.plan_items),
        )

    def get_existing_appointments(
        self,
        start_time: datetime,
        end_time: datetime,
        *,
        employee_codes: Iterable[str] = (),
        room_codes: Iterable[str] = (),
        patient_codes: Iterable[str] = (),
    ) -> list[AppointmentRecord]:
        """Busy appointments overlapping the window that touch any of the given resources."""
        employee_codes = [code for code in employee_codes if code]
        room_codes = [code for code in room_codes if code]
        patient_codes = [code for code in patient_codes if code]

        resource_filters = []
        if employee_codes:
            resource_filters.append(Appointment.employee_code.in_(employee_codes))
            resource_filters.append(Appointment.participants.any(
                AppointmentParticipant.employee_code.in_(employee_codes),
            ))
        if room_codes:
            resource_filters.append(Appointment.room_code.in_(room_codes))
        if patient_codes:
            resource_filters.append(Appointment.patient_code.in_(patient_codes))
        if not resource_filters:
            return []

        with self._guard('loading existing appointments'):
            rows = self._appointment_query(self.db).filter(
                Appointment.status.in_([status.value for status in BUSY_STATUSES]),
                Appointment.start_time < to_naive_utc(end_time),
                Appointment.end_time > to_naive_utc(start_time),
                or_(*resource_filters),
            ).order_by(Appointment.start_time.asc()).all()
            return [to_appointment_record(row) for row in rows]

    def get_appointments_on(self, day: date, **resources) -> list[AppointmentRecord]:
        start, end = day_bounds(day)
        # Bookings inside a shift that runs past midnight belong to the next local day.
        return self.get_existing_appointments(start, end + timedelta(days=1), **resources)

    def _find_row(self, appointment_code: str, for_update: bool = False) -> Optional[Appointment]:
        query = self._appointment_query(self.db).filter(Appointment.appointment_code == appointment_code)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_appointment(self, appointment_code: str, for_update: bool = False) -> Optional[AppointmentRecord]:
        with self._guard('loading appointment'):
            row = self._find_row(appointment_code, for_update=for_update)
            return to_appointment_record(row) if row is not None else None

    def next_appointment_code(self, day: date) -> str:
        prefix = appointment_code_prefix(day)
        with self._guard('allocating appointment code'):
            codes = [
                code for (code,) in self.db.query(Appointment.appointment_code).filter(
                    Appointment.appointment_code.like(f'{prefix}%'),
                ).all()
            ]

        sequence = 0
        for code in codes:
            suffix = code[len(prefix):]
            if suffix.isdigit():
                sequence = max(sequence, int(suffix))
        return f'{prefix}{sequence + 1:03d}'

    # -- writes -----------------------------------------------------------

    def lock_resources(self, resource_keys: Iterable[str]) -> None:
        """Take row locks on every resource key, in sorted order to avoid deadlocks."""
        with self._guard('locking scheduling resources'):
            for key in sorted(set(resource_keys)):
                lock = self.db.query(SchedulingResourceLock).filter(
                    SchedulingResourceLock.resource_key == key,
                ).with_for_update().first()
                if lock is None:
                    lock = SchedulingResourceLock(resource_key=key)
                    self.db.add(lock)
                lock.locked_at = to_naive_utc(utc_now())
            self.db.flush()

    def insert_appointment(self, record: AppointmentRecord) -> None:
        with self._guard('creating appointment'):
            row = Appointment(
                appointment_code=record.code,
                patient_code=record.patient_code,
                employee_code=record.employee_code,
                room_code=record.room_code,
                status=record.status.value,
                start_time=to_naive_utc(record.appointment_start_time),
                end_time=to_naive_utc(record.appointment_end_time),
                actual_start_time=_naive(record.actual_start_time),
                actual_end_time=_naive(record.actual_end_time),
                notes=record.notes,
                linked_treatment_plan_code=record.linked_treatment_plan_code,
                rescheduled_to_code=record.rescheduled_to_code,
            )
            row.participants = [
                AppointmentParticipant(employee_code=code, position=position)
                for position, code in enumerate(record.participant_codes)
            ]
            row.services = [
                AppointmentServiceLink(service_code=code, position=position)
                for position, code in enumerate(record.service_codes)
            ]
            row.plan_items = [AppointmentPlanItem(item_code=code) for code in record.plan_item_codes]
            self.db.add(row)
            self.db.flush()

    def update_appointment(self, record: AppointmentRecord) -> None:
        """Persist status, timing, notes and links. Resources are fixed once booked."""
        with self._guard('updating appointment'):
            row = self._find_row(record.code)
            if row is None:
                raise UpstreamUnavailable(
                    f'Appointment {record.code} disappeared while it was being updated.',
                    code='APPOINTMENT_VANISHED',
                    details={'appointment_code': record.code},
                )
            row.status = record.status.value
            row.start_time = to_naive_utc(record.appointment_start_time)
            row.end_time = to_naive_utc(record.appointment_end_time)
            row.actual_start_time = _naive(record.actual_start_time)
            row.actual_end_time = _naive(record.actual_end_time)
            row.notes = record.notes
            row.linked_treatment_plan_code = record.linked_treatment_plan_code
            row.rescheduled_to_code = record.rescheduled_to_code
            self.db.flush()

    def record_audit(self, entry: AuditEntry) -> None:
        with self._guard('writing audit log'):
            self.db.add(AppointmentAuditLog(
                appointment_code=entry.appointment_code,
                action=entry.action.value,
                old_status=entry.old_status.value if entry.old_status else None,
                new_status=entry.new_status.value if entry.new_status else None,
                old_start_time=_naive(entry.old_start_time),
                new_start_time=_naive(entry.new_start_time),
                reason_code=entry.reason_code.value if entry.reason_code else None,
                notes=entry.notes,
                performed_by=entry.performed_by,
                created_at=to_naive_utc(entry.created_at),
            ))
            self.db.flush()

    def get_audit_trail(self, appointment_code: str) -> list[AppointmentAuditLog]:
        with self._guard('loading audit log'):
            return self.db.query(AppointmentAuditLog).filter(
                AppointmentAuditLog.appointment_code == appointment_code,
            ).order_by(AppointmentAuditLog.id.asc()).all()

    def commit(self) -> None:
        with self._guard('committing'):
            self.db.commit()

    def rollback(self) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.exception('Rollback failed')

    # -- time off ---------------------------------------------------------

    def get_time_off_requests(
        self,
        employee_codes: Iterable[str],
        start_date: date,
        end_date: date,
    ) -> list[TimeOffRequestRecord]:
        codes = list(dict.fromkeys(employee_codes))
        if not codes:
            return []

        with self._guard('loading time-off requests'):
            rows = self.db.query(TimeOffRequest).filter(
                TimeOffRequest.employee_code.in_(codes),
                TimeOffRequest.start_date <= end_date,
                TimeOffRequest.end_date >= start_date,
            ).order_by(TimeOffRequest.start_date.asc()).all()

        return [
            TimeOffRequestRecord(
                request_code=row.request_code,
                employee_code=row.employee_code,
                start_date=row.start_date,
                end_date=row.end_date,
                time_off_type=row.time_off_type,
                status=row.status,
                reason=row.reason or '',
            )
            for row in rows
        ]

    def get_leave_balance(self, employee_code: str, year: int, time_off_type: str) -> Optional[LeaveBalanceRecord]:
        with self._guard('loading leave balance'):
            row = self.db.query(LeaveBalance).filter(
                LeaveBalance.employee_code == employee_code,
                LeaveBalance.year == year,
                LeaveBalance.time_off_type == time_off_type,
            ).first()

        if row is None:
            return None
        return LeaveBalanceRecord(
            employee_code=row.employee_code,
            year=row.year,
            time_off_type=row.time_off_type,
            total_days_allowed=row.total_days_allowed,
            days_taken=row.days_taken,
            days_remaining=row.days_remaining,
        )
