from datetime import date, datetime, time, timezone

import pytest
from sqlalchemy.exc import OperationalError

from clinic_backend.core.errors import SlotConflict, UpstreamUnavailable
from clinic_backend.models.appointment import SchedulingResourceLock
from clinic_backend.models.shift import EmployeeShift
from clinic_backend.repositories.scheduling_repository import SchedulingRepository, appointment_code_prefix
from clinic_backend.scheduling.types import AppointmentRecord, AppointmentStatus, EmployeeRole

WORK_DAY = date(2030, 6, 10)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2030, 6, 10, hour, minute, tzinfo=timezone.utc)


def _record(code: str, start: datetime, end: datetime, **overrides) -> AppointmentRecord:
    values = {
        'code': code,
        'patient_code': 'P1',
        'employee_code': 'D1',
        'room_code': 'R1',
        'service_codes': ('CLEAN', 'XRAY'),
        'appointment_start_time': start,
        'appointment_end_time': end,
    }
    values.update(overrides)
    return AppointmentRecord(**values)


@pytest.fixture
def repository(db_session) -> SchedulingRepository:
    return SchedulingRepository(db_session)


def test_appointment_round_trips_as_aware_utc(clinic, repository) -> None:
    repository.insert_appointment(_record(
        'APT-20300610-001', _at(9, 0), _at(10, 0),
        participant_codes=('A1',), plan_item_codes=('TPI-2', 'TPI-1'), linked_treatment_plan_code='TP-1',
    ))
    repository.commit()

    stored = repository.get_appointment('APT-20300610-001')

    assert stored.appointment_start_time == _at(9, 0)
    assert stored.appointment_start_time.tzinfo is not None
    assert stored.participant_codes == ('A1',)
    assert stored.service_codes == ('CLEAN', 'XRAY')
    assert stored.plan_item_codes == ('TPI-1', 'TPI-2')
    assert stored.linked_treatment_plan_code == 'TP-1'
    assert repository.get_appointment('APT-20300610-999') is None


def test_existing_appointments_match_any_resource_and_skip_inactive(clinic, repository) -> None:
    repository.insert_appointment(_record('APT-1', _at(9, 0), _at(9, 40)))
    repository.insert_appointment(_record('APT-2', _at(9, 0), _at(9, 40), employee_code='D2', room_code='R2', patient_code='P2', participant_codes=('A1',)))
    repository.insert_appointment(_record('APT-3', _at(9, 0), _at(9, 40), employee_code='D2', room_code='R3', patient_code='P3', status=AppointmentStatus.CANCELLED))
    repository.insert_appointment(_record('APT-4', _at(9, 40), _at(10, 0), employee_code='D2', room_code='R2', patient_code='P2'))
    repository.commit()

    def codes(**resources) -> list[str]:
        return [record.code for record in repository.get_existing_appointments(_at(9, 0), _at(9, 40), **resources)]

    assert codes(employee_codes=['A1']) == ['APT-2']
    assert codes(room_codes=['R1', 'R3']) == ['APT-1']
    assert codes(patient_codes=['P2']) == ['APT-2']
    assert sorted(codes(employee_codes=['D2'])) == ['APT-2']
    assert codes() == []


def test_appointments_on_includes_the_following_night(clinic, repository) -> None:
    repository.insert_appointment(_record(
        'APT-late', datetime(2030, 6, 11, 0, 30, tzinfo=timezone.utc), datetime(2030, 6, 11, 1, 0, tzinfo=timezone.utc),
    ))
    repository.commit()

    assert [record.code for record in repository.get_appointments_on(WORK_DAY, employee_codes=['D1'])] == ['APT-late']


def test_next_appointment_code_is_sequential_per_day(clinic, repository) -> None:
    assert appointment_code_prefix(WORK_DAY) == 'APT-20300610-'
    assert repository.next_appointment_code(WORK_DAY) == 'APT-20300610-001'

    repository.insert_appointment(_record('APT-20300610-001', _at(9, 0), _at(9, 40)))
    repository.insert_appointment(_record('APT-20300610-007', _at(10, 0), _at(10, 40), patient_code='P2'))
    repository.insert_appointment(_record('APT-20300611-004', _at(11, 0), _at(11, 40), patient_code='P3'))
    repository.commit()

    assert repository.next_appointment_code(WORK_DAY) == 'APT-20300610-008'
    assert repository.next_appointment_code(date(2030, 6, 11)) == 'APT-20300611-005'


def test_duplicate_code_is_reported_as_write_conflict(clinic, repository) -> None:
    repository.insert_appointment(_record('APT-20300610-001', _at(9, 0), _at(9, 40)))
    repository.commit()

    with pytest.raises(SlotConflict) as exception_info:
        repository.insert_appointment(_record('APT-20300610-001', _at(10, 0), _at(10, 40), patient_code='P2'))

    assert exception_info.value.code == 'WRITE_CONFLICT'


def test_update_of_missing_appointment_is_upstream_error(clinic, repository) -> None:
    with pytest.raises(UpstreamUnavailable) as exception_info:
        repository.update_appointment(_record('APT-gone', _at(9, 0), _at(9, 40)))

    assert exception_info.value.code == 'APPOINTMENT_VANISHED'


def test_lock_resources_creates_rows_once(clinic, repository, db_session) -> None:
    repository.lock_resources(['room:R1', 'employee:D1', 'room:R1'])
    repository.commit()
    repository.lock_resources(['employee:D1'])
    repository.commit()

    keys = [row.resource_key for row in db_session.query(SchedulingResourceLock).order_by(SchedulingResourceLock.resource_key).all()]
    assert keys == ['employee:D1', 'room:R1']


def test_shifts_only_active_rows(clinic, repository, db_session) -> None:
    clinic.shift('D1', date(2030, 6, 11), time(8, 0), time(12, 0), status='CANCELLED')
    clinic.shift('D1', date(2030, 6, 12), time(13, 0), time(17, 0))
    clinic.commit()

    shifts = repository.get_shifts('D1', date(2030, 6, 1), date(2030, 6, 30))

    assert [(shift.work_date, shift.shift_start) for shift in shifts] == [
        (WORK_DAY, time(8, 0)),
        (date(2030, 6, 12), time(13, 0)),
    ]


def test_malformed_shift_is_skipped(clinic, repository, db_session, caplog) -> None:
    db_session.add(EmployeeShift(employee_code='D1', work_date=date(2030, 6, 12), start_time=time(9, 0), end_time=time(9, 0), status='ACTIVE'))
    db_session.commit()

    with caplog.at_level('WARNING'):
        shifts = repository.get_shifts('D1', date(2030, 6, 12), date(2030, 6, 12))

    assert shifts == []
    assert 'malformed shift' in caplog.text


def test_reference_data_lookups(clinic, repository) -> None:
    employees = repository.get_employees(['D1', 'A1', 'NOBODY'])

    assert set(employees) == {'D1', 'A1'}
    assert employees['D1'].role == EmployeeRole.DENTIST
    assert employees['D1'].specialization_ids == frozenset({1})
    assert [service.service_code for service in repository.get_service_definitions(['XRAY', 'NOPE', 'CLEAN'])] == ['XRAY', 'CLEAN']
    assert repository.get_room_compatibility(['CLEAN', 'XRAY']) == {'CLEAN': ['R1', 'R2'], 'XRAY': ['R1', 'R3']}
    assert repository.get_room('R2').is_active is True
    assert repository.get_room('R404') is None


def test_inactive_rooms_are_not_compatible(seed, repository) -> None:
    seed.room('R1', ['CLEAN'])
    seed.room('R2', ['CLEAN'], is_active=False)
    seed.commit()

    assert repository.get_room_compatibility(['CLEAN']) == {'CLEAN': ['R1']}


def test_database_errors_become_upstream_unavailable(repository, monkeypatch) -> None:
    def _boom(*args, **kwargs):
        raise OperationalError('SELECT 1', {}, Exception('connection refused'))

    monkeypatch.setattr(repository.db, 'query', _boom)

    with pytest.raises(UpstreamUnavailable) as exception_info:
        repository.get_holidays(date(2030, 6, 1), date(2030, 6, 30))

    assert exception_info.value.details == {'operation': 'loading holidays'}
