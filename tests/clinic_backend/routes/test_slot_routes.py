from datetime import date, datetime, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from clinic_backend.auth.dependencies import ALL_CAPABILITIES, Actor
from clinic_backend.routes.auth_routes import me
from clinic_backend.routes.availability_routes import list_available_times, list_reason_codes, list_statuses
from clinic_backend.routes.common import calendar_cache
from clinic_backend.routes.time_off_routes import TimeOffValidationRequest, validate_time_off

WORK_DAY = date(2030, 6, 10)
ACTOR = Actor(employee_code='U1', capabilities=ALL_CAPABILITIES)


@pytest.fixture(autouse=True)
def _routes(monkeypatch):
    monkeypatch.setattr('clinic_backend.routes.availability_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('clinic_backend.routes.time_off_routes.ensure_database_ready', lambda: None)
    calendar_cache.invalidate()
    yield
    calendar_cache.invalidate()


def _times(db_session, service_codes, participant_codes=None, strict: bool = False, employee_code: str = 'D1'):
    return list_available_times(
        day=WORK_DAY,
        employee_code=employee_code,
        service_codes=service_codes,
        participant_codes=participant_codes,
        strict=strict,
        actor=ACTOR,
        db=db_session,
    )


def test_available_times_accepts_comma_separated_services(clinic, db_session) -> None:
    response = _times(db_session, ['CLEAN,XRAY'], participant_codes=['A1,D1'])

    assert response.date == WORK_DAY
    assert response.participant_codes == ['A1']
    assert response.total_duration_minutes == 60
    assert response.compatible_room_codes == ['R1']
    assert response.slots[0].start_time == datetime(2030, 6, 10, 8, 0, tzinfo=timezone.utc)
    assert response.slots[-1].start_time == datetime(2030, 6, 10, 11, 0, tzinfo=timezone.utc)
    assert all(slot.available_compatible_room_codes == ['R1'] for slot in response.slots)


def test_available_times_repeated_service_parameters(clinic, db_session) -> None:
    response = _times(db_session, ['CLEAN', 'XRAY', 'CLEAN'])

    assert response.total_duration_minutes == 60


def test_unknown_service_maps_to_400(clinic, db_session) -> None:
    with pytest.raises(HTTPException) as exception_info:
        _times(db_session, ['BLEACH'])

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['code'] == 'SERVICES_NOT_FOUND'


def test_strict_mode_without_slots_maps_to_404(clinic, db_session) -> None:
    clinic.holiday(WORK_DAY)
    clinic.commit()

    assert _times(db_session, ['CLEAN']).warnings == ['DATE_IS_HOLIDAY']
    with pytest.raises(HTTPException) as exception_info:
        _times(db_session, ['CLEAN'], strict=True)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail['code'] == 'NO_AVAILABILITY'


def test_status_catalogue_lists_every_status_with_transitions() -> None:
    statuses = {option.status: option for option in list_statuses()}

    assert set(statuses) == {'SCHEDULED', 'CHECKED_IN', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED', 'ABSENT'}
    assert statuses['CHECKED_IN'].allowed_transitions == ['CANCELLED', 'IN_PROGRESS']
    assert statuses['ABSENT'].allowed_transitions == []
    assert statuses['ABSENT'].label == 'Absent'


def test_reason_codes_include_rescheduled() -> None:
    assert 'RESCHEDULED' in list_reason_codes()
    assert 'PREVIOUS_CASE_OVERRUN' in list_reason_codes()


def test_time_off_request_rejects_reversed_range() -> None:
    with pytest.raises(ValidationError):
        TimeOffValidationRequest(employee_code='D1', start_date=date(2030, 7, 5), end_date=date(2030, 7, 1))


def test_time_off_validation_route_reports_balance(clinic, db_session) -> None:
    clinic.leave_balance('D1', 2030, total=20, taken=2)
    clinic.commit()

    response = validate_time_off(
        TimeOffValidationRequest(employee_code=' D1 ', start_date=date(2030, 7, 1), end_date=date(2030, 7, 3), time_off_type='annual_leave'),
        actor=ACTOR,
        db=db_session,
    )

    assert response.requested_days == 3
    assert response.balance.days_remaining == 18
    assert response.warnings == []


def test_time_off_overlap_maps_to_409(clinic, db_session) -> None:
    clinic.time_off('D1', date(2030, 7, 2), date(2030, 7, 2), request_code='TO-1')
    clinic.commit()

    with pytest.raises(HTTPException) as exception_info:
        validate_time_off(
            TimeOffValidationRequest(employee_code='D1', start_date=date(2030, 7, 1), end_date=date(2030, 7, 3)),
            actor=ACTOR,
            db=db_session,
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['code'] == 'TIME_OFF_OVERLAP'


def test_me_lists_sorted_capabilities() -> None:
    response = me(Actor(employee_code='U7', capabilities=frozenset({'appointment:read', 'appointment:create'})))

    assert response.employee_code == 'U7'
    assert response.capabilities == ['appointment:create', 'appointment:read']
