import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('CLINIC_TIMEZONE', 'UTC')

from clinic_backend.database import Base  # noqa: E402
from clinic_backend.models.appointment import Appointment  # noqa: E402
from clinic_backend.models.employee import Employee, EmployeeSpecialization  # noqa: E402
from clinic_backend.models.service import DentalService, Room, RoomService  # noqa: E402
from clinic_backend.models.shift import EmployeeShift, Holiday  # noqa: E402
from clinic_backend.models.time_off import LeaveBalance, TimeOffRequest  # noqa: E402
from clinic_backend.models.treatment_plan import TreatmentPlanItem  # noqa: E402

WORK_DAY = date(2030, 6, 10)


class ClinicSeeder:
    def __init__(self, db):
        self.db = db

    def employee(self, code: str, role: str = 'DENTIST', specializations=(), is_active: bool = True) -> None:
        self.db.add(Employee(employee_code=code, full_name=code, role=role, is_active=is_active))
        for specialization_id in specializations:
            self.db.add(EmployeeSpecialization(employee_code=code, specialization_id=specialization_id))

    def service(
        self,
        code: str,
        duration: float,
        buffer: float = 0,
        specialization_id: int | None = None,
        is_active: bool = True,
    ) -> None:
        self.db.add(DentalService(
            service_code=code,
            name=code,
            duration_minutes=duration,
            buffer_minutes=buffer,
            specialization_id=specialization_id,
            is_active=is_active,
        ))

    def room(self, code: str, services=(), is_active: bool = True) -> None:
        self.db.add(Room(room_code=code, name=code, is_active=is_active))
        for service_code in services:
            self.db.add(RoomService(room_code=code, service_code=service_code))

    def shift(self, employee_code: str, work_date: date, start: time, end: time, status: str = 'ACTIVE') -> None:
        self.db.add(EmployeeShift(
            employee_code=employee_code,
            work_date=work_date,
            start_time=start,
            end_time=end,
            status=status,
        ))

    def holiday(self, day: date, name: str = 'Clinic holiday') -> None:
        self.db.add(Holiday(holiday_date=day, name=name))

    def time_off(self, employee_code: str, start: date, end: date, status: str = 'APPROVED', request_code=None) -> None:
        self.db.add(TimeOffRequest(
            request_code=request_code,
            employee_code=employee_code,
            start_date=start,
            end_date=end,
            status=status,
        ))

    def leave_balance(
        self,
        employee_code: str,
        year: int,
        total: float,
        taken: float,
        remaining: float | None = None,
        time_off_type: str = 'ANNUAL_LEAVE',
    ) -> None:
        self.db.add(LeaveBalance(
            employee_code=employee_code,
            year=year,
            time_off_type=time_off_type,
            total_days_allowed=total,
            days_taken=taken,
            days_remaining=total - taken if remaining is None else remaining,
        ))

    def plan_item(self, item_code: str, plan_code: str, patient_code: str, status: str = 'READY_FOR_BOOKING') -> None:
        self.db.add(TreatmentPlanItem(item_code=item_code, plan_code=plan_code, patient_code=patient_code, status=status))

    def commit(self) -> None:
        self.db.commit()


@pytest.fixture
def db_session():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db_session) -> ClinicSeeder:
    return ClinicSeeder(db_session)


@pytest.fixture
def clinic(seed) -> ClinicSeeder:
    """Two dentists, an assistant and a receptionist rostered 08:00-12:00 on WORK_DAY."""
    seed.employee('D1', 'DENTIST', specializations=[1])
    seed.employee('D2', 'DOCTOR')
    seed.employee('A1', 'ASSISTANT')
    seed.employee('R9', 'OTHER')

    seed.service('CLEAN', 30, 10)
    seed.service('FILL', 45, 15, specialization_id=1)
    seed.service('XRAY', 15, 5)

    seed.room('R1', ['CLEAN', 'FILL', 'XRAY'])
    seed.room('R2', ['CLEAN', 'FILL'])
    seed.room('R3', ['XRAY'])

    for code in ('D1', 'D2', 'A1', 'R9'):
        seed.shift(code, WORK_DAY, time(8, 0), time(12, 0))
    seed.commit()
    return seed


@pytest.fixture
def appointment_rows(db_session):
    def _rows() -> list[Appointment]:
        return db_session.query(Appointment).order_by(Appointment.id.asc()).all()

    return _rows
