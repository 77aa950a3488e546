"""Roster model definitions."""

from sqlalchemy import Column, Date, Integer, String, Time
from clinic_backend.database import Base


class EmployeeShift(Base):
    """A rostered shift. Times are clinic-local wall-clock times."""
    __tablename__ = "employee_shifts"

    id = Column(Integer, primary_key=True)
    employee_code = Column(String, index=True, nullable=False)
    work_date = Column(Date, index=True, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, default="ACTIVE", nullable=False)


class Holiday(Base):
    """A clinic-wide closure date."""
    __tablename__ = "holiday_dates"

    holiday_date = Column(Date, primary_key=True)
    name = Column(String)
