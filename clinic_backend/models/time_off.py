"""Time-off model definitions."""

from sqlalchemy import Column, Date, Float, Integer, String, UniqueConstraint
from clinic_backend.database import Base


class TimeOffRequest(Base):
    """An employee's request to be away for a range of whole days."""
    __tablename__ = "time_off_requests"

    id = Column(Integer, primary_key=True)
    request_code = Column(String, unique=True, index=True)
    employee_code = Column(String, index=True, nullable=False)
    time_off_type = Column(String, default="ANNUAL_LEAVE", nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, default="PENDING", nullable=False)
    reason = Column(String)


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (UniqueConstraint("employee_code", "year", "time_off_type"),)

    id = Column(Integer, primary_key=True)
    employee_code = Column(String, index=True, nullable=False)
    year = Column(Integer, nullable=False)
    time_off_type = Column(String, nullable=False)
    total_days_allowed = Column(Float, nullable=False)
    days_taken = Column(Float, default=0, nullable=False)
    days_remaining = Column(Float, nullable=False)
