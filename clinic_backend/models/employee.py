"""Employee and specialization model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from clinic_backend.database import Base


class Employee(Base):
    """Represents a clinic staff member who can be booked."""
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True)
    employee_code = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    role = Column(String, nullable=False, default="OTHER")
    is_active = Column(Boolean, default=True, nullable=False)


class EmployeeSpecialization(Base):
    """Links an employee to a specialization they are qualified for."""
    __tablename__ = "employee_specializations"

    employee_code = Column(String, ForeignKey("employees.employee_code"), primary_key=True)
    specialization_id = Column(Integer, primary_key=True)
