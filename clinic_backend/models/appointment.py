"""Appointment model definitions."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from clinic_backend.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Appointment(Base):
    """Represents a booked appointment. Timestamps are stored as naive UTC."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    appointment_code = Column(String, unique=True, index=True, nullable=False)
    patient_code = Column(String, nullable=False)
    employee_code = Column(String, nullable=False)
    room_code = Column(String, nullable=False)
    status = Column(String, nullable=False, default="SCHEDULED")
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    actual_start_time = Column(DateTime)
    actual_end_time = Column(DateTime)
    notes = Column(Text)
    linked_treatment_plan_code = Column(String)
    rescheduled_to_code = Column(String)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    participants = relationship(
        "AppointmentParticipant",
        cascade="all, delete-orphan",
        order_by="AppointmentParticipant.position",
    )
    services = relationship(
        "AppointmentServiceLink",
        cascade="all, delete-orphan",
        order_by="AppointmentServiceLink.position",
    )
    plan_items = relationship("AppointmentPlanItem", cascade="all, delete-orphan")


class AppointmentParticipant(Base):
    """An additional employee (assistant, nurse) occupied by an appointment."""
    __tablename__ = "appointment_participants"

    appointment_id = Column(Integer, ForeignKey("appointments.id"), primary_key=True)
    employee_code = Column(String, primary_key=True, index=True)
    position = Column(Integer, default=0, nullable=False)


class AppointmentServiceLink(Base):
    __tablename__ = "appointment_services"

    appointment_id = Column(Integer, ForeignKey("appointments.id"), primary_key=True)
    service_code = Column(String, primary_key=True)
    position = Column(Integer, default=0, nullable=False)


class AppointmentPlanItem(Base):
    """Treatment-plan item delivered by an appointment."""
    __tablename__ = "appointment_plan_items"

    appointment_id = Column(Integer, ForeignKey("appointments.id"), primary_key=True)
    item_code = Column(String, primary_key=True, index=True)


class AppointmentAuditLog(Base):
    __tablename__ = "appointment_audit_logs"

    id = Column(Integer, primary_key=True)
    appointment_code = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)
    old_status = Column(String)
    new_status = Column(String)
    old_start_time = Column(DateTime)
    new_start_time = Column(DateTime)
    reason_code = Column(String)
    notes = Column(Text)
    performed_by = Column(String)
    created_at = Column(DateTime, nullable=False)


class SchedulingResourceLock(Base):
    """One row per bookable resource; locked FOR UPDATE while a booking is written."""
    __tablename__ = "scheduling_resource_locks"

    resource_key = Column(String, primary_key=True)
    locked_at = Column(DateTime)
