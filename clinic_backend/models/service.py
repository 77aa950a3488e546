"""Dental service and room model definitions."""

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String
from clinic_backend.database import Base


class DentalService(Base):
    """A bookable treatment with its chair time and cleanup buffer."""
    __tablename__ = "dental_services"

    id = Column(Integer, primary_key=True)
    service_code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    duration_minutes = Column(Float, nullable=False)
    buffer_minutes = Column(Float, default=0, nullable=False)
    specialization_id = Column(Integer)
    is_active = Column(Boolean, default=True, nullable=False)


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True)
    room_code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    is_active = Column(Boolean, default=True, nullable=False)


class RoomService(Base):
    """Which services a room is equipped for."""
    __tablename__ = "room_services"

    room_code = Column(String, ForeignKey("rooms.room_code"), primary_key=True)
    service_code = Column(String, ForeignKey("dental_services.service_code"), primary_key=True)
