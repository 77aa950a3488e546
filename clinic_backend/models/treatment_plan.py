"""Treatment plan item model definitions."""

from sqlalchemy import Column, DateTime, Integer, String
from clinic_backend.database import Base


class TreatmentPlanItem(Base):
    """A single planned procedure inside a patient's treatment plan."""
    __tablename__ = "treatment_plan_items"

    id = Column(Integer, primary_key=True)
    item_code = Column(String, unique=True, index=True, nullable=False)
    plan_code = Column(String, index=True, nullable=False)
    patient_code = Column(String, index=True, nullable=False)
    service_code = Column(String)
    status = Column(String, nullable=False, default="READY_FOR_BOOKING")
    completed_at = Column(DateTime)
    updated_at = Column(DateTime)
