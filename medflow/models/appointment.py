"""Appointment model definitions."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from medflow.database import Base
from medflow.models.patient import Patient
from medflow.models.service import Service
from medflow.models.user import User


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Appointment(Base):
    """Represents a scheduled appointment between a patient and a doctor."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_appointments_time_order"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    clinic_id = Column(String(36), ForeignKey("clinics.id"), index=True, nullable=False)
    doctor_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id"), index=True, nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship(Patient)
    doctor = relationship(User)
    service = relationship(Service)

    def __repr__(self) -> str:
        return f"<Appointment {self.id} {self.start_time}-{self.end_time} {self.status}>"
