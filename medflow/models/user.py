"""User model definitions."""

import uuid
from enum import Enum

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy.orm import relationship
from medflow.database import Base
from medflow.models.clinic import Clinic


class Role(str, Enum):
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    RECEPTIONIST = "RECEPTIONIST"
    PATIENT = "PATIENT"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True)
    name = Column(String)
    hashed_password = Column(String)
    role = Column(String)  # ADMIN/DOCTOR/RECEPTIONIST/PATIENT
    clinic_id = Column(String(36), ForeignKey("clinics.id"), index=True)

    clinic = relationship(Clinic)
