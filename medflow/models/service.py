"""Clinic service model definitions."""

import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, String
from medflow.database import Base


class Service(Base):
    """Represents a bookable clinic service."""
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    clinic_id = Column(String(36), ForeignKey("clinics.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    duration_minutes = Column(Integer)
    price = Column(Numeric(10, 2))
