"""Clinic model definitions."""

import uuid

from sqlalchemy import Column, String
from medflow.database import Base


class Clinic(Base):
    """Represents a tenant clinic."""
    __tablename__ = "clinics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
