"""Patient model definitions."""

import uuid

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy.orm import relationship
from medflow.database import Base


class Patient(Base):
    """Represents a clinic patient, optionally linked to a portal account."""
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    clinic_id = Column(String(36), ForeignKey("clinics.id"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String)
    email = Column(String)

    user = relationship("User")
