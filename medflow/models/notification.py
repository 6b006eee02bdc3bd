"""Notification and notification outbox model definitions."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from medflow.database import Base
from medflow.models.appointment import utcnow


class Notification(Base):
    """A message shown to a user in the notification bell."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    clinic_id = Column(String(36), ForeignKey("clinics.id"), nullable=True)
    type = Column(String(20), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    icon = Column(String(8))
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class NotificationOutbox(Base):
    """A pending notification written in the same transaction as the change it reports."""
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    clinic_id = Column(String(36), ForeignKey("clinics.id"), index=True, nullable=False)
    event = Column(String(40), nullable=False)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    reason = Column(Text)
    status = Column(String(10), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    dispatched_at = Column(DateTime)
