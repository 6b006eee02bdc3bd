"""
Appointment notifications

Appointment changes write an outbox row in the same transaction as the change.
After the transaction commits, dispatch_pending() turns outbox rows into
user-facing notifications. A failing dispatch is logged and recorded on the
outbox row; it never undoes the appointment change that produced it.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medflow.core import config
from medflow.models.appointment import Appointment, AppointmentStatus, utcnow
from medflow.models.notification import Notification, NotificationOutbox
from medflow.models.patient import Patient

logger = logging.getLogger(__name__)

EVENT_CONFIRMED = 'appointment_confirmed'
EVENT_CANCELLED = 'appointment_cancelled'
EVENT_REMINDER = 'appointment_reminder'

TYPE_APPOINTMENT = 'appointment'
TYPE_REMINDER = 'reminder'


def _format_date(value: datetime) -> str:
    return value.strftime('%A, %B %d, %Y')


def _format_time(value: datetime) -> str:
    return value.strftime('%I:%M %p')


def create_notification(
    db: Session,
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    clinic_id: str | None = None,
    icon: str | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        clinic_id=clinic_id,
        icon=icon,
        read=False,
    )
    db.add(notification)
    db.flush()
    return notification


def notify_appointment_confirmed(db: Session, *, user_id: str, appointment: Appointment, clinic_id: str) -> Notification:
    return create_notification(
        db,
        user_id=user_id,
        type=TYPE_APPOINTMENT,
        title='Appointment Confirmed',
        message=(
            f'Your appointment is confirmed for {_format_date(appointment.start_time)} '
            f'at {_format_time(appointment.start_time)}.'
        ),
        clinic_id=clinic_id,
        icon='📅',
    )


def notify_appointment_reminder(
    db: Session,
    *,
    user_id: str,
    appointment: Appointment,
    clinic_id: str,
    hours_until: int = 24,
) -> Notification:
    return create_notification(
        db,
        user_id=user_id,
        type=TYPE_REMINDER,
        title='Appointment Reminder',
        message=(
            f'Reminder: Your appointment is in {hours_until} hours on '
            f'{_format_date(appointment.start_time)} at {_format_time(appointment.start_time)}.'
        ),
        clinic_id=clinic_id,
        icon='⏰',
    )


def notify_appointment_cancelled(
    db: Session,
    *,
    user_id: str,
    appointment: Appointment,
    clinic_id: str,
    reason: str | None = None,
) -> Notification:
    message = f'Your appointment on {_format_date(appointment.start_time)} has been cancelled.'
    if reason:
        message = f'{message} Reason: {reason}'
    return create_notification(
        db,
        user_id=user_id,
        type=TYPE_APPOINTMENT,
        title='Appointment Cancelled',
        message=message,
        clinic_id=clinic_id,
        icon='❌',
    )


def enqueue(db: Session, event: str, appointment: Appointment, user_id: str, reason: str | None = None) -> NotificationOutbox:
    """Record a notification intent; the caller's commit makes it visible to the dispatcher."""
    entry = NotificationOutbox(
        clinic_id=appointment.clinic_id,
        event=event,
        appointment_id=appointment.id,
        user_id=user_id,
        reason=reason,
        status='pending',
        attempts=0,
    )
    db.add(entry)
    return entry


def _deliver(db: Session, entry: NotificationOutbox) -> None:
    appointment = db.get(Appointment, entry.appointment_id)
    if appointment is None:
        raise LookupError(f'Appointment {entry.appointment_id} no longer exists')

    if entry.event == EVENT_CONFIRMED:
        notify_appointment_confirmed(db, user_id=entry.user_id, appointment=appointment, clinic_id=entry.clinic_id)
    elif entry.event == EVENT_CANCELLED:
        notify_appointment_cancelled(
            db,
            user_id=entry.user_id,
            appointment=appointment,
            clinic_id=entry.clinic_id,
            reason=entry.reason,
        )
    elif entry.event == EVENT_REMINDER:
        hours_until = max(0, round((appointment.start_time - utcnow()).total_seconds() / 3600))
        notify_appointment_reminder(
            db,
            user_id=entry.user_id,
            appointment=appointment,
            clinic_id=entry.clinic_id,
            hours_until=hours_until,
        )
    else:
        raise ValueError(f'Unknown notification event {entry.event!r}')


def dispatch_pending(db: Session, limit: int = 100, clinic_id: str | None = None) -> dict:
    """
    Deliver pending outbox entries.

    Returns:
        dict: counts of entries sent and failed in this run
    """
    summary = {'sent': 0, 'failed': 0}

    try:
        query = db.query(NotificationOutbox).filter(NotificationOutbox.status == 'pending')
        if clinic_id:
            query = query.filter(NotificationOutbox.clinic_id == clinic_id)
        entries = query.order_by(NotificationOutbox.created_at.asc()).limit(limit).all()
    except SQLAlchemyError:
        logger.exception('Could not load pending notifications')
        return summary

    for entry in entries:
        entry_id, event = entry.id, entry.event
        try:
            _deliver(db, entry)
            entry.status = 'sent'
            entry.attempts = (entry.attempts or 0) + 1
            entry.dispatched_at = utcnow()
            db.commit()
            summary['sent'] += 1
        except Exception as exc:
            db.rollback()
            logger.exception('Notification %s (%s) failed to dispatch', entry_id, event)
            summary['failed'] += 1
            try:
                entry.attempts = (entry.attempts or 0) + 1
                entry.last_error = str(exc)
                if entry.attempts >= config.NOTIFICATION_MAX_ATTEMPTS:
                    entry.status = 'failed'
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception('Could not record failure for notification %s', entry_id)

    if summary['sent'] or summary['failed']:
        logger.info('Dispatched notifications: %(sent)d sent, %(failed)d failed', summary)
    return summary


def enqueue_due_reminders(db: Session, clinic_id: str, now: datetime, hours_ahead: int | None = None) -> int:
    """Queue one reminder per upcoming appointment whose patient has a portal account."""
    hours_ahead = config.REMINDER_HOURS_AHEAD if hours_ahead is None else hours_ahead
    window_end = now + timedelta(hours=hours_ahead)

    already_reminded = select(NotificationOutbox.appointment_id).where(
        NotificationOutbox.clinic_id == clinic_id,
        NotificationOutbox.event == EVENT_REMINDER,
    )
    upcoming = db.query(Appointment).join(Patient, Appointment.patient_id == Patient.id).filter(
        Appointment.clinic_id == clinic_id,
        Appointment.status.in_([AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value]),
        Appointment.start_time > now,
        Appointment.start_time <= window_end,
        Patient.user_id.is_not(None),
        Appointment.id.not_in(already_reminded),
    ).all()

    for appointment in upcoming:
        enqueue(db, EVENT_REMINDER, appointment, appointment.patient.user_id)

    db.commit()
    return len(upcoming)
