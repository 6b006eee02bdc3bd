"""Appointment service - scheduling and lifecycle operations for one clinic."""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medflow.models.appointment import Appointment, AppointmentStatus, utcnow
from medflow.models.user import Role, User
from medflow.scheduling.access_policy import is_authorized
from medflow.scheduling.conflicts import check_conflict
from medflow.scheduling.errors import (
    AppointmentValidationError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    NotOwnerError,
    StoreError,
)
from medflow.scheduling.lifecycle import (
    TERMINAL_STATUSES,
    LifecyclePolicy,
    authorize_transition,
    get_lifecycle_policy,
    parse_status,
)
from medflow.scheduling.store import AppointmentDraft, AppointmentStore
from medflow.services import notification_service

logger = logging.getLogger(__name__)

INITIAL_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class AppointmentService:
    """Scheduling operations performed by one authenticated actor inside their clinic."""

    def __init__(self, db: Session, actor: User, policy: LifecyclePolicy | None = None):
        if not actor.clinic_id:
            raise ForbiddenError('User is not assigned to a clinic.')
        self.db = db
        self.actor = actor
        self.policy = policy or get_lifecycle_policy()
        self.store = AppointmentStore(db, actor.clinic_id)

    @property
    def is_patient(self) -> bool:
        return self.actor.role == Role.PATIENT.value

    def _require(self, action: str) -> None:
        if not is_authorized(self.actor.role, 'appointments', action):
            raise ForbiddenError()

    def _dispatch_notifications(self) -> None:
        # Runs after commit; dispatch failures are recorded on the outbox, not raised.
        notification_service.dispatch_pending(self.db, clinic_id=self.actor.clinic_id)

    def _load(self, appointment_id: str) -> Appointment:
        try:
            return self.store.find_by_id(appointment_id)
        except SQLAlchemyError as exc:
            logger.exception('Failed to load appointment %s', appointment_id)
            raise StoreError(cause=exc) from exc

    def _validate_references(self, patient_id: str | None, doctor_id: str | None, service_id: str | None):
        patient = None
        if patient_id:
            patient = self.store.find_patient(patient_id)
            if patient is None:
                raise NotFoundError('Patient not found.')
        if doctor_id and self.store.find_doctor(doctor_id) is None:
            raise NotFoundError('Doctor not found.')
        if service_id and self.store.find_service(service_id) is None:
            raise NotFoundError('Service not found.')
        return patient

    def list_appointments(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        doctor_id: str | None = None,
        patient_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        self._require('read')
        try:
            return self.store.list(
                start=start,
                end=end,
                doctor_id=doctor_id,
                patient_id=patient_id,
                status=status,
                patient_user_id=self.actor.id if self.is_patient else None,
            )
        except SQLAlchemyError as exc:
            logger.exception('Failed to list appointments for clinic %s', self.actor.clinic_id)
            raise StoreError('Failed to fetch appointments.', cause=exc) from exc

    def get_appointment(self, appointment_id: str) -> Appointment:
        self._require('read')
        appointment = self._load(appointment_id)
        if self.is_patient and not self.store.is_owner(appointment, self.actor.id):
            raise NotOwnerError('You can only view your own appointments.')
        return appointment

    def has_conflict(
        self,
        doctor_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_appointment_id: str | None = None,
    ) -> bool:
        self._require('read')
        try:
            return check_conflict(self.store, doctor_id, start_time, end_time, exclude_appointment_id)
        except SQLAlchemyError as exc:
            logger.exception('Conflict lookup failed for doctor %s', doctor_id)
            raise StoreError(cause=exc) from exc

    def create_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        start_time: datetime,
        end_time: datetime,
        service_id: str | None = None,
        notes: str | None = None,
        status=None,
    ) -> Appointment:
        self._require('create')

        if start_time >= end_time:
            raise AppointmentValidationError('Start time must be before end time.')

        initial_status = parse_status(status) if status else AppointmentStatus.SCHEDULED
        if initial_status not in INITIAL_STATUSES:
            raise AppointmentValidationError('New appointments must be SCHEDULED or CONFIRMED.')
        if self.is_patient and initial_status != AppointmentStatus.SCHEDULED:
            raise InvalidTransitionError('Patients can only request SCHEDULED appointments.')

        with self.store.serializable():
            patient = self._validate_references(patient_id, doctor_id, service_id)
            if self.is_patient and patient.user_id != self.actor.id:
                raise NotOwnerError('You can only book appointments for yourself.')

            if check_conflict(self.store, doctor_id, start_time, end_time):
                raise ConflictError()

            appointment = self.store.create(
                AppointmentDraft(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    service_id=service_id,
                    start_time=start_time,
                    end_time=end_time,
                    notes=notes,
                    status=initial_status,
                )
            )
            if patient.user_id:
                notification_service.enqueue(
                    self.db, notification_service.EVENT_CONFIRMED, appointment, patient.user_id
                )
            appointment_id = appointment.id

        logger.info('Appointment %s booked with doctor %s by %s', appointment_id, doctor_id, self.actor.id)
        self._dispatch_notifications()
        return self._load(appointment_id)

    def update_status(self, appointment_id: str, status, notes: str | None = None, now: datetime | None = None) -> Appointment:
        self._require('update_status')
        requested = parse_status(status)
        now = now or utcnow()

        with self.store.serializable():
            appointment = self.store.find_by_id(appointment_id)
            previous = parse_status(appointment.status)
            authorize_transition(
                self.actor.role,
                self.store.is_owner(appointment, self.actor.id),
                appointment,
                requested,
                now,
                self.policy,
            )

            if previous == AppointmentStatus.CANCELLED and requested != AppointmentStatus.CANCELLED:
                if check_conflict(
                    self.store, appointment.doctor_id, appointment.start_time, appointment.end_time, appointment.id
                ):
                    raise ConflictError()

            self.store.update_status(appointment_id, requested, notes)
            patient_user_id = appointment.patient.user_id if appointment.patient else None
            if requested == AppointmentStatus.CANCELLED and previous != requested and patient_user_id:
                notification_service.enqueue(
                    self.db, notification_service.EVENT_CANCELLED, appointment, patient_user_id, reason=notes
                )

        logger.info('Appointment %s moved %s -> %s by %s', appointment_id, previous.value, requested.value, self.actor.id)
        self._dispatch_notifications()
        return self._load(appointment_id)

    def reschedule(self, appointment_id: str, changes: dict, now: datetime | None = None) -> Appointment:
        self._require('reschedule')
        now = now or utcnow()
        changes = {key: value for key, value in changes.items() if value is not None}

        with self.store.serializable():
            appointment = self.store.find_by_id(appointment_id)
            previous = parse_status(appointment.status)

            if previous in TERMINAL_STATUSES and self.policy.enforce_transitions:
                raise InvalidTransitionError(f'Cannot modify a {previous.value.lower()} appointment.')

            if 'status' in changes:
                changes['status'] = parse_status(changes['status'])
                authorize_transition(self.actor.role, False, appointment, changes['status'], now, self.policy)

            new_patient = self._validate_references(
                changes.get('patient_id'), changes.get('doctor_id'), changes.get('service_id')
            )
            patient = new_patient or appointment.patient

            doctor_id = changes.get('doctor_id', appointment.doctor_id)
            start_time = changes.get('start_time', appointment.start_time)
            end_time = changes.get('end_time', appointment.end_time)
            if start_time >= end_time:
                raise AppointmentValidationError('Start time must be before end time.')

            target_status = changes.get('status', previous)
            moves = any(key in changes for key in ('doctor_id', 'start_time', 'end_time'))
            reopens = previous == AppointmentStatus.CANCELLED
            if (moves or reopens) and target_status != AppointmentStatus.CANCELLED:
                if check_conflict(self.store, doctor_id, start_time, end_time, appointment.id):
                    raise ConflictError()

            self.store.reschedule(appointment, changes)
            patient_user_id = patient.user_id if patient else None
            if changes.get('status') == AppointmentStatus.CANCELLED and patient_user_id:
                notification_service.enqueue(
                    self.db, notification_service.EVENT_CANCELLED, appointment, patient_user_id,
                    reason=changes.get('notes'),
                )

        logger.info('Appointment %s updated by %s: %s', appointment_id, self.actor.id, sorted(changes))
        self._dispatch_notifications()
        return self._load(appointment_id)

    def cancel(self, appointment_id: str, reason: str | None = None, now: datetime | None = None) -> Appointment:
        """Soft cancel: the row stays, its status becomes CANCELLED and the notes record who did it."""
        self._require('cancel')
        now = now or utcnow()

        with self.store.serializable():
            appointment = self.store.find_by_id(appointment_id)
            authorize_transition(self.actor.role, False, appointment, AppointmentStatus.CANCELLED, now, self.policy)

            audit_line = f'Cancelled by {self.actor.name or self.actor.email} on {now.isoformat()}'
            if reason:
                audit_line = f'{audit_line}: {reason}'
            notes = f'{appointment.notes}\n\n{audit_line}' if appointment.notes else audit_line

            self.store.update_status(appointment_id, AppointmentStatus.CANCELLED, notes)
            if appointment.patient and appointment.patient.user_id:
                notification_service.enqueue(
                    self.db, notification_service.EVENT_CANCELLED, appointment, appointment.patient.user_id,
                    reason=reason,
                )

        logger.info('Appointment %s cancelled by %s', appointment_id, self.actor.id)
        self._dispatch_notifications()
        return self._load(appointment_id)

    def send_reminders(self, now: datetime | None = None, hours_ahead: int | None = None) -> dict:
        self._require('remind')
        try:
            queued = notification_service.enqueue_due_reminders(
                self.db, self.actor.clinic_id, now or utcnow(), hours_ahead
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception('Failed to queue reminders for clinic %s', self.actor.clinic_id)
            raise StoreError('Failed to queue reminders.', cause=exc) from exc
        summary = notification_service.dispatch_pending(self.db, clinic_id=self.actor.clinic_id)
        return {'queued': queued, **summary}
