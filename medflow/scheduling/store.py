"""Tenant-scoped persistence boundary for appointments."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from medflow.database import APPOINTMENT_EXCLUSION_CONSTRAINT
from medflow.models.appointment import Appointment, AppointmentStatus, utcnow
from medflow.models.patient import Patient
from medflow.models.service import Service
from medflow.models.user import Role, User
from medflow.scheduling.errors import ConflictError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

SERIALIZATION_FAILURE_SQLSTATES = {'40001', '40P01'}


@dataclass
class AppointmentDraft:
    patient_id: str
    doctor_id: str
    start_time: datetime
    end_time: datetime
    service_id: str | None = None
    notes: str | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED


def is_conflict_failure(exc: SQLAlchemyError) -> bool:
    """True when the database rejected a write because of a concurrent overlapping booking."""
    if isinstance(exc, IntegrityError) and APPOINTMENT_EXCLUSION_CONSTRAINT in str(exc.orig):
        return True
    # SQLite: another writer holds the reserved lock taken by BEGIN IMMEDIATE.
    if isinstance(exc, OperationalError) and 'database is locked' in str(exc.orig):
        return True
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, 'pgcode', None) or getattr(exc.orig, 'sqlstate', None)
        return sqlstate in SERIALIZATION_FAILURE_SQLSTATES
    return False


class AppointmentStore:
    def __init__(self, db: Session, clinic_id: str):
        self.db = db
        self.clinic_id = clinic_id

    def _query(self):
        return self.db.query(Appointment).filter(Appointment.clinic_id == self.clinic_id)

    @contextmanager
    def serializable(self):
        """
        Run the enclosed reads and writes as one SERIALIZABLE unit of work and commit it.

        Unflushed changes already pending on the session are refused with StoreError.
        An open transaction without pending changes (typically reads) is committed
        first so the unit of work starts on a fresh transaction.
        """
        if self.db.new or self.db.dirty or self.db.deleted:
            raise StoreError('Session has uncommitted changes; commit or roll them back first.')

        try:
            if self.db.in_transaction():
                self.db.commit()
            if self.db.get_bind().dialect.name == 'sqlite':
                # Already serializable; the engine opens with BEGIN IMMEDIATE.
                self.db.connection()
            else:
                self.db.connection(execution_options={'isolation_level': 'SERIALIZABLE'})
            yield self
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            if is_conflict_failure(exc):
                raise ConflictError(cause=exc) from exc
            logger.exception('Appointment transaction failed for clinic %s', self.clinic_id)
            raise StoreError(cause=exc) from exc
        except Exception:
            self.db.rollback()
            raise

    def find_overlapping(
        self,
        doctor_id: str,
        start_time: datetime,
        end_time: datetime,
        status_not_in=(AppointmentStatus.CANCELLED,),
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        query = self._query().filter(
            Appointment.doctor_id == doctor_id,
            Appointment.status.not_in([status.value for status in status_not_in]),
            Appointment.start_time < end_time,
            Appointment.end_time > start_time,
        )
        if exclude_id:
            query = query.filter(Appointment.id != exclude_id)
        return query.order_by(Appointment.start_time.asc()).all()

    def create(self, draft: AppointmentDraft) -> Appointment:
        appointment = Appointment(
            clinic_id=self.clinic_id,
            patient_id=draft.patient_id,
            doctor_id=draft.doctor_id,
            service_id=draft.service_id,
            start_time=draft.start_time,
            end_time=draft.end_time,
            notes=draft.notes,
            status=draft.status.value,
        )
        self.db.add(appointment)
        self.db.flush()
        return appointment

    def find_by_id(self, appointment_id: str) -> Appointment:
        appointment = self._query().options(
            joinedload(Appointment.patient),
            joinedload(Appointment.doctor),
            joinedload(Appointment.service),
        ).filter(Appointment.id == appointment_id).first()
        if appointment is None:
            raise NotFoundError()
        return appointment

    def update_status(self, appointment_id: str, new_status: AppointmentStatus, notes: str | None = None) -> Appointment:
        appointment = self.find_by_id(appointment_id)
        appointment.status = new_status.value
        if notes:
            appointment.notes = notes
        appointment.updated_at = utcnow()
        self.db.flush()
        return appointment

    def reschedule(self, appointment: Appointment, changes: dict) -> Appointment:
        for field_name, value in changes.items():
            setattr(appointment, field_name, value.value if isinstance(value, AppointmentStatus) else value)
        appointment.updated_at = utcnow()
        self.db.flush()
        return appointment

    def list(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        doctor_id: str | None = None,
        patient_id: str | None = None,
        status: AppointmentStatus | None = None,
        patient_user_id: str | None = None,
    ) -> list[Appointment]:
        query = self._query().options(
            joinedload(Appointment.patient),
            joinedload(Appointment.doctor),
            joinedload(Appointment.service),
        )
        if start and end:
            query = query.filter(Appointment.start_time >= start, Appointment.start_time <= end)
        if doctor_id:
            query = query.filter(Appointment.doctor_id == doctor_id)
        if patient_id:
            query = query.filter(Appointment.patient_id == patient_id)
        if status:
            query = query.filter(Appointment.status == status.value)
        if patient_user_id:
            query = query.join(Patient, Appointment.patient_id == Patient.id).filter(Patient.user_id == patient_user_id)
        return query.order_by(Appointment.start_time.asc()).all()

    def is_owner(self, appointment: Appointment, user_id: str) -> bool:
        return appointment.patient is not None and appointment.patient.user_id == user_id

    def find_patient(self, patient_id: str) -> Patient | None:
        return self.db.query(Patient).filter(
            Patient.id == patient_id,
            Patient.clinic_id == self.clinic_id,
        ).first()

    def find_doctor(self, doctor_id: str) -> User | None:
        return self.db.query(User).filter(
            User.id == doctor_id,
            User.clinic_id == self.clinic_id,
            User.role == Role.DOCTOR.value,
        ).first()

    def find_service(self, service_id: str) -> Service | None:
        return self.db.query(Service).filter(
            Service.id == service_id,
            Service.clinic_id == self.clinic_id,
        ).first()
