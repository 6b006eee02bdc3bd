from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from medflow.auth.dependencies import get_current_user, require_permission
from medflow.database import get_db
from medflow.models.appointment import Appointment, AppointmentStatus
from medflow.models.user import User
from medflow.scheduling.errors import SchedulingError
from medflow.scheduling.lifecycle import parse_status
from medflow.services.appointment_service import AppointmentService

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 2000


def normalize_datetime(value: datetime) -> datetime:
    """Store naive UTC; aware values are converted first."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)


def normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    if normalized not in AppointmentStatus.__members__:
        raise ValueError('Invalid status value.')
    return normalized


class CreateAppointmentRequest(BaseModel):
    patient_id: str
    doctor_id: str
    service_id: str | None = None
    start_time: datetime
    end_time: datetime
    notes: str | None = None
    status: str | None = None

    @field_validator('patient_id', 'doctor_id')
    @classmethod
    def validate_required_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Missing required fields.')
        return normalized

    @field_validator('service_id')
    @classmethod
    def validate_service_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, value: datetime) -> datetime:
        return normalize_datetime(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        return normalize_status(value)

    @model_validator(mode='after')
    def validate_time_order(self):
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class UpdateStatusRequest(BaseModel):
    id: str
    status: str
    notes: str | None = None

    @field_validator('id')
    @classmethod
    def validate_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Appointment ID and status are required.')
        return normalized

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        return normalize_status(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)


class QuickStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        return normalize_status(value)


class RescheduleAppointmentRequest(BaseModel):
    patient_id: str | None = None
    doctor_id: str | None = None
    service_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = None
    status: str | None = None

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, value: datetime | None) -> datetime | None:
        return normalize_datetime(value) if value else None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        return normalize_status(value)


class PatientSummary(BaseModel):
    id: str
    first_name: str
    last_name: str
    phone: str | None = None
    email: str | None = None

    class Config:
        from_attributes = True


class DoctorSummary(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None

    class Config:
        from_attributes = True


class ServiceSummary(BaseModel):
    id: str
    name: str
    duration_minutes: int | None = None
    price: Decimal | None = None

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    id: str
    clinic_id: str
    patient_id: str
    doctor_id: str
    service_id: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    patient: PatientSummary | None = None
    doctor: DoctorSummary | None = None
    service: ServiceSummary | None = None

    class Config:
        from_attributes = True


class ConflictCheckResponse(BaseModel):
    conflict: bool


class ReminderRunResponse(BaseModel):
    queued: int
    sent: int
    failed: int


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def to_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse.model_validate(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    doctor_id: str | None = Query(default=None),
    patient_id: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        appointments = AppointmentService(db, current_user).list_appointments(
            start=normalize_datetime(start_date) if start_date else None,
            end=normalize_datetime(end_date) if end_date else None,
            doctor_id=doctor_id,
            patient_id=patient_id,
            status=parse_status(status_filter) if status_filter else None,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return [to_response(appointment) for appointment in appointments]


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        appointment = AppointmentService(db, current_user).create_appointment(
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            service_id=data.service_id,
            start_time=data.start_time,
            end_time=data.end_time,
            notes=data.notes,
            status=data.status,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)


@router.patch('', response_model=AppointmentResponse)
def update_appointment_status(
    data: UpdateStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        appointment = AppointmentService(db, current_user).update_status(data.id, data.status, data.notes)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)


@router.get('/conflicts', response_model=ConflictCheckResponse)
def check_appointment_conflict(
    doctor_id: str = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    exclude_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    start_time = normalize_datetime(start_time)
    end_time = normalize_datetime(end_time)
    if start_time >= end_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Start time must be before end time.',
        )

    try:
        conflict = AppointmentService(db, current_user).has_conflict(doctor_id, start_time, end_time, exclude_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return ConflictCheckResponse(conflict=conflict)


@router.post('/reminders', response_model=ReminderRunResponse)
def send_appointment_reminders(
    hours_ahead: int | None = Query(default=None, ge=1, le=168),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission('appointments', 'remind')),
):
    try:
        summary = AppointmentService(db, current_user).send_reminders(hours_ahead=hours_ahead)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return ReminderRunResponse(**summary)


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        appointment = AppointmentService(db, current_user).get_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)


@router.patch('/{appointment_id}', response_model=AppointmentResponse)
def quick_update_appointment_status(
    appointment_id: str,
    data: QuickStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        appointment = AppointmentService(db, current_user).update_status(appointment_id, data.status)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)


@router.put('/{appointment_id}', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    data: RescheduleAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission('appointments', 'reschedule')),
):
    try:
        appointment = AppointmentService(db, current_user).reschedule(
            appointment_id,
            data.model_dump(exclude_unset=True),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)


@router.delete('/{appointment_id}', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    reason: str | None = Query(default=None, max_length=MAX_APPOINTMENT_NOTES_LENGTH),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission('appointments', 'cancel')),
):
    try:
        appointment = AppointmentService(db, current_user).cancel(appointment_id, normalize_notes(reason))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return to_response(appointment)
