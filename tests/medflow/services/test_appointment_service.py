from datetime import datetime, timedelta

import pytest

from medflow.models.appointment import Appointment, AppointmentStatus
from medflow.models.notification import Notification, NotificationOutbox
from medflow.scheduling.errors import (
    AppointmentValidationError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    NotOwnerError,
    TooLateToCancelError,
)
from medflow.scheduling.lifecycle import LifecyclePolicy
from medflow.services import notification_service
from medflow.services.appointment_service import AppointmentService

NOW = datetime(2026, 3, 2, 8, 0)
POLICY = LifecyclePolicy()


def service_for(db, actor) -> AppointmentService:
    return AppointmentService(db, actor, POLICY)


def test_create_appointment_persists_and_enriches(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    appointment = service_for(db, clinic.receptionist).create_appointment(
        patient_id=clinic.patient.id,
        doctor_id=clinic.doctor.id,
        service_id=clinic.service.id,
        start_time=start,
        end_time=start + timedelta(minutes=30),
        notes='Follow-up',
    )

    assert appointment.status == 'SCHEDULED'
    assert appointment.clinic_id == clinic.clinic.id
    assert appointment.patient.first_name == 'Pat'
    assert appointment.doctor.name == 'Dr. House'
    assert appointment.service.name == 'General consultation'


def test_create_appointment_notifies_patient_with_account(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    service_for(db, clinic.receptionist).create_appointment(
        patient_id=clinic.patient.id,
        doctor_id=clinic.doctor.id,
        start_time=start,
        end_time=start + timedelta(hours=1),
    )

    notifications = db.query(Notification).filter(Notification.user_id == clinic.patient_user.id).all()
    assert [notification.title for notification in notifications] == ['Appointment Confirmed']
    assert db.query(NotificationOutbox).one().status == 'sent'


def test_create_appointment_for_walk_in_patient_skips_notification(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    service_for(db, clinic.receptionist).create_appointment(
        patient_id=clinic.walk_in.id,
        doctor_id=clinic.doctor.id,
        start_time=start,
        end_time=start + timedelta(hours=1),
    )

    assert db.query(NotificationOutbox).count() == 0


def test_create_appointment_rejects_double_booking(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=3)
    make_appointment(start, start + timedelta(hours=1))

    with pytest.raises(ConflictError):
        service_for(db, clinic.admin).create_appointment(
            patient_id=clinic.other_patient.id,
            doctor_id=clinic.doctor.id,
            start_time=start + timedelta(minutes=30),
            end_time=start + timedelta(minutes=90),
        )

    assert db.query(Appointment).count() == 1
    assert db.query(NotificationOutbox).count() == 0


def test_create_appointment_allows_back_to_back(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=3)
    make_appointment(start, start + timedelta(hours=1))

    appointment = service_for(db, clinic.admin).create_appointment(
        patient_id=clinic.other_patient.id,
        doctor_id=clinic.doctor.id,
        start_time=start + timedelta(hours=1),
        end_time=start + timedelta(hours=2),
    )

    assert appointment.start_time == start + timedelta(hours=1)


def test_create_appointment_rejects_unknown_doctor(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    with pytest.raises(NotFoundError) as exception_info:
        service_for(db, clinic.admin).create_appointment(
            patient_id=clinic.patient.id,
            doctor_id=clinic.receptionist.id,
            start_time=start,
            end_time=start + timedelta(hours=1),
        )

    assert exception_info.value.message == 'Doctor not found.'


def test_create_appointment_rejects_inverted_interval(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    with pytest.raises(AppointmentValidationError):
        service_for(db, clinic.admin).create_appointment(
            patient_id=clinic.patient.id,
            doctor_id=clinic.doctor.id,
            start_time=start,
            end_time=start,
        )


def test_create_appointment_rejects_terminal_initial_status(db, clinic) -> None:
    start = NOW + timedelta(days=3)

    with pytest.raises(AppointmentValidationError):
        service_for(db, clinic.admin).create_appointment(
            patient_id=clinic.patient.id,
            doctor_id=clinic.doctor.id,
            start_time=start,
            end_time=start + timedelta(hours=1),
            status='COMPLETED',
        )


def test_patient_can_only_book_for_themselves(db, clinic) -> None:
    start = NOW + timedelta(days=3)
    patient_service = service_for(db, clinic.patient_user)

    with pytest.raises(NotOwnerError):
        patient_service.create_appointment(
            patient_id=clinic.other_patient.id,
            doctor_id=clinic.doctor.id,
            start_time=start,
            end_time=start + timedelta(hours=1),
        )

    own = patient_service.create_appointment(
        patient_id=clinic.patient.id,
        doctor_id=clinic.doctor.id,
        start_time=start,
        end_time=start + timedelta(hours=1),
    )
    assert own.patient_id == clinic.patient.id


def test_patient_cancels_well_ahead(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(hours=48))

    updated = service_for(db, clinic.patient_user).update_status(
        appointment.id, 'CANCELLED', notes='Feeling better', now=NOW
    )

    assert updated.status == 'CANCELLED'
    assert updated.notes == 'Feeling better'
    notification = db.query(Notification).one()
    assert notification.title == 'Appointment Cancelled'
    assert 'Reason: Feeling better' in notification.message


def test_patient_cancel_inside_window_leaves_status_unchanged(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(hours=10))

    with pytest.raises(TooLateToCancelError):
        service_for(db, clinic.patient_user).update_status(appointment.id, 'CANCELLED', now=NOW)

    db.expire_all()
    assert db.get(Appointment, appointment.id).status == 'SCHEDULED'


def test_patient_cannot_cancel_another_patients_appointment(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(hours=48), patient=clinic.other_patient)

    with pytest.raises(NotOwnerError):
        service_for(db, clinic.patient_user).update_status(appointment.id, 'CANCELLED', now=NOW)


def test_staff_status_updates_keep_existing_notes_when_none_given(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(hours=2))
    appointment.notes = 'Bring x-rays'
    db.commit()

    updated = service_for(db, clinic.doctor).update_status(appointment.id, 'CONFIRMED', now=NOW)

    assert updated.status == 'CONFIRMED'
    assert updated.notes == 'Bring x-rays'


def test_completed_appointment_cannot_be_reopened(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW - timedelta(hours=3))
    doctor_service = service_for(db, clinic.doctor)
    doctor_service.update_status(appointment.id, 'COMPLETED', now=NOW)

    with pytest.raises(InvalidTransitionError):
        doctor_service.update_status(appointment.id, 'SCHEDULED', now=NOW)


def test_uncancel_rechecks_conflicts_when_terminal_states_are_not_enforced(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=1)
    cancelled = make_appointment(start, status=AppointmentStatus.CANCELLED)
    make_appointment(start, patient=clinic.other_patient)
    legacy_service = AppointmentService(db, clinic.admin, LifecyclePolicy(enforce_transitions=False))

    with pytest.raises(ConflictError):
        legacy_service.update_status(cancelled.id, 'SCHEDULED', now=NOW)


def test_reopening_through_reschedule_rechecks_conflicts(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=1)
    make_appointment(start, patient=clinic.other_patient)
    cancelled = make_appointment(start, status=AppointmentStatus.CANCELLED)
    legacy_service = AppointmentService(db, clinic.admin, LifecyclePolicy(enforce_transitions=False))

    with pytest.raises(ConflictError):
        legacy_service.reschedule(cancelled.id, {'status': 'SCHEDULED'}, now=NOW)

    live = db.query(Appointment).filter(
        Appointment.doctor_id == clinic.doctor.id,
        Appointment.status != AppointmentStatus.CANCELLED.value,
    ).count()
    assert live == 1
    assert db.get(Appointment, cancelled.id).status == 'CANCELLED'


def test_reschedule_to_new_patient_and_cancel_notifies_new_patient(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(days=2))

    service_for(db, clinic.admin).reschedule(
        appointment.id,
        {'patient_id': clinic.other_patient.id, 'status': 'CANCELLED'},
        now=NOW,
    )

    entry = db.query(NotificationOutbox).one()
    assert entry.event == notification_service.EVENT_CANCELLED
    assert entry.user_id == clinic.other_patient_user.id


def test_update_status_for_other_clinic_is_not_found(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(days=1))

    with pytest.raises(NotFoundError):
        service_for(db, clinic.other_admin).update_status(appointment.id, 'CONFIRMED', now=NOW)


def test_notification_failure_does_not_roll_back_cancellation(db, clinic, make_appointment, monkeypatch) -> None:
    def broken_notifier(*args, **kwargs):
        raise RuntimeError('notification backend down')

    monkeypatch.setattr(notification_service, 'notify_appointment_cancelled', broken_notifier)
    appointment = make_appointment(NOW + timedelta(hours=48))

    updated = service_for(db, clinic.patient_user).update_status(appointment.id, 'CANCELLED', now=NOW)

    assert updated.status == 'CANCELLED'
    entry = db.query(NotificationOutbox).one()
    assert entry.status == 'pending'
    assert entry.attempts == 1
    assert 'notification backend down' in entry.last_error
    assert db.query(Notification).count() == 0


def test_reschedule_moves_within_own_slot(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=1)
    appointment = make_appointment(start)

    updated = service_for(db, clinic.receptionist).reschedule(
        appointment.id,
        {'start_time': start + timedelta(minutes=30), 'end_time': start + timedelta(minutes=90)},
        now=NOW,
    )

    assert updated.start_time == start + timedelta(minutes=30)


def test_reschedule_onto_booked_slot_conflicts(db, clinic, make_appointment) -> None:
    start = NOW + timedelta(days=1)
    appointment = make_appointment(start)
    make_appointment(start, doctor=clinic.second_doctor, patient=clinic.other_patient)

    with pytest.raises(ConflictError):
        service_for(db, clinic.receptionist).reschedule(
            appointment.id, {'doctor_id': clinic.second_doctor.id}, now=NOW
        )


def test_reschedule_of_completed_appointment_is_rejected(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW - timedelta(days=1), status=AppointmentStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        service_for(db, clinic.admin).reschedule(appointment.id, {'notes': 'late edit'}, now=NOW)


def test_patient_cannot_reschedule(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(days=3))

    with pytest.raises(ForbiddenError):
        service_for(db, clinic.patient_user).reschedule(
            appointment.id, {'start_time': NOW + timedelta(days=4)}, now=NOW
        )


def test_cancel_is_a_soft_delete_with_audit_note(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(hours=1))
    appointment.notes = 'Initial visit'
    db.commit()

    cancelled = service_for(db, clinic.receptionist).cancel(appointment.id, reason='Doctor ill', now=NOW)

    assert cancelled.status == 'CANCELLED'
    assert cancelled.notes.startswith('Initial visit\n\nCancelled by Rita Desk on 2026-03-02T08:00:00')
    assert cancelled.notes.endswith('Doctor ill')
    assert db.query(Appointment).count() == 1


def test_patient_lists_only_their_own_appointments(db, clinic, make_appointment) -> None:
    mine = make_appointment(NOW + timedelta(days=1))
    make_appointment(NOW + timedelta(days=1), doctor=clinic.second_doctor, patient=clinic.other_patient)

    listed = service_for(db, clinic.patient_user).list_appointments()

    assert [appointment.id for appointment in listed] == [mine.id]


def test_staff_list_filters_by_status_and_doctor(db, clinic, make_appointment) -> None:
    make_appointment(NOW + timedelta(days=1))
    confirmed = make_appointment(NOW + timedelta(days=2), status=AppointmentStatus.CONFIRMED)
    make_appointment(NOW + timedelta(days=2), doctor=clinic.second_doctor, status=AppointmentStatus.CONFIRMED)

    listed = service_for(db, clinic.admin).list_appointments(
        doctor_id=clinic.doctor.id, status=AppointmentStatus.CONFIRMED
    )

    assert [appointment.id for appointment in listed] == [confirmed.id]


def test_patient_cannot_view_other_appointment(db, clinic, make_appointment) -> None:
    appointment = make_appointment(NOW + timedelta(days=1), patient=clinic.other_patient)

    with pytest.raises(NotOwnerError):
        service_for(db, clinic.patient_user).get_appointment(appointment.id)


def test_send_reminders_queues_each_appointment_once(db, clinic, make_appointment) -> None:
    make_appointment(NOW + timedelta(hours=5))
    make_appointment(NOW + timedelta(hours=6), doctor=clinic.second_doctor, patient=clinic.walk_in)
    make_appointment(NOW + timedelta(hours=7), doctor=clinic.second_doctor, status=AppointmentStatus.CANCELLED)
    make_appointment(NOW + timedelta(days=3), patient=clinic.other_patient)
    staff_service = service_for(db, clinic.admin)

    first = staff_service.send_reminders(now=NOW, hours_ahead=24)
    second = staff_service.send_reminders(now=NOW, hours_ahead=24)

    assert first == {'queued': 1, 'sent': 1, 'failed': 0}
    assert second == {'queued': 0, 'sent': 0, 'failed': 0}
    reminder = db.query(Notification).one()
    assert reminder.title == 'Appointment Reminder'
    assert reminder.user_id == clinic.patient_user.id


def test_service_requires_clinic_membership(db, clinic) -> None:
    clinic.admin.clinic_id = None

    with pytest.raises(ForbiddenError):
        AppointmentService(db, clinic.admin, POLICY)
