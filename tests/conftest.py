import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

from medflow.database import Base  # noqa: E402
from medflow.models.appointment import Appointment, AppointmentStatus  # noqa: E402
from medflow.models.clinic import Clinic  # noqa: E402
from medflow.models.notification import Notification, NotificationOutbox  # noqa: E402,F401
from medflow.models.patient import Patient  # noqa: E402
from medflow.models.service import Service  # noqa: E402
from medflow.models.user import User  # noqa: E402

NOW = datetime(2026, 3, 2, 8, 0)


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def clinic(db):
    main = Clinic(name='Main Street Clinic')
    other = Clinic(name='Harbor Clinic')
    db.add_all([main, other])
    db.flush()

    admin = User(email='admin@medflow.test', name='Ada Admin', role='ADMIN', clinic_id=main.id)
    doctor = User(email='doctor@medflow.test', name='Dr. House', role='DOCTOR', clinic_id=main.id)
    second_doctor = User(email='doctor2@medflow.test', name='Dr. Grey', role='DOCTOR', clinic_id=main.id)
    receptionist = User(email='desk@medflow.test', name='Rita Desk', role='RECEPTIONIST', clinic_id=main.id)
    patient_user = User(email='pat@medflow.test', name='Pat Owner', role='PATIENT', clinic_id=main.id)
    other_patient_user = User(email='sam@medflow.test', name='Sam Other', role='PATIENT', clinic_id=main.id)
    other_admin = User(email='admin@harbor.test', name='Hal Harbor', role='ADMIN', clinic_id=other.id)
    db.add_all([admin, doctor, second_doctor, receptionist, patient_user, other_patient_user, other_admin])
    db.flush()

    patient = Patient(clinic_id=main.id, user_id=patient_user.id, first_name='Pat', last_name='Owner', phone='555-0100')
    other_patient = Patient(clinic_id=main.id, user_id=other_patient_user.id, first_name='Sam', last_name='Other')
    walk_in = Patient(clinic_id=main.id, first_name='Wally', last_name='Walkin')
    service = Service(clinic_id=main.id, name='General consultation', duration_minutes=30)
    db.add_all([patient, other_patient, walk_in, service])
    db.commit()

    return SimpleNamespace(
        clinic=main,
        other_clinic=other,
        admin=admin,
        doctor=doctor,
        second_doctor=second_doctor,
        receptionist=receptionist,
        patient_user=patient_user,
        other_patient_user=other_patient_user,
        other_admin=other_admin,
        patient=patient,
        other_patient=other_patient,
        walk_in=walk_in,
        service=service,
    )


@pytest.fixture
def make_appointment(db, clinic):
    def _make(start_time, end_time=None, status=AppointmentStatus.SCHEDULED, doctor=None, patient=None, clinic_id=None):
        appointment = Appointment(
            clinic_id=clinic_id or clinic.clinic.id,
            doctor_id=(doctor or clinic.doctor).id,
            patient_id=(patient or clinic.patient).id,
            start_time=start_time,
            end_time=end_time or start_time + timedelta(hours=1),
            status=status.value,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make
