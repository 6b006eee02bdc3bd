from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from medflow.core import config


DATABASE_URL = config.DATABASE_URL


def use_immediate_transactions(bind) -> None:
    """Make every SQLite transaction take the write lock up front with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so a conflict check followed by an
    insert is not atomic across connections without this.
    """

    @event.listens_for(bind, 'connect')
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(bind, 'begin')
    def _begin_immediate(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')


connect_args = {'check_same_thread': False} if DATABASE_URL.startswith('sqlite') else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
if DATABASE_URL.startswith('sqlite'):
    use_immediate_transactions(engine)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False

APPOINTMENT_EXCLUSION_CONSTRAINT = 'appointments_doctor_no_overlap'


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_appointment_schema(bind=None) -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    bind = bind or engine

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(bind)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        with bind.begin() as connection:
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_doctor_range ON appointments(doctor_id, start_time, end_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_clinic_start ON appointments(clinic_id, start_time)')
            )

            if bind.dialect.name == 'postgresql':
                existing_constraints = {
                    row[0]
                    for row in connection.execute(
                        text("SELECT conname FROM pg_constraint WHERE conrelid = 'appointments'::regclass")
                    )
                }
                if APPOINTMENT_EXCLUSION_CONSTRAINT not in existing_constraints:
                    connection.execute(text('CREATE EXTENSION IF NOT EXISTS btree_gist'))
                    connection.execute(
                        text(
                            f'ALTER TABLE appointments ADD CONSTRAINT {APPOINTMENT_EXCLUSION_CONSTRAINT} '
                            "EXCLUDE USING gist (doctor_id WITH =, tsrange(start_time, end_time, '[)') WITH &&) "
                            "WHERE (status <> 'CANCELLED')"
                        )
                    )

        _appointment_schema_checked = True
