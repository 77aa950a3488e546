from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_backend.core import config


engine = create_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_roster_schema_checked = False


def _apply_migrations(bind, table_name: str, migration_steps: list[tuple[str, str]], index_statements: list[str]) -> None:
    inspector = inspect(bind)

    if table_name not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

    with bind.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                connection.execute(text(statement))
        for statement in index_statements:
            connection.execute(text(statement))


def ensure_appointment_schema(bind=None) -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        _apply_migrations(
            bind or engine,
            'appointments',
            [
                ('actual_start_time', 'ALTER TABLE appointments ADD COLUMN actual_start_time TIMESTAMP'),
                ('actual_end_time', 'ALTER TABLE appointments ADD COLUMN actual_end_time TIMESTAMP'),
                ('linked_treatment_plan_code', 'ALTER TABLE appointments ADD COLUMN linked_treatment_plan_code VARCHAR'),
                ('rescheduled_to_code', 'ALTER TABLE appointments ADD COLUMN rescheduled_to_code VARCHAR'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_appointments_time_range ON appointments(start_time, end_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_employee_start ON appointments(employee_code, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_room_start ON appointments(room_code, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_patient_start ON appointments(patient_code, start_time)',
            ],
        )

        _appointment_schema_checked = True


def ensure_roster_schema(bind=None) -> None:
    global _roster_schema_checked

    if _roster_schema_checked:
        return

    with _schema_lock:
        if _roster_schema_checked:
            return

        _apply_migrations(
            bind or engine,
            'employee_shifts',
            [
                ('status', "ALTER TABLE employee_shifts ADD COLUMN status VARCHAR DEFAULT 'ACTIVE'"),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_employee_shifts_employee_date ON employee_shifts(employee_code, work_date)',
            ],
        )

        _roster_schema_checked = True
