from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.core import config
from clinic_backend.core.errors import SchedulingError
from clinic_backend.database import SessionLocal, ensure_appointment_schema, ensure_roster_schema
from clinic_backend.repositories.scheduling_repository import SchedulingRepository
from clinic_backend.repositories.treatment_plan_gateway import TreatmentPlanGateway
from clinic_backend.scheduling.calendar_index import CalendarIndexCache
from clinic_backend.services.appointment_service import AppointmentService
from clinic_backend.services.time_off_service import TimeOffService

calendar_cache = CalendarIndexCache(
    config.CALENDAR_CACHE_TTL_SECONDS,
    max_entries=config.CALENDAR_CACHE_MAX_ENTRIES,
)


def ensure_database_ready() -> None:
    try:
        ensure_roster_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.to_dict())


def build_repository(db: Session) -> SchedulingRepository:
    # SQLite connections cannot be shared across the roster fetch threads.
    session_factory = SessionLocal if db.get_bind().dialect.name != 'sqlite' else None
    return SchedulingRepository(db, session_factory=session_factory)


def build_appointment_service(db: Session) -> AppointmentService:
    return AppointmentService(
        build_repository(db),
        TreatmentPlanGateway(db),
        calendar_cache=calendar_cache,
    )


def build_time_off_service(db: Session) -> TimeOffService:
    return TimeOffService(build_repository(db))
