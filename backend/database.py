import os
import zlib
from contextlib import contextmanager
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./zenith.db")

engine = create_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_calendar_schema_checked = False

CANDIDATE_LOCK_STRIPES = 64
_candidate_locks = tuple(Lock() for _ in range(CANDIDATE_LOCK_STRIPES))


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('timezone_label', "ALTER TABLE appointments ADD COLUMN timezone_label VARCHAR DEFAULT 'UTC'"),
            ('video_url', 'ALTER TABLE appointments ADD COLUMN video_url VARCHAR'),
            ('location_text', 'ALTER TABLE appointments ADD COLUMN location_text VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_candidate_status_range '
                    'ON appointments(candidate_user_id, status, start_at_utc, end_at_utc)'
                )
            )
            if 'notification_deliveries' in inspector.get_table_names():
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_notification_deliveries_due ON notification_deliveries(status, send_after_utc)')
                )

        _appointment_schema_checked = True


def ensure_calendar_schema() -> None:
    global _calendar_schema_checked

    if _calendar_schema_checked:
        return

    with _schema_lock:
        if _calendar_schema_checked:
            return

        inspector = inspect(engine)

        if 'calendar_event_links' not in inspector.get_table_names():
            _calendar_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('calendar_event_links')}
        migration_steps = [
            ('sync_hash', 'ALTER TABLE calendar_event_links ADD COLUMN sync_hash VARCHAR'),
            ('last_sync_at', 'ALTER TABLE calendar_event_links ADD COLUMN last_sync_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_calendar_event_links_appointment ON calendar_event_links(appointment_id)')
            )

        _calendar_schema_checked = True


def candidate_lock_stripe(candidate_user_id: str) -> Lock:
    return _candidate_locks[zlib.crc32(candidate_user_id.encode("utf-8")) % CANDIDATE_LOCK_STRIPES]


@contextmanager
def candidate_lock(db: Session, candidate_user_id: str):
    """Serialize conflict-check-and-write sequences for one candidate.

    PostgreSQL gets a transaction-scoped advisory lock so the guarantee holds
    across worker processes. Other backends fall back to a fixed pool of
    process-local locks; candidates sharing a stripe also serialize.
    """
    if db.get_bind().dialect.name == 'postgresql':
        db.execute(text('SELECT pg_advisory_xact_lock(hashtext(:key))'), {'key': candidate_user_id})
        yield
        return

    with candidate_lock_stripe(candidate_user_id):
        yield
