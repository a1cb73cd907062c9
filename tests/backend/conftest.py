import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.auth.dependencies import ActingUser  # noqa: E402
from backend.core.timeutils import to_storage  # noqa: E402
from backend.database import Base  # noqa: E402
from backend.models import audit, calendar, notification  # noqa: E402,F401
from backend.models.appointment import Appointment, AppointmentParticipant  # noqa: E402
from backend.models.user import CANDIDATE_ROLE, STAFF_ROLE, User  # noqa: E402
from backend.services.calendar_sync import CalendarSyncEngine, GoogleCalendarClient  # noqa: E402
from backend.services.context import ServiceContext  # noqa: E402

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class RecordingChat:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[tuple[str, str, str]] = []

    def send_message(self, candidate_user_id: str, actor_user_id: str, text: str) -> None:
        if self.fail:
            raise RuntimeError('chat provider unavailable')
        self.messages.append((candidate_user_id, actor_user_id, text))


class GoogleCalendarStub:
    def __init__(self, status_code: int = 200, body: dict | None = None):
        self.status_code = status_code
        self.body = body if body is not None else {'id': 'gcal-event-1', 'htmlLink': 'https://calendar.google.com/event?eid=1'}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == 'DELETE':
            return httpx.Response(204)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text='quota exceeded')
        return httpx.Response(self.status_code, json=self.body)

    def client(self) -> GoogleCalendarClient:
        http_client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return GoogleCalendarClient(http_client=http_client, base_url='https://calendar.test/v3')


@pytest.fixture
def db():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _make_user(db, user_id: str, role: str, name: str) -> ActingUser:
    db.add(User(id=user_id, email=f'{user_id}@example.com', name=name, role=role))
    db.commit()
    return ActingUser(id=user_id, role=role, name=name)


@pytest.fixture
def candidate(db) -> ActingUser:
    return _make_user(db, 'candidate-1', CANDIDATE_ROLE, 'Casey Candidate')


@pytest.fixture
def staff(db) -> ActingUser:
    return _make_user(db, 'staff-1', STAFF_ROLE, 'Sam Recruiter')


@pytest.fixture
def other_staff(db) -> ActingUser:
    return _make_user(db, 'staff-2', STAFF_ROLE, 'Riley Recruiter')


@pytest.fixture
def chat() -> RecordingChat:
    return RecordingChat()


@pytest.fixture
def google() -> GoogleCalendarStub:
    return GoogleCalendarStub()


@pytest.fixture
def context(db, chat, google) -> ServiceContext:
    return ServiceContext(
        db=db,
        chat=chat,
        calendar_sync=CalendarSyncEngine(db, google_client=google.client()),
        clock=lambda: NOW,
    )


@pytest.fixture
def make_appointment(db):
    def factory(candidate_user_id: str, created_by_user_id: str | None = None, participants=(), **overrides):
        start = overrides.pop('start_at_utc', NOW + timedelta(days=1))
        end = overrides.pop('end_at_utc', start + timedelta(minutes=30))
        appointment = Appointment(
            title=overrides.pop('title', 'Intro call'),
            description=overrides.pop('description', 'Discuss firm preferences'),
            modality=overrides.pop('modality', 'virtual'),
            location_text=overrides.pop('location_text', None),
            video_url=overrides.pop('video_url', 'https://meet.example.com/intro'),
            start_at_utc=to_storage(start),
            end_at_utc=to_storage(end),
            timezone_label=overrides.pop('timezone_label', 'America/New_York'),
            status=overrides.pop('status', 'pending'),
            candidate_user_id=candidate_user_id,
            created_by_user_id=created_by_user_id or candidate_user_id,
        )
        db.add(appointment)
        db.flush()
        db.add(AppointmentParticipant(appointment_id=appointment.id, user_id=candidate_user_id, participant_type='candidate'))
        for user_id in participants:
            db.add(AppointmentParticipant(appointment_id=appointment.id, user_id=user_id, participant_type='staff'))
        db.commit()
        db.refresh(appointment)
        return appointment

    return factory
