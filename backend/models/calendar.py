"""External calendar connection and mirrored event models."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from backend.database import Base

GOOGLE_PROVIDER = 'google'
APPLE_PROVIDER = 'apple'
SYNCABLE_PROVIDERS = (GOOGLE_PROVIDER, APPLE_PROVIDER)


class CalendarConnection(Base):
    """One user's link to one external calendar provider."""
    __tablename__ = "calendar_connections"
    __table_args__ = (UniqueConstraint('user_id', 'provider', name='uq_calendar_connection_user_provider'),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    oauth_tokens_encrypted = Column(Text, nullable=False, default='{}')
    sync_state = Column(JSON)


class CalendarEventLink(Base):
    """The mirrored event for one (appointment, provider, user) triple."""
    __tablename__ = "calendar_event_links"
    __table_args__ = (
        UniqueConstraint('appointment_id', 'provider', 'user_id', name='uq_calendar_event_link'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # No FK: links are removed by the sync engine before the appointment row goes away.
    appointment_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    provider_event_id = Column(String, nullable=False)
    provider_event_url = Column(Text)
    sync_hash = Column(String)
    last_sync_at = Column(DateTime)
