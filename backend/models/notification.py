"""Notification queue and preference models."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String
from backend.database import Base

PUSH_CHANNEL = 'push'
EMAIL_CHANNEL = 'email'
QUEUED_STATUS = 'queued'


class NotificationDelivery(Base):
    """A queued unit of outbound notification work."""
    __tablename__ = "notification_deliveries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    channel = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    send_after_utc = Column(DateTime)
    status = Column(String, nullable=False, default=QUEUED_STATUS)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    push_enabled = Column(Boolean)
    email_enabled = Column(Boolean)
