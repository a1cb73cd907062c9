"""Audit trail model definitions."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String
from backend.database import Base


class AuditEvent(Base):
    """Snapshot of an entity around a state-changing action."""
    __tablename__ = "audit_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_user_id = Column(String)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    before_json = Column(JSON)
    after_json = Column(JSON)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))
