"""Appointment model definitions."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from backend.database import Base

PENDING_STATUS = 'pending'
SCHEDULED_STATUS = 'scheduled'
DECLINED_STATUS = 'declined'
CANCELLED_STATUS = 'cancelled'
# "accepted" is written by older review paths; it means the same confirmed state.
CONFIRMED_STATUSES = frozenset({SCHEDULED_STATUS, 'accepted'})

VIRTUAL_MODALITY = 'virtual'
IN_PERSON_MODALITY = 'in_person'


def is_confirmed_status(status: str | None) -> bool:
    return status in CONFIRMED_STATUSES


def normalize_status(status: str | None) -> str | None:
    if status in CONFIRMED_STATUSES:
        return SCHEDULED_STATUS
    return status


class Appointment(Base):
    """Represents a meeting between a candidate and staff."""
    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    description = Column(String)
    modality = Column(String, nullable=False)
    location_text = Column(String)
    video_url = Column(String)
    start_at_utc = Column(DateTime, nullable=False)
    end_at_utc = Column(DateTime, nullable=False)
    timezone_label = Column(String, nullable=False, default='UTC')
    status = Column(String, nullable=False, default=PENDING_STATUS)
    candidate_user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_by_user_id = Column(String, ForeignKey("users.id"), nullable=False)

    participants = relationship(
        "AppointmentParticipant",
        back_populates="appointment",
        cascade="all, delete-orphan",
    )

    def snapshot(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'modality': self.modality,
            'location_text': self.location_text,
            'video_url': self.video_url,
            'start_at_utc': self.start_at_utc.isoformat() if self.start_at_utc else None,
            'end_at_utc': self.end_at_utc.isoformat() if self.end_at_utc else None,
            'timezone_label': self.timezone_label,
            'status': self.status,
            'candidate_user_id': self.candidate_user_id,
            'created_by_user_id': self.created_by_user_id,
        }


class AppointmentParticipant(Base):
    """Links a user to an appointment as candidate or staff."""
    __tablename__ = "appointment_participants"
    __table_args__ = (UniqueConstraint('appointment_id', 'user_id', name='uq_appointment_participant'),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id = Column(String, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    participant_type = Column(String, nullable=False)  # candidate/staff

    appointment = relationship("Appointment", back_populates="participants")
