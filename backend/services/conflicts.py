from datetime import datetime

from sqlalchemy.orm import Session

from backend.core.timeutils import to_storage
from backend.models.appointment import CONFIRMED_STATUSES, Appointment


def has_conflict(
    db: Session,
    candidate_user_id: str,
    proposed_start: datetime,
    proposed_end: datetime,
    exclude_appointment_id: str | None = None,
) -> bool:
    """True when a confirmed appointment for the candidate overlaps the range.

    Ranges are half-open, so an appointment ending exactly when the proposed
    one starts does not conflict. Query errors propagate to the caller.
    """
    query = db.query(Appointment.id).filter(
        Appointment.candidate_user_id == candidate_user_id,
        Appointment.status.in_(CONFIRMED_STATUSES),
        Appointment.start_at_utc < to_storage(proposed_end),
        Appointment.end_at_utc > to_storage(proposed_start),
    )
    if exclude_appointment_id:
        query = query.filter(Appointment.id != exclude_appointment_id)

    return query.first() is not None
