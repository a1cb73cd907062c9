"""Insert-only notification queueing for appointment transitions.

Delivery is handled elsewhere; a dispatcher reads `queued` rows once their
`send_after_utc` is due and honours each user's channel preferences.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.timeutils import isoformat_utc, parse_instant, to_storage, utc_now
from backend.models.appointment import SCHEDULED_STATUS, is_confirmed_status
from backend.models.notification import (
    EMAIL_CHANNEL,
    PUSH_CHANNEL,
    QUEUED_STATUS,
    NotificationDelivery,
    NotificationPreference,
)

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED_EVENT = 'appointment.created'
APPOINTMENT_UPDATED_EVENT = 'appointment.updated'
APPOINTMENT_CANCELLED_EVENT = 'appointment.cancelled'
APPOINTMENT_REMINDER_EVENT = 'appointment.reminder'


def _unique(user_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(user_id for user_id in user_ids if user_id))


def build_reminder_send_after(start_at_utc: datetime | str, now: datetime | None = None) -> datetime | None:
    start = parse_instant(start_at_utc)
    if start is None:
        return None

    reminder_at = start - timedelta(minutes=config.APPOINTMENT_REMINDER_OFFSET_MINUTES)
    return reminder_at if reminder_at > (now or utc_now()) else None


def queue_appointment_status_notifications(
    db: Session,
    candidate_user_id: str,
    appointment_id: str,
    event_type: str,
    status: str,
) -> list[NotificationDelivery]:
    payload = {'appointment_id': appointment_id, 'status': status}
    if is_confirmed_status(status):
        payload['decision'] = SCHEDULED_STATUS

    rows = [
        NotificationDelivery(
            user_id=candidate_user_id,
            channel=channel,
            event_type=event_type,
            payload=dict(payload),
            status=QUEUED_STATUS,
        )
        for channel in (PUSH_CHANNEL, EMAIL_CHANNEL)
    ]
    db.add_all(rows)
    db.commit()
    return rows


def queue_appointment_reminder_notifications(
    db: Session,
    appointment_id: str,
    start_at_utc: datetime | str,
    participant_user_ids: Iterable[str],
    now: datetime | None = None,
) -> list[NotificationDelivery]:
    send_after = build_reminder_send_after(start_at_utc, now=now)
    if send_after is None:
        logger.debug('Reminder for appointment %s skipped; fire time already passed', appointment_id)
        return []

    start = parse_instant(start_at_utc)
    rows = [
        NotificationDelivery(
            user_id=user_id,
            channel=PUSH_CHANNEL,
            event_type=APPOINTMENT_REMINDER_EVENT,
            payload={'appointment_id': appointment_id, 'start_at_utc': isoformat_utc(start)},
            send_after_utc=to_storage(send_after),
            status=QUEUED_STATUS,
        )
        for user_id in _unique(participant_user_ids)
    ]
    if rows:
        db.add_all(rows)
        db.commit()
    return rows


def queue_appointment_cancelled_notifications(
    db: Session,
    appointment_id: str,
    recipient_user_ids: Iterable[str],
) -> list[NotificationDelivery]:
    rows = [
        NotificationDelivery(
            user_id=user_id,
            channel=channel,
            event_type=APPOINTMENT_CANCELLED_EVENT,
            payload={'appointment_id': appointment_id},
            status=QUEUED_STATUS,
        )
        for user_id in _unique(recipient_user_ids)
        for channel in (PUSH_CHANNEL, EMAIL_CHANNEL)
    ]
    if rows:
        db.add_all(rows)
        db.commit()
    return rows


def list_dispatchable_deliveries(
    db: Session,
    now: datetime | None = None,
    limit: int = 100,
) -> list[NotificationDelivery]:
    """Queued rows that are due and whose channel the user has not disabled."""
    due_at = to_storage(now or utc_now())
    candidates = db.query(NotificationDelivery).filter(
        NotificationDelivery.status == QUEUED_STATUS,
        or_(NotificationDelivery.send_after_utc.is_(None), NotificationDelivery.send_after_utc <= due_at),
    ).order_by(NotificationDelivery.send_after_utc.asc()).limit(limit).all()

    user_ids = {delivery.user_id for delivery in candidates}
    preferences = {
        preference.user_id: preference
        for preference in db.query(NotificationPreference).filter(NotificationPreference.user_id.in_(user_ids)).all()
    } if user_ids else {}

    dispatchable = []
    for delivery in candidates:
        preference = preferences.get(delivery.user_id)
        if delivery.channel == PUSH_CHANNEL:
            enabled = preference is None or preference.push_enabled is not False
        else:
            enabled = preference is None or preference.email_enabled is not False
        if enabled:
            dispatchable.append(delivery)

    return dispatchable
