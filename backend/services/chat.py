"""Candidate/recruiter chat notices for appointment changes.

The chat provider itself lives outside this service. Callers receive a
messenger through the service context; the default one only logs.
"""

import logging
from datetime import datetime
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.core.timeutils import parse_instant
from backend.models.appointment import (
    CANCELLED_STATUS,
    DECLINED_STATUS,
    VIRTUAL_MODALITY,
    Appointment,
    is_confirmed_status,
)

logger = logging.getLogger(__name__)


class ChatMessenger(Protocol):
    def send_message(self, candidate_user_id: str, actor_user_id: str, text: str) -> None:
        ...


class LoggingChatMessenger:
    def send_message(self, candidate_user_id: str, actor_user_id: str, text: str) -> None:
        logger.info(
            'Chat message for candidate %s from %s: %s',
            candidate_user_id,
            actor_user_id,
            text,
        )


def _localize(start: datetime, timezone_label: str) -> datetime | None:
    try:
        return start.astimezone(ZoneInfo(timezone_label))
    except (ZoneInfoNotFoundError, ValueError):
        return None


def format_date_label(start_at_utc, timezone_label: str) -> str:
    start = parse_instant(start_at_utc)
    if start is None:
        return str(start_at_utc)

    local = _localize(start, timezone_label)
    if local is None:
        return start.date().isoformat()
    return f'{local:%b} {local.day}, {local.year}'


def format_time_label(start_at_utc, timezone_label: str) -> str:
    start = parse_instant(start_at_utc)
    if start is None:
        return str(start_at_utc)

    local = _localize(start, timezone_label)
    if local is None:
        return start.isoformat()
    hour = local.hour % 12 or 12
    return f'{hour}:{local:%M} {local:%p} {local.tzname()}'


def format_start_label(appointment: Appointment) -> str:
    start = parse_instant(appointment.start_at_utc)
    if start is None:
        return str(appointment.start_at_utc)

    local = _localize(start, appointment.timezone_label)
    if local is None:
        return start.isoformat()
    hour = local.hour % 12 or 12
    return f'{local:%b} {local.day}, {hour}:{local:%M} {local:%p}'


def status_label(status: str) -> str:
    if is_confirmed_status(status):
        return 'Scheduled'
    if status == DECLINED_STATUS:
        return 'Declined'
    if status == CANCELLED_STATUS:
        return 'Cancelled'
    return 'Pending review'


def build_appointment_message(intro: str, candidate_name: str, appointment: Appointment) -> str:
    modality_label = 'virtual' if appointment.modality == VIRTUAL_MODALITY else 'in-person'
    note = (appointment.description or '').strip() or 'No note'

    details = [
        f'{intro} Candidate: {candidate_name}',
        f'Date: {format_date_label(appointment.start_at_utc, appointment.timezone_label)}',
        f'Time: {format_time_label(appointment.start_at_utc, appointment.timezone_label)}',
        f'Meeting type: {modality_label}',
    ]

    if appointment.modality == VIRTUAL_MODALITY:
        video_url = (appointment.video_url or '').strip()
        if video_url:
            details.append(f'Video link: {video_url}')
    else:
        location = (appointment.location_text or '').strip()
        if location:
            details.append(f'Location: {location}')

    details.append(f'Note: {note}')
    return ', '.join(details)


def build_created_message(appointment: Appointment) -> str:
    return (
        f'Appointment created: "{appointment.title}" on {format_start_label(appointment)} '
        f'({appointment.timezone_label}). Status: {status_label(appointment.status)}.'
    )
