"""Role-specific display buckets for appointment lists.

Each appointment lands in at most one bucket. Checks run in order (overdue,
then pending request, then upcoming) and the first match wins, so the same
function drives both the attention indicator and the rendered sections.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from backend.core import config
from backend.core.timeutils import parse_instant, utc_now
from backend.models.appointment import DECLINED_STATUS, PENDING_STATUS, is_confirmed_status


@dataclass
class CandidateAppointmentSections:
    overdue_confirmed: list = field(default_factory=list)
    outgoing_requests: list = field(default_factory=list)
    upcoming_appointments: list = field(default_factory=list)

    @property
    def needs_attention(self) -> bool:
        return bool(self.overdue_confirmed or self.upcoming_appointments)


@dataclass
class StaffAppointmentSections:
    overdue_confirmed: list = field(default_factory=list)
    incoming_requests: list = field(default_factory=list)
    upcoming_appointments: list = field(default_factory=list)

    @property
    def needs_attention(self) -> bool:
        return bool(self.overdue_confirmed or self.upcoming_appointments)


def _field(appointment: Any, name: str):
    if isinstance(appointment, dict):
        return appointment.get(name)
    return getattr(appointment, name, None)


def is_overdue_confirmed(appointment: Any, now: datetime) -> bool:
    start = parse_instant(_field(appointment, 'start_at_utc'))
    return is_confirmed_status(_field(appointment, 'status')) and start is not None and start < now


def is_upcoming_confirmed(appointment: Any, now: datetime) -> bool:
    start = parse_instant(_field(appointment, 'start_at_utc'))
    return is_confirmed_status(_field(appointment, 'status')) and (start is None or start >= now)


def bucket_candidate_appointments(
    appointments: list,
    candidate_user_id: str,
    now: datetime | None = None,
) -> CandidateAppointmentSections:
    now = now or utc_now()
    sections = CandidateAppointmentSections()

    for appointment in appointments:
        if is_overdue_confirmed(appointment, now):
            sections.overdue_confirmed.append(appointment)
            continue

        if (
            _field(appointment, 'status') == PENDING_STATUS
            and _field(appointment, 'created_by_user_id') == candidate_user_id
            and _field(appointment, 'candidate_user_id') == candidate_user_id
        ):
            sections.outgoing_requests.append(appointment)
            continue

        if is_upcoming_confirmed(appointment, now):
            sections.upcoming_appointments.append(appointment)

    return sections


def bucket_staff_appointments(appointments: list, now: datetime | None = None) -> StaffAppointmentSections:
    now = now or utc_now()
    sections = StaffAppointmentSections()

    for appointment in appointments:
        if is_overdue_confirmed(appointment, now):
            sections.overdue_confirmed.append(appointment)
            continue

        if (
            _field(appointment, 'status') == PENDING_STATUS
            and _field(appointment, 'created_by_user_id') == _field(appointment, 'candidate_user_id')
        ):
            sections.incoming_requests.append(appointment)
            continue

        if is_upcoming_confirmed(appointment, now):
            sections.upcoming_appointments.append(appointment)

    return sections


def should_hide_expired_appointment(appointment: Any, now: datetime | None = None) -> bool:
    status = _field(appointment, 'status')
    if not (is_confirmed_status(status) or status == DECLINED_STATUS):
        return False

    end = parse_instant(_field(appointment, 'end_at_utc'))
    if end is None:
        return False

    now = now or utc_now()
    return end < now - timedelta(hours=config.APPOINTMENT_HIDE_AFTER_HOURS)
