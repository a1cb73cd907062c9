"""Mirror confirmed appointments into participants' external calendars.

Google connections with an access token get a real event through the
Calendar REST API. Apple connections get a self-contained ICS file encoded
as a ``data:`` URL. Every per-connection failure is recorded in the
connection's ``sync_state``; nothing here raises into the lifecycle caller.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import quote, urlencode

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.timeutils import isoformat_utc, to_storage, utc_now
from backend.models.appointment import IN_PERSON_MODALITY, Appointment, is_confirmed_status
from backend.models.calendar import (
    APPLE_PROVIDER,
    GOOGLE_PROVIDER,
    SYNCABLE_PROVIDERS,
    CalendarConnection,
    CalendarEventLink,
)

logger = logging.getLogger(__name__)

SYNCED_STATE = 'synced'
SYNC_FAILED_STATE = 'sync_failed'
MISSING_ACCESS_TOKEN_STATE = 'connected_missing_access_token'
PLACEHOLDER_EVENT_PREFIXES = ('local:', 'http://', 'https://', 'data:')
URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class CalendarAppointment:
    """The appointment fields that feed a mirrored event."""

    id: str
    title: str
    description: str | None
    modality: str
    location_text: str | None
    video_url: str | None
    start_at_utc: datetime
    end_at_utc: datetime
    timezone_label: str
    status: str

    @classmethod
    def from_appointment(cls, appointment: Appointment, status: str | None = None) -> 'CalendarAppointment':
        return cls(
            id=appointment.id,
            title=appointment.title,
            description=appointment.description,
            modality=appointment.modality,
            location_text=appointment.location_text,
            video_url=appointment.video_url,
            start_at_utc=appointment.start_at_utc,
            end_at_utc=appointment.end_at_utc,
            timezone_label=appointment.timezone_label,
            status=status or appointment.status,
        )

    @property
    def event_location(self) -> str:
        if self.modality == IN_PERSON_MODALITY:
            return self.location_text or ''
        return self.video_url or self.location_text or ''

    @property
    def event_details(self) -> str:
        return '\n\n'.join(value for value in (self.description, self.video_url) if value and value.strip())


@dataclass
class ProviderSyncResult:
    provider_event_id: str
    provider_event_url: str | None
    sync_state: dict


@dataclass
class ConnectionSyncOutcome:
    user_id: str
    provider: str
    state: str
    error: str | None = None


@dataclass
class CalendarSyncReport:
    appointment_id: str
    removed_links: int = 0
    outcomes: list[ConnectionSyncOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[ConnectionSyncOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == SYNC_FAILED_STATE]


def parse_tokens(raw: str | None) -> dict:
    try:
        parsed = json.loads(raw or '')
    except ValueError:
        return {}

    if not isinstance(parsed, dict):
        return {}

    nested = parsed.get('oauth_tokens')
    if isinstance(nested, dict):
        return {**parsed, **nested}
    return parsed


def is_remote_event_id(event_id: str | None) -> bool:
    return bool(event_id) and not event_id.startswith(PLACEHOLDER_EVENT_PREFIXES)


def format_compact_utc(value: datetime) -> str:
    return isoformat_utc(value).replace('-', '').replace(':', '')[:15] + 'Z'


def hash_appointment_snapshot(appointment: CalendarAppointment) -> str:
    payload = json.dumps(
        {
            'title': appointment.title,
            'description': appointment.description,
            'modality': appointment.modality,
            'location_text': appointment.location_text,
            'video_url': appointment.video_url,
            'start_at_utc': isoformat_utc(appointment.start_at_utc),
            'end_at_utc': isoformat_utc(appointment.end_at_utc),
            'timezone_label': appointment.timezone_label,
            'status': appointment.status,
        },
        separators=(',', ':'),
    )
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def build_google_template_url(appointment: CalendarAppointment) -> str:
    params = {
        'action': 'TEMPLATE',
        'text': appointment.title,
        'dates': f'{format_compact_utc(appointment.start_at_utc)}/{format_compact_utc(appointment.end_at_utc)}',
        'details': appointment.event_details,
        'location': appointment.event_location,
    }
    return f'{config.GOOGLE_CALENDAR_TEMPLATE_URL}?{urlencode(params)}'


def build_google_event_payload(appointment: CalendarAppointment) -> dict:
    return {
        'summary': appointment.title,
        'description': appointment.event_details,
        'location': appointment.event_location,
        'start': {
            'dateTime': isoformat_utc(appointment.start_at_utc),
            'timeZone': appointment.timezone_label,
        },
        'end': {
            'dateTime': isoformat_utc(appointment.end_at_utc),
            'timeZone': appointment.timezone_label,
        },
    }


def build_apple_data_url(appointment: CalendarAppointment, now: datetime | None = None) -> str:
    description = (appointment.description or '').replace('\n', '\\n')
    ics = '\r\n'.join(
        [
            'BEGIN:VCALENDAR',
            'VERSION:2.0',
            f'PRODID:{config.CALENDAR_EVENT_PRODID}',
            'BEGIN:VEVENT',
            f'UID:{config.CALENDAR_EVENT_UID_PREFIX}-{appointment.id}',
            f'DTSTAMP:{format_compact_utc(now or utc_now())}',
            f'DTSTART:{format_compact_utc(appointment.start_at_utc)}',
            f'DTEND:{format_compact_utc(appointment.end_at_utc)}',
            f'SUMMARY:{appointment.title}',
            f'DESCRIPTION:{description}',
            f'LOCATION:{appointment.event_location}',
            'END:VEVENT',
            'END:VCALENDAR',
        ]
    )
    return f"data:text/calendar;charset=utf8,{quote(ics, safe=URI_COMPONENT_SAFE)}"


class GoogleCalendarClient:
    """Thin wrapper over the Google Calendar v3 events endpoints."""

    def __init__(self, http_client: httpx.Client | None = None, base_url: str | None = None):
        self.http_client = http_client or httpx.Client(timeout=config.CALENDAR_HTTP_TIMEOUT_SECONDS)
        self.base_url = (base_url or config.GOOGLE_CALENDAR_API_BASE).rstrip('/')

    def close(self) -> None:
        self.http_client.close()

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self.base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def save_event(self, access_token: str, calendar_id: str, event_id: str | None, body: dict) -> httpx.Response:
        method = 'PATCH' if event_id else 'POST'
        return self.http_client.request(
            method,
            self._events_url(calendar_id, event_id),
            headers={'Authorization': f'Bearer {access_token}'},
            json=body,
        )

    def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> httpx.Response:
        return self.http_client.delete(
            self._events_url(calendar_id, event_id),
            headers={'Authorization': f'Bearer {access_token}'},
        )


class CalendarSyncEngine:
    def __init__(self, db: Session, google_client: GoogleCalendarClient | None = None):
        self.db = db
        self.google_client = google_client or GoogleCalendarClient()

    def close(self) -> None:
        self.google_client.close()

    def sync_appointment_for_participants(
        self,
        appointment: CalendarAppointment,
        participant_user_ids: list[str],
    ) -> CalendarSyncReport:
        report = CalendarSyncReport(appointment_id=appointment.id)
        user_ids = list(dict.fromkeys(user_id for user_id in participant_user_ids if user_id))
        if not user_ids:
            return report

        try:
            connections = self.db.query(CalendarConnection).filter(
                CalendarConnection.user_id.in_(user_ids),
                CalendarConnection.provider.in_(SYNCABLE_PROVIDERS),
            ).all()
            if not connections:
                return report

            existing_links = self.db.query(CalendarEventLink).filter(
                CalendarEventLink.appointment_id == appointment.id,
                CalendarEventLink.user_id.in_(user_ids),
                CalendarEventLink.provider.in_(SYNCABLE_PROVIDERS),
            ).all()
        except SQLAlchemyError:
            logger.exception('Calendar sync lookup failed for appointment %s', appointment.id)
            self.db.rollback()
            return report

        if not is_confirmed_status(appointment.status):
            report.removed_links = self._remove_mirrors(connections, existing_links)
            return report

        sync_hash = hash_appointment_snapshot(appointment)
        links_by_key = {(link.user_id, link.provider): link for link in existing_links}

        for connection in connections:
            existing_link = links_by_key.get((connection.user_id, connection.provider))
            report.outcomes.append(self._sync_connection(appointment, connection, existing_link, sync_hash))

        return report

    def _sync_connection(
        self,
        appointment: CalendarAppointment,
        connection: CalendarConnection,
        existing_link: CalendarEventLink | None,
        sync_hash: str,
    ) -> ConnectionSyncOutcome:
        try:
            if connection.provider == GOOGLE_PROVIDER:
                result = self._sync_google_event(appointment, connection, existing_link)
            else:
                result = self._sync_apple_event(appointment, connection, existing_link)

            now = utc_now()
            link = existing_link or CalendarEventLink(
                appointment_id=appointment.id,
                provider=connection.provider,
                user_id=connection.user_id,
            )
            link.provider_event_id = result.provider_event_id
            link.provider_event_url = result.provider_event_url
            link.sync_hash = sync_hash
            link.last_sync_at = to_storage(now)
            self.db.add(link)
            connection.sync_state = result.sync_state
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.warning(
                'Calendar sync failed for appointment %s (%s/%s)',
                appointment.id,
                connection.provider,
                connection.user_id,
                exc_info=True,
            )
            self._record_failure(connection, str(exc))
            return ConnectionSyncOutcome(connection.user_id, connection.provider, SYNC_FAILED_STATE, str(exc))

        return ConnectionSyncOutcome(
            connection.user_id,
            connection.provider,
            result.sync_state['state'],
            result.sync_state.get('error'),
        )

    def _record_failure(self, connection: CalendarConnection, detail: str) -> None:
        try:
            connection.sync_state = {
                'state': SYNC_FAILED_STATE,
                'provider': connection.provider,
                'last_attempt_at': isoformat_utc(utc_now()),
                'error': 'sync_exception',
                'detail': detail[:config.SYNC_ERROR_DETAIL_LIMIT],
            }
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception('Unable to record sync failure for connection %s', connection.id)

    def _sync_google_event(
        self,
        appointment: CalendarAppointment,
        connection: CalendarConnection,
        existing_link: CalendarEventLink | None,
    ) -> ProviderSyncResult:
        tokens = parse_tokens(connection.oauth_tokens_encrypted)
        access_token = tokens.get('access_token')
        calendar_id = tokens.get('calendar_id') or 'primary'
        fallback_url = build_google_template_url(appointment)
        fallback_event_id = (
            existing_link.provider_event_id
            if existing_link
            else f'local:{appointment.id}:{connection.user_id}'
        )
        attempted_at = isoformat_utc(utc_now())

        if not access_token:
            return ProviderSyncResult(
                provider_event_id=fallback_event_id,
                provider_event_url=fallback_url,
                sync_state={'state': MISSING_ACCESS_TOKEN_STATE, 'last_attempt_at': attempted_at},
            )

        existing_event_id = existing_link.provider_event_id if existing_link else None
        try:
            response = self.google_client.save_event(
                access_token,
                calendar_id,
                existing_event_id if is_remote_event_id(existing_event_id) else None,
                build_google_event_payload(appointment),
            )
        except httpx.HTTPError as exc:
            return ProviderSyncResult(
                provider_event_id=fallback_event_id,
                provider_event_url=fallback_url,
                sync_state={
                    'state': SYNC_FAILED_STATE,
                    'provider': GOOGLE_PROVIDER,
                    'last_attempt_at': attempted_at,
                    'error': 'google_api_transport',
                    'detail': str(exc)[:config.SYNC_ERROR_DETAIL_LIMIT],
                },
            )

        if not response.is_success:
            return ProviderSyncResult(
                provider_event_id=fallback_event_id,
                provider_event_url=fallback_url,
                sync_state={
                    'state': SYNC_FAILED_STATE,
                    'provider': GOOGLE_PROVIDER,
                    'last_attempt_at': attempted_at,
                    'error': f'google_api_{response.status_code}',
                    'detail': response.text[:config.SYNC_ERROR_DETAIL_LIMIT],
                },
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        return ProviderSyncResult(
            provider_event_id=body.get('id') or fallback_event_id,
            provider_event_url=body.get('htmlLink') or fallback_url,
            sync_state={
                'state': SYNCED_STATE,
                'provider': GOOGLE_PROVIDER,
                'last_attempt_at': attempted_at,
                'last_synced_at': isoformat_utc(utc_now()),
            },
        )

    def _sync_apple_event(
        self,
        appointment: CalendarAppointment,
        connection: CalendarConnection,
        existing_link: CalendarEventLink | None,
    ) -> ProviderSyncResult:
        now = utc_now()
        return ProviderSyncResult(
            provider_event_id=(
                existing_link.provider_event_id
                if existing_link
                else f'{APPLE_PROVIDER}:{appointment.id}:{connection.user_id}'
            ),
            provider_event_url=build_apple_data_url(appointment, now=now),
            sync_state={
                'state': SYNCED_STATE,
                'provider': APPLE_PROVIDER,
                'mode': 'ics_data_url',
                'last_attempt_at': isoformat_utc(now),
                'last_synced_at': isoformat_utc(now),
            },
        )

    def _remove_mirrors(self, connections: list[CalendarConnection], links: list[CalendarEventLink]) -> int:
        google_connections = {
            connection.user_id: connection
            for connection in connections
            if connection.provider == GOOGLE_PROVIDER
        }

        for link in links:
            # ICS data-URL mirrors have no server-side event to delete.
            if link.provider != GOOGLE_PROVIDER:
                continue
            connection = google_connections.get(link.user_id)
            if connection is not None:
                self._delete_google_event_if_possible(connection, link.provider_event_id)

        try:
            for link in links:
                self.db.delete(link)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception('Unable to delete calendar event links')
            return 0

        return len(links)

    def _delete_google_event_if_possible(self, connection: CalendarConnection, event_id: str) -> None:
        tokens = parse_tokens(connection.oauth_tokens_encrypted)
        access_token = tokens.get('access_token')
        if not access_token or not is_remote_event_id(event_id):
            return

        try:
            response = self.google_client.delete_event(access_token, tokens.get('calendar_id') or 'primary', event_id)
        except httpx.HTTPError:
            logger.warning('Google event %s delete failed', event_id, exc_info=True)
            return

        if not response.is_success:
            logger.warning('Google event %s delete returned %s', event_id, response.status_code)
