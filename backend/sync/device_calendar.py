"""Mirror a user's visible appointments into their device calendar.

The OS calendar and the local key/value store are reached through the
``DeviceCalendarApi`` and ``KeyValueStore`` interfaces so the mobile shell can
plug in its platform bindings. The ``{appointment_id: device_event_id}`` map
is stored per user and drives update/delete reconciliation.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Protocol

from backend.core import config
from backend.core.timeutils import isoformat_utc, parse_instant
from backend.models.appointment import IN_PERSON_MODALITY, is_confirmed_status

logger = logging.getLogger(__name__)

SYNCED = 'synced'
SKIPPED = 'skipped'
PERMISSION_DENIED = 'permission_denied'
NO_CALENDAR = 'no_calendar'
WEB_PLATFORM = 'web'
WRITABLE_ACCESS_LEVELS = frozenset({'owner', 'editor'})


class DeviceCalendarError(Exception):
    pass


@dataclass
class DeviceCalendar:
    id: str
    allows_modifications: bool
    is_primary: bool = False
    access_level: str | None = None


@dataclass
class DeviceEvent:
    title: str
    start_date: datetime
    end_date: datetime
    time_zone: str
    notes: str
    location: str | None
    url: str | None
    alarm_offsets_minutes: list[int] = field(default_factory=list)


@dataclass
class DeviceCalendarAppointment:
    id: str
    title: str
    description: str | None
    modality: str
    location_text: str | None
    video_url: str | None
    start_at_utc: datetime | str
    end_at_utc: datetime | str
    timezone_label: str
    status: str
    participant_name: str | None = None


@dataclass
class DeviceCalendarSyncResult:
    status: str
    synced_count: int = 0
    removed_count: int = 0
    reason: str | None = None


class DeviceCalendarApi(Protocol):
    def get_permission_granted(self) -> bool: ...

    def request_permission(self) -> bool: ...

    def get_default_calendar(self) -> DeviceCalendar | None: ...

    def list_calendars(self) -> list[DeviceCalendar]: ...

    def create_event(self, calendar_id: str, event: DeviceEvent) -> str: ...

    def update_event(self, event_id: str, event: DeviceEvent) -> None: ...

    def delete_event(self, event_id: str) -> None: ...


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...


class JsonFileStore:
    """KeyValueStore persisted as one JSON document on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except ValueError:
            logger.warning('Ignoring unreadable device calendar store at %s', self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get_item(self, key: str) -> str | None:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding='utf-8')


def build_storage_key(user_id: str) -> str:
    return f'{config.DEVICE_CALENDAR_STORAGE_PREFIX}:{user_id}'


def build_marker(appointment_id: str) -> str:
    return f'[ZenithAppointment:{appointment_id}]'


def build_event_title(appointment: DeviceCalendarAppointment) -> str:
    if not appointment.participant_name:
        return appointment.title
    return f'{appointment.title} • {appointment.participant_name}'


def build_event_location(appointment: DeviceCalendarAppointment) -> str | None:
    if appointment.modality == IN_PERSON_MODALITY:
        return appointment.location_text
    return appointment.video_url or appointment.location_text


def build_event_notes(appointment: DeviceCalendarAppointment) -> str:
    parts = []
    if appointment.description and appointment.description.strip():
        parts.append(appointment.description.strip())
    if appointment.video_url and appointment.video_url.strip():
        parts.append(f'Meeting link: {appointment.video_url.strip()}')
    parts.append(build_marker(appointment.id))
    return '\n\n'.join(parts)


def build_event_details(appointment: DeviceCalendarAppointment) -> DeviceEvent:
    return DeviceEvent(
        title=build_event_title(appointment),
        start_date=parse_instant(appointment.start_at_utc),
        end_date=parse_instant(appointment.end_at_utc),
        time_zone=appointment.timezone_label,
        notes=build_event_notes(appointment),
        location=build_event_location(appointment),
        url=appointment.video_url,
        alarm_offsets_minutes=[-config.DEVICE_CALENDAR_ALARM_OFFSET_MINUTES],
    )


def build_appointment_sync_fingerprint(appointments: list[DeviceCalendarAppointment]) -> str:
    def instant(value) -> str:
        parsed = parse_instant(value)
        return isoformat_utc(parsed) if parsed else str(value)

    return '|'.join(
        ':'.join(
            [
                appointment.id,
                appointment.status,
                instant(appointment.start_at_utc),
                instant(appointment.end_at_utc),
                appointment.timezone_label,
            ]
        )
        for appointment in appointments
    )


class DeviceCalendarMirror:
    def __init__(self, calendar_api: DeviceCalendarApi, store: KeyValueStore, platform: str):
        self.calendar_api = calendar_api
        self.store = store
        self.platform = platform
        self._last_fingerprints: dict[str, str] = {}

    def load_event_map(self, user_id: str) -> dict[str, str]:
        raw = self.store.get_item(build_storage_key(user_id))
        if not raw:
            return {}

        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if not isinstance(parsed, dict):
            return {}

        return {
            key: value
            for key, value in parsed.items()
            if isinstance(value, str) and value.strip()
        }

    def save_event_map(self, user_id: str, event_map: dict[str, str]) -> None:
        self.store.set_item(build_storage_key(user_id), json.dumps(event_map))

    def ensure_permission(self) -> bool:
        if self.calendar_api.get_permission_granted():
            return True
        return self.calendar_api.request_permission()

    def find_writable_calendar_id(self) -> str | None:
        try:
            default_calendar = self.calendar_api.get_default_calendar()
        except DeviceCalendarError:
            default_calendar = None
        if default_calendar is not None and default_calendar.allows_modifications:
            return default_calendar.id

        calendars = [calendar for calendar in self.calendar_api.list_calendars() if calendar.allows_modifications]
        for predicate in (
            lambda calendar: calendar.is_primary,
            lambda calendar: calendar.access_level in WRITABLE_ACCESS_LEVELS,
            lambda calendar: True,
        ):
            for calendar in calendars:
                if predicate(calendar):
                    return calendar.id
        return None

    def sync(
        self,
        user_id: str,
        enabled: bool,
        appointments: list[DeviceCalendarAppointment],
    ) -> DeviceCalendarSyncResult:
        if not enabled or not user_id:
            return DeviceCalendarSyncResult(SKIPPED, reason='calendar_sync_disabled')

        if self.platform == WEB_PLATFORM:
            return DeviceCalendarSyncResult(SKIPPED, reason='web_unsupported')

        if not self.ensure_permission():
            return DeviceCalendarSyncResult(PERMISSION_DENIED)

        calendar_id = self.find_writable_calendar_id()
        if not calendar_id:
            return DeviceCalendarSyncResult(NO_CALENDAR)

        event_map = self.load_event_map(user_id)
        synced_count = 0
        removed_count = 0

        for appointment in appointments:
            existing_event_id = event_map.get(appointment.id)

            if is_confirmed_status(appointment.status):
                event = build_event_details(appointment)
                if existing_event_id:
                    try:
                        self.calendar_api.update_event(existing_event_id, event)
                    except DeviceCalendarError:
                        logger.info('Device event %s missing; recreating', existing_event_id)
                    else:
                        synced_count += 1
                        continue

                event_map[appointment.id] = self.calendar_api.create_event(calendar_id, event)
                synced_count += 1
                continue

            if not existing_event_id:
                continue

            try:
                self.calendar_api.delete_event(existing_event_id)
            except DeviceCalendarError:
                logger.debug('Device event %s already gone', existing_event_id)
            del event_map[appointment.id]
            removed_count += 1

        self.save_event_map(user_id, event_map)
        return DeviceCalendarSyncResult(SYNCED, synced_count=synced_count, removed_count=removed_count)

    def sync_if_changed(
        self,
        user_id: str,
        enabled: bool,
        appointments: list[DeviceCalendarAppointment],
    ) -> DeviceCalendarSyncResult:
        """Run ``sync`` only when the visible appointment set changed."""
        if not user_id or not enabled:
            return DeviceCalendarSyncResult(SKIPPED, reason='calendar_sync_disabled')

        fingerprint = build_appointment_sync_fingerprint(appointments)
        if self._last_fingerprints.get(user_id) == fingerprint:
            return DeviceCalendarSyncResult(SKIPPED, reason='unchanged')

        self._last_fingerprints[user_id] = fingerprint
        return self.sync(user_id, enabled, appointments)
