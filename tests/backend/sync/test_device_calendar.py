import json
from datetime import timedelta

import pytest

from backend.sync.device_calendar import (
    NO_CALENDAR,
    PERMISSION_DENIED,
    SKIPPED,
    SYNCED,
    WEB_PLATFORM,
    DeviceCalendar,
    DeviceCalendarAppointment,
    DeviceCalendarError,
    DeviceCalendarMirror,
    JsonFileStore,
    build_appointment_sync_fingerprint,
    build_event_details,
    build_storage_key,
)

from conftest import NOW


class MemoryStore:
    def __init__(self, items: dict[str, str] | None = None):
        self.items = dict(items or {})

    def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value


class FakeCalendarApi:
    def __init__(self, granted: bool = True, grant_on_request: bool = False, calendars: list[DeviceCalendar] | None = None):
        self.granted = granted
        self.grant_on_request = grant_on_request
        self.default_calendar: DeviceCalendar | None = None
        self.calendars = calendars if calendars is not None else [DeviceCalendar('cal-1', allows_modifications=True)]
        self.events: dict[str, tuple[str, object]] = {}
        self.missing_on_update: set[str] = set()
        self.deleted: list[str] = []
        self._next_id = 0

    def get_permission_granted(self) -> bool:
        return self.granted

    def request_permission(self) -> bool:
        self.granted = self.grant_on_request
        return self.granted

    def get_default_calendar(self) -> DeviceCalendar | None:
        return self.default_calendar

    def list_calendars(self) -> list[DeviceCalendar]:
        return self.calendars

    def create_event(self, calendar_id: str, event) -> str:
        self._next_id += 1
        event_id = f'device-event-{self._next_id}'
        self.events[event_id] = (calendar_id, event)
        return event_id

    def update_event(self, event_id: str, event) -> None:
        if event_id in self.missing_on_update:
            raise DeviceCalendarError(f'{event_id} not found')
        calendar_id, _ = self.events.get(event_id, ('cal-1', None))
        self.events[event_id] = (calendar_id, event)

    def delete_event(self, event_id: str) -> None:
        self.deleted.append(event_id)
        if event_id not in self.events:
            raise DeviceCalendarError(f'{event_id} not found')
        del self.events[event_id]


def _appointment(appointment_id: str, status: str = 'scheduled', **overrides) -> DeviceCalendarAppointment:
    fields = {
        'id': appointment_id,
        'title': 'Intro call',
        'description': 'Discuss firm preferences',
        'modality': 'virtual',
        'location_text': None,
        'video_url': 'https://meet.example.com/intro',
        'start_at_utc': NOW + timedelta(days=1),
        'end_at_utc': NOW + timedelta(days=1, minutes=30),
        'timezone_label': 'America/New_York',
        'status': status,
    }
    fields.update(overrides)
    return DeviceCalendarAppointment(**fields)


def _stored_map(store: MemoryStore, user_id: str = 'user-1') -> dict:
    return json.loads(store.items[build_storage_key(user_id)])


def test_sync_mirrors_confirmed_and_removes_declined() -> None:
    api = FakeCalendarApi()
    api.events['device-old'] = ('cal-1', None)
    store = MemoryStore({build_storage_key('user-1'): json.dumps({'declined-1': 'device-old'})})
    mirror = DeviceCalendarMirror(api, store, platform='ios')

    result = mirror.sync('user-1', True, [_appointment('confirmed-1'), _appointment('declined-1', status='declined')])

    assert result.status == SYNCED
    assert result.synced_count == 1
    assert result.removed_count == 1
    assert api.deleted == ['device-old']
    assert _stored_map(store) == {'confirmed-1': 'device-event-1'}


def test_sync_updates_existing_event_and_recreates_missing_one() -> None:
    api = FakeCalendarApi()
    api.events['device-a'] = ('cal-1', None)
    api.missing_on_update.add('device-b')
    store = MemoryStore({build_storage_key('user-1'): json.dumps({'a': 'device-a', 'b': 'device-b'})})

    result = DeviceCalendarMirror(api, store, platform='android').sync('user-1', True, [_appointment('a'), _appointment('b', status='accepted')])

    assert result.synced_count == 2
    assert _stored_map(store) == {'a': 'device-a', 'b': 'device-event-1'}


def test_sync_ignores_delete_of_already_removed_event() -> None:
    api = FakeCalendarApi()
    store = MemoryStore({build_storage_key('user-1'): json.dumps({'gone': 'device-gone'})})

    result = DeviceCalendarMirror(api, store, platform='ios').sync('user-1', True, [_appointment('gone', status='declined')])

    assert result.removed_count == 1
    assert _stored_map(store) == {}


@pytest.mark.parametrize(
    ('user_id', 'enabled', 'platform', 'reason'),
    [
        ('user-1', False, 'ios', 'calendar_sync_disabled'),
        ('', True, 'ios', 'calendar_sync_disabled'),
        ('user-1', True, WEB_PLATFORM, 'web_unsupported'),
    ],
)
def test_sync_skips(user_id, enabled, platform, reason) -> None:
    api = FakeCalendarApi()

    result = DeviceCalendarMirror(api, MemoryStore(), platform=platform).sync(user_id, enabled, [_appointment('a')])

    assert result.status == SKIPPED
    assert result.reason == reason
    assert api.events == {}


def test_sync_requests_permission_once() -> None:
    denied = FakeCalendarApi(granted=False)
    granted = FakeCalendarApi(granted=False, grant_on_request=True)

    assert DeviceCalendarMirror(denied, MemoryStore(), platform='ios').sync('user-1', True, [_appointment('a')]).status == PERMISSION_DENIED
    assert DeviceCalendarMirror(granted, MemoryStore(), platform='ios').sync('user-1', True, [_appointment('a')]).status == SYNCED


def test_sync_without_writable_calendar() -> None:
    api = FakeCalendarApi(calendars=[DeviceCalendar('read-only', allows_modifications=False)])

    result = DeviceCalendarMirror(api, MemoryStore(), platform='ios').sync('user-1', True, [_appointment('a')])

    assert result.status == NO_CALENDAR


def test_find_writable_calendar_prefers_default_then_primary_then_owner() -> None:
    api = FakeCalendarApi(
        calendars=[
            DeviceCalendar('shared', allows_modifications=True, access_level='contributor'),
            DeviceCalendar('owned', allows_modifications=True, access_level='owner'),
            DeviceCalendar('primary', allows_modifications=True, is_primary=True),
        ]
    )
    mirror = DeviceCalendarMirror(api, MemoryStore(), platform='android')

    assert mirror.find_writable_calendar_id() == 'primary'

    api.calendars = api.calendars[:2]
    assert mirror.find_writable_calendar_id() == 'owned'

    api.calendars = api.calendars[:1]
    assert mirror.find_writable_calendar_id() == 'shared'

    api.default_calendar = DeviceCalendar('default', allows_modifications=True)
    assert mirror.find_writable_calendar_id() == 'default'


def test_load_event_map_drops_malformed_entries() -> None:
    store = MemoryStore({build_storage_key('user-1'): json.dumps({'a': 'device-a', 'b': '', 'c': 3})})
    mirror = DeviceCalendarMirror(FakeCalendarApi(), store, platform='ios')

    assert mirror.load_event_map('user-1') == {'a': 'device-a'}

    store.items[build_storage_key('user-1')] = 'not json'
    assert mirror.load_event_map('user-1') == {}


def test_event_details_include_marker_and_alarm() -> None:
    event = build_event_details(_appointment('a', participant_name='Casey Candidate'))

    assert event.title == 'Intro call • Casey Candidate'
    assert event.location == 'https://meet.example.com/intro'
    assert event.notes.endswith('[ZenithAppointment:a]')
    assert 'Meeting link: https://meet.example.com/intro' in event.notes
    assert event.alarm_offsets_minutes == [-15]
    assert event.start_date == NOW + timedelta(days=1)


def test_fingerprint_normalizes_instants() -> None:
    as_datetime = _appointment('a')
    as_string = _appointment('a', start_at_utc='2026-03-03T15:00:00Z', end_at_utc='2026-03-03T15:30:00.000Z')

    assert build_appointment_sync_fingerprint([as_datetime]) == build_appointment_sync_fingerprint([as_string])


def test_sync_if_changed_skips_unchanged_sets() -> None:
    api = FakeCalendarApi()
    mirror = DeviceCalendarMirror(api, MemoryStore(), platform='ios')
    appointments = [_appointment('a')]

    assert mirror.sync_if_changed('user-1', True, appointments).status == SYNCED
    unchanged = mirror.sync_if_changed('user-1', True, appointments)
    assert unchanged.status == SKIPPED
    assert unchanged.reason == 'unchanged'
    assert mirror.sync_if_changed('user-1', True, [_appointment('a', title='Moved')]).status == SKIPPED
    assert mirror.sync_if_changed('user-1', True, [_appointment('a', status='declined')]).status == SYNCED
    assert api.events == {}


def test_json_file_store_round_trip(tmp_path) -> None:
    store = JsonFileStore(tmp_path / 'device' / 'calendar.json')

    assert store.get_item('missing') is None
    store.set_item('key', 'value')

    assert JsonFileStore(tmp_path / 'device' / 'calendar.json').get_item('key') == 'value'
