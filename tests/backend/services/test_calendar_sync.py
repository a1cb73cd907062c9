import json
from dataclasses import replace
from datetime import timedelta
from urllib.parse import parse_qs, unquote, urlparse

import httpx

from backend.models.calendar import CalendarConnection, CalendarEventLink
from backend.services.calendar_sync import (
    CalendarAppointment,
    CalendarSyncEngine,
    GoogleCalendarClient,
    build_apple_data_url,
    build_google_template_url,
    format_compact_utc,
    hash_appointment_snapshot,
    is_remote_event_id,
    parse_tokens,
)

from conftest import NOW, GoogleCalendarStub


def _appointment(**overrides) -> CalendarAppointment:
    fields = {
        'id': 'appointment-1',
        'title': 'Intro call',
        'description': 'Discuss firm preferences',
        'modality': 'virtual',
        'location_text': None,
        'video_url': 'https://meet.example.com/intro',
        'start_at_utc': NOW + timedelta(days=1),
        'end_at_utc': NOW + timedelta(days=1, minutes=30),
        'timezone_label': 'America/New_York',
        'status': 'scheduled',
    }
    fields.update(overrides)
    return CalendarAppointment(**fields)


def _connect(db, user_id: str, provider: str, tokens: dict | None = None) -> CalendarConnection:
    connection = CalendarConnection(
        user_id=user_id,
        provider=provider,
        oauth_tokens_encrypted=json.dumps({'provider': provider, 'oauth_tokens': tokens}),
    )
    db.add(connection)
    db.commit()
    return connection


def test_parse_tokens_merges_nested_tokens() -> None:
    raw = json.dumps({'provider': 'google', 'oauth_tokens': {'access_token': 'abc', 'calendar_id': 'work'}})

    assert parse_tokens(raw) == {
        'provider': 'google',
        'oauth_tokens': {'access_token': 'abc', 'calendar_id': 'work'},
        'access_token': 'abc',
        'calendar_id': 'work',
    }
    assert parse_tokens('not json') == {}
    assert parse_tokens('[1, 2]') == {}
    assert parse_tokens(None) == {}


def test_is_remote_event_id_rejects_placeholders() -> None:
    assert is_remote_event_id('abc123') is True
    assert is_remote_event_id('local:appointment-1:user') is False
    assert is_remote_event_id('https://calendar.google.com/render') is False
    assert is_remote_event_id('data:text/calendar,xyz') is False
    assert is_remote_event_id(None) is False


def test_hash_is_stable_and_tracks_content() -> None:
    appointment = _appointment()

    assert hash_appointment_snapshot(appointment) == hash_appointment_snapshot(_appointment())
    assert hash_appointment_snapshot(appointment) != hash_appointment_snapshot(replace(appointment, title='Follow-up'))
    assert hash_appointment_snapshot(appointment) == hash_appointment_snapshot(
        replace(appointment, start_at_utc=appointment.start_at_utc.replace(tzinfo=None))
    )


def test_google_template_url_uses_compact_dates() -> None:
    url = build_google_template_url(_appointment())

    query = parse_qs(urlparse(url).query)
    assert query['action'] == ['TEMPLATE']
    assert query['dates'] == ['20260303T150000Z/20260303T153000Z']
    assert query['location'] == ['https://meet.example.com/intro']
    assert format_compact_utc(NOW) == '20260302T150000Z'


def test_apple_data_url_contains_event() -> None:
    url = build_apple_data_url(_appointment(modality='in_person', location_text='12 Main St'), now=NOW)

    assert url.startswith('data:text/calendar;charset=utf8,')
    ics = unquote(url.split(',', 1)[1])
    assert 'UID:zenith-appointment-1' in ics
    assert 'DTSTAMP:20260302T150000Z' in ics
    assert 'DTSTART:20260303T150000Z' in ics
    assert 'LOCATION:12 Main St' in ics
    assert ics.startswith('BEGIN:VCALENDAR\r\n')


def test_google_client_posts_then_patches() -> None:
    stub = GoogleCalendarStub()
    client = stub.client()

    client.save_event('token', 'primary', None, {'summary': 'x'})
    client.save_event('token', 'team@group.calendar.google.com', 'evt/1', {'summary': 'x'})

    assert [request.method for request in stub.requests] == ['POST', 'PATCH']
    assert stub.requests[0].headers['Authorization'] == 'Bearer token'
    assert stub.requests[1].url.raw_path.decode() == '/v3/calendars/team%40group.calendar.google.com/events/evt%2F1'


def test_sync_creates_then_updates_google_event(db, google) -> None:
    _connect(db, 'candidate-1', 'google', {'access_token': 'token-1'})
    engine = CalendarSyncEngine(db, google_client=google.client())

    first = engine.sync_appointment_for_participants(_appointment(), ['candidate-1'])
    second = engine.sync_appointment_for_participants(_appointment(title='Moved call'), ['candidate-1', 'candidate-1'])

    assert [outcome.state for outcome in first.outcomes + second.outcomes] == ['synced', 'synced']
    assert [request.method for request in google.requests] == ['POST', 'PATCH']
    assert google.requests[1].url.path.endswith('/events/gcal-event-1')
    assert json.loads(google.requests[1].content)['summary'] == 'Moved call'

    link = db.query(CalendarEventLink).one()
    assert link.provider_event_id == 'gcal-event-1'
    assert link.sync_hash == hash_appointment_snapshot(_appointment(title='Moved call'))
    connection = db.query(CalendarConnection).one()
    assert connection.sync_state['state'] == 'synced'


def test_sync_without_access_token_records_template_fallback(db, google) -> None:
    _connect(db, 'candidate-1', 'google')
    engine = CalendarSyncEngine(db, google_client=google.client())

    report = engine.sync_appointment_for_participants(_appointment(), ['candidate-1'])

    assert report.outcomes[0].state == 'connected_missing_access_token'
    assert report.failed == []
    assert google.requests == []
    link = db.query(CalendarEventLink).one()
    assert link.provider_event_id == 'local:appointment-1:candidate-1'
    assert link.provider_event_url.startswith('https://calendar.google.com/calendar/render?action=TEMPLATE')


def test_google_http_failure_is_recorded_and_isolated(db) -> None:
    failing = GoogleCalendarStub(status_code=403)
    _connect(db, 'candidate-1', 'google', {'access_token': 'token-1'})
    _connect(db, 'candidate-1', 'apple')
    engine = CalendarSyncEngine(db, google_client=failing.client())

    report = engine.sync_appointment_for_participants(_appointment(), ['candidate-1'])

    states = {outcome.provider: outcome for outcome in report.outcomes}
    assert states['google'].state == 'sync_failed'
    assert states['google'].error == 'google_api_403'
    assert states['apple'].state == 'synced'
    assert [outcome.provider for outcome in report.failed] == ['google']

    google_connection = db.query(CalendarConnection).filter(CalendarConnection.provider == 'google').one()
    assert google_connection.sync_state['detail'] == 'quota exceeded'
    links = {link.provider: link for link in db.query(CalendarEventLink).all()}
    assert links['google'].provider_event_id == 'local:appointment-1:candidate-1'
    assert links['apple'].provider_event_id == 'apple:appointment-1:candidate-1'


def test_google_transport_error_is_recorded(db) -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('connection refused', request=request)

    client = GoogleCalendarClient(
        http_client=httpx.Client(transport=httpx.MockTransport(unreachable)),
        base_url='https://calendar.test/v3',
    )
    _connect(db, 'candidate-1', 'google', {'access_token': 'token-1'})

    report = CalendarSyncEngine(db, google_client=client).sync_appointment_for_participants(_appointment(), ['candidate-1'])

    assert report.outcomes[0].state == 'sync_failed'
    assert report.outcomes[0].error == 'google_api_transport'


def test_non_confirmed_status_removes_mirrors(db, google) -> None:
    _connect(db, 'candidate-1', 'google', {'access_token': 'token-1'})
    _connect(db, 'staff-1', 'apple')
    db.add_all(
        [
            CalendarEventLink(appointment_id='appointment-1', provider='google', user_id='candidate-1', provider_event_id='remote-1'),
            CalendarEventLink(appointment_id='appointment-1', provider='apple', user_id='staff-1', provider_event_id='apple:1'),
            CalendarEventLink(appointment_id='appointment-2', provider='apple', user_id='staff-1', provider_event_id='apple:2'),
        ]
    )
    db.commit()
    engine = CalendarSyncEngine(db, google_client=google.client())

    report = engine.sync_appointment_for_participants(_appointment(status='cancelled'), ['candidate-1', 'staff-1'])

    assert report.removed_links == 2
    assert [request.method for request in google.requests] == ['DELETE']
    assert [link.appointment_id for link in db.query(CalendarEventLink).all()] == ['appointment-2']


def test_removal_skips_remote_delete_for_placeholder_ids(db, google) -> None:
    _connect(db, 'candidate-1', 'google', {'access_token': 'token-1'})
    db.add(CalendarEventLink(appointment_id='appointment-1', provider='google', user_id='candidate-1', provider_event_id='local:x'))
    db.commit()

    report = CalendarSyncEngine(db, google_client=google.client()).sync_appointment_for_participants(
        _appointment(status='declined'),
        ['candidate-1'],
    )

    assert report.removed_links == 1
    assert google.requests == []


def test_sync_without_connections_is_a_no_op(db, google) -> None:
    report = CalendarSyncEngine(db, google_client=google.client()).sync_appointment_for_participants(_appointment(), ['nobody'])

    assert report.outcomes == []
    assert report.removed_links == 0
