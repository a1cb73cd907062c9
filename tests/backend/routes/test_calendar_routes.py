import json

import pytest
from fastapi.testclient import TestClient

from backend.auth.dependencies import get_current_user
from backend.main import app
from backend.models.audit import AuditEvent
from backend.models.calendar import CalendarConnection
from backend.routes import calendar_routes
from backend.routes.dependencies import get_db


@pytest.fixture
def client(db, candidate, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(calendar_routes, 'ensure_database_ready', lambda: None)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: candidate
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_connect_with_tokens(client, db, candidate) -> None:
    response = client.post('/calendar/connections', json={'provider': 'google', 'oauth_tokens': {'access_token': 'abc'}})

    assert response.status_code == 200
    assert response.json()['provider'] == 'google'
    assert response.json()['sync_state']['state'] == 'connected'

    connection = db.query(CalendarConnection).one()
    blob = json.loads(connection.oauth_tokens_encrypted)
    assert blob['oauth_tokens'] == {'access_token': 'abc'}
    assert blob['oauth_code_hash'] is None
    assert db.query(AuditEvent).filter(AuditEvent.action == 'connect_calendar_provider').count() == 1


def test_reconnect_replaces_existing_connection(client, db) -> None:
    client.post('/calendar/connections', json={'provider': 'apple', 'oauth_code': 'first'})
    response = client.post('/calendar/connections', json={'provider': 'apple', 'oauth_code': ' second '})

    assert response.json()['sync_state']['state'] == 'connected_pending_exchange'
    connection = db.query(CalendarConnection).one()
    assert json.loads(connection.oauth_tokens_encrypted)['oauth_code_hash'] is not None


def test_connect_requires_credentials(client) -> None:
    response = client.post('/calendar/connections', json={'provider': 'google'})

    assert response.status_code == 422
    assert response.json()['code'] == 'invalid_payload'


def test_connect_rejects_unknown_provider(client) -> None:
    response = client.post('/calendar/connections', json={'provider': 'outlook', 'oauth_code': 'x'})

    assert response.status_code == 422
    assert response.json()['code'] == 'calendar_provider_unsupported'


def test_list_connections(client) -> None:
    client.post('/calendar/connections', json={'provider': 'google', 'oauth_code': 'x'})
    client.post('/calendar/connections', json={'provider': 'apple', 'oauth_code': 'y'})

    response = client.get('/calendar/connections')

    assert [item['provider'] for item in response.json()] == ['apple', 'google']
