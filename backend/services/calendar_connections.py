import hashlib
import json

from sqlalchemy.orm import Session

from backend.core.errors import AppointmentError, ErrorCode
from backend.core.timeutils import isoformat_utc, utc_now
from backend.models.calendar import SYNCABLE_PROVIDERS, CalendarConnection
from backend.schemas import ConnectCalendarRequest
from backend.services.audit import write_audit_event

CONNECTED_STATE = 'connected'
PENDING_EXCHANGE_STATE = 'connected_pending_exchange'


def build_token_blob(payload: ConnectCalendarRequest, connected_at: str) -> str:
    oauth_code = payload.oauth_code or ''
    return json.dumps(
        {
            'provider': payload.provider,
            'connected_at': connected_at,
            'oauth_code_hash': hashlib.sha256(oauth_code.encode('utf-8')).hexdigest() if oauth_code else None,
            'oauth_tokens': payload.oauth_tokens,
        }
    )


def connect_calendar_provider(db: Session, user_id: str, payload: ConnectCalendarRequest) -> CalendarConnection:
    """Create or replace the user's connection for one provider."""
    if payload.provider not in SYNCABLE_PROVIDERS:
        raise AppointmentError(ErrorCode.CALENDAR_PROVIDER_UNSUPPORTED, f'Unsupported calendar provider: {payload.provider}')

    connected_at = isoformat_utc(utc_now())

    connection = db.query(CalendarConnection).filter(
        CalendarConnection.user_id == user_id,
        CalendarConnection.provider == payload.provider,
    ).first()
    if connection is None:
        connection = CalendarConnection(user_id=user_id, provider=payload.provider)
        db.add(connection)

    connection.oauth_tokens_encrypted = build_token_blob(payload, connected_at)
    connection.sync_state = {
        'state': CONNECTED_STATE if payload.oauth_tokens else PENDING_EXCHANGE_STATE,
        'last_attempt_at': connected_at,
    }
    db.flush()

    write_audit_event(
        db,
        actor_user_id=user_id,
        action='connect_calendar_provider',
        entity_type='calendar_connections',
        entity_id=connection.id,
        after_json={'provider': payload.provider},
    )
    db.commit()
    db.refresh(connection)
    return connection


def list_calendar_connections(db: Session, user_id: str) -> list[CalendarConnection]:
    return db.query(CalendarConnection).filter(
        CalendarConnection.user_id == user_id,
    ).order_by(CalendarConnection.provider.asc()).all()
