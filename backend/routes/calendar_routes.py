from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import ActingUser, get_current_user
from backend.routes.dependencies import database_unavailable, ensure_database_ready, get_db
from backend.schemas import CalendarConnectionResponse, ConnectCalendarRequest
from backend.services.calendar_connections import connect_calendar_provider, list_calendar_connections

router = APIRouter(tags=['calendar'])


@router.post('/connections', response_model=CalendarConnectionResponse)
def connect_provider(
    data: ConnectCalendarRequest,
    current_user: ActingUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return connect_calendar_provider(db, current_user.id, data)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/connections', response_model=list[CalendarConnectionResponse])
def list_connections(
    current_user: ActingUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return list_calendar_connections(db, current_user.id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
