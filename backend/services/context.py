import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from backend.core.timeutils import utc_now
from backend.services.calendar_sync import CalendarSyncEngine
from backend.services.chat import ChatMessenger, LoggingChatMessenger

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Per-request collaborators handed to the lifecycle services."""

    db: Session
    chat: ChatMessenger = field(default_factory=LoggingChatMessenger)
    calendar_sync: CalendarSyncEngine | None = None
    clock: Callable[[], datetime] = utc_now

    def __post_init__(self) -> None:
        if self.calendar_sync is None:
            self.calendar_sync = CalendarSyncEngine(self.db)

    def now(self) -> datetime:
        return self.clock()

    def close(self) -> None:
        self.calendar_sync.close()


@dataclass
class EffectOutcome:
    name: str
    ok: bool
    error: str | None = None


class EffectsPhase:
    """Runs best-effort side effects and records a tagged outcome for each.

    A failing effect is logged and rolled back; it never aborts the phase.
    """

    def __init__(self, db: Session, appointment_id: str, actor_user_id: str):
        self.db = db
        self.appointment_id = appointment_id
        self.actor_user_id = actor_user_id
        self.outcomes: list[EffectOutcome] = []

    def run(self, name: str, effect: Callable, *args, **kwargs) -> EffectOutcome:
        try:
            effect(*args, **kwargs)
        except Exception as exc:
            self.db.rollback()
            logger.warning(
                'Appointment side effect %s failed',
                name,
                exc_info=True,
                extra={
                    'effect': name,
                    'appointment_id': self.appointment_id,
                    'actor_user_id': self.actor_user_id,
                },
            )
            outcome = EffectOutcome(name=name, ok=False, error=str(exc) or exc.__class__.__name__)
        else:
            outcome = EffectOutcome(name=name, ok=True)

        self.outcomes.append(outcome)
        return outcome

    @property
    def failures(self) -> list[EffectOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]
