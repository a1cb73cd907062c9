"""Appointment lifecycle: create, review, reschedule and the delete paths.

Every transition follows the same order. Validation and authorization run
first and fail loudly. Under the candidate lock the row is re-read, its
precondition checked again, and the authoritative write commits together
with its audit record. Calendar mirrors, notifications and chat notices then
run as an effects phase whose failures are logged, never raised.

Decline, cancel and ignore-overdue hard-delete the row; deletion is the
terminal state and the audit record keeps the pre-delete snapshot.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from backend.auth.dependencies import ActingUser
from backend.core.errors import AppointmentError, ErrorCode
from backend.core.timeutils import to_storage
from backend.database import candidate_lock
from backend.models.appointment import (
    CANCELLED_STATUS,
    DECLINED_STATUS,
    PENDING_STATUS,
    SCHEDULED_STATUS,
    Appointment,
    AppointmentParticipant,
    is_confirmed_status,
    normalize_status,
)
from backend.models.user import CANDIDATE_ROLE, STAFF_ROLE, User
from backend.schemas import AppointmentFields, ScheduleAppointmentRequest, StaffUpdateAppointmentRequest
from backend.services import chat, notifications
from backend.services.audit import write_audit_event
from backend.services.calendar_sync import CalendarAppointment
from backend.services.conflicts import has_conflict
from backend.services.context import EffectOutcome, EffectsPhase, ServiceContext
from backend.services.sections import is_overdue_confirmed, is_upcoming_confirmed

logger = logging.getLogger(__name__)

ENTITY_TYPE = 'appointments'
DEFAULT_CANDIDATE_NAME = 'Candidate'


class CalendarSyncIncomplete(Exception):
    pass


@dataclass
class LifecycleResult:
    action: str
    result: str
    appointment_id: str
    appointment: Appointment | None = None
    effects: list[EffectOutcome] = field(default_factory=list)


def _conflict_error() -> AppointmentError:
    return AppointmentError(
        ErrorCode.APPOINTMENT_CONFLICT,
        'The candidate already has a scheduled appointment in this time window.',
    )


def _forbidden() -> AppointmentError:
    return AppointmentError(ErrorCode.FORBIDDEN_ACTION, 'Forbidden action')


def _invalid_transition(message: str) -> AppointmentError:
    return AppointmentError(ErrorCode.INVALID_STATUS_TRANSITION, message)


def _is_editable(appointment: Appointment) -> bool:
    return appointment.status == PENDING_STATUS or is_confirmed_status(appointment.status)


def _is_outgoing_request(appointment: Appointment) -> bool:
    return (
        appointment.status == PENDING_STATUS
        and appointment.created_by_user_id == appointment.candidate_user_id
    )


class AppointmentLifecycle:
    def __init__(self, context: ServiceContext):
        self.context = context
        self.db = context.db

    # Lookups

    def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if appointment is None:
            raise AppointmentError(ErrorCode.APPOINTMENT_NOT_FOUND, 'Appointment not found')
        return appointment

    def authorize(self, actor: ActingUser, appointment: Appointment) -> None:
        if not actor.is_staff and appointment.candidate_user_id != actor.id:
            raise _forbidden()

    def participant_user_ids(self, appointment: Appointment) -> list[str]:
        rows = self.db.query(AppointmentParticipant.user_id).filter(
            AppointmentParticipant.appointment_id == appointment.id,
        ).all()
        return list(dict.fromkeys([appointment.candidate_user_id, *(user_id for (user_id,) in rows)]))

    def candidate_name(self, candidate_user_id: str) -> str:
        name = self.db.query(User.name).filter(User.id == candidate_user_id).scalar()
        return (name or '').strip() or DEFAULT_CANDIDATE_NAME

    def cancellation_recipients(self, actor: ActingUser, appointment: Appointment) -> list[str]:
        if actor.is_staff:
            return [appointment.candidate_user_id]

        rows = self.db.query(User.id).filter(User.role == STAFF_ROLE, User.id != actor.id).all()
        return [user_id for (user_id,) in rows]

    # Writes

    @contextmanager
    def _locked(self, candidate_user_id: str):
        with candidate_lock(self.db, candidate_user_id):
            try:
                yield
            except AppointmentError:
                self.db.rollback()
                raise

    def _reload(self, appointment_id: str) -> Appointment:
        """Fresh row state; callers hold the candidate lock."""
        appointment = self.db.query(Appointment).filter(
            Appointment.id == appointment_id,
        ).populate_existing().with_for_update().first()
        if appointment is None:
            raise AppointmentError(ErrorCode.APPOINTMENT_NOT_FOUND, 'Appointment not found')
        return appointment

    def _upsert_participant(self, appointment_id: str, user_id: str, participant_type: str) -> None:
        participant = self.db.query(AppointmentParticipant).filter(
            AppointmentParticipant.appointment_id == appointment_id,
            AppointmentParticipant.user_id == user_id,
        ).first()
        if participant is None:
            self.db.add(
                AppointmentParticipant(
                    appointment_id=appointment_id,
                    user_id=user_id,
                    participant_type=participant_type,
                )
            )
        else:
            participant.participant_type = participant_type

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception('Appointment write failed')
            raise AppointmentError(ErrorCode.STATUS_UPDATE_FAILED, 'Unable to update the appointment.') from exc

    def _delete(self, actor: ActingUser, appointment: Appointment, audit_action: str) -> None:
        before = appointment.snapshot()
        self.db.delete(appointment)
        write_audit_event(
            self.db,
            actor_user_id=actor.id,
            action=audit_action,
            entity_type=ENTITY_TYPE,
            entity_id=before['id'],
            before_json=before,
        )
        self._commit()

    def _apply_fields(self, appointment: Appointment, payload: AppointmentFields) -> None:
        appointment.title = payload.title
        appointment.description = payload.description
        appointment.modality = payload.modality
        appointment.location_text = payload.location_text
        appointment.video_url = payload.video_url
        appointment.start_at_utc = to_storage(payload.start_at_utc)
        appointment.end_at_utc = to_storage(payload.end_at_utc)
        appointment.timezone_label = payload.timezone_label

    # Effects

    def _sync_calendars(self, appointment: CalendarAppointment, participant_user_ids: list[str]) -> None:
        report = self.context.calendar_sync.sync_appointment_for_participants(appointment, participant_user_ids)
        if report.failed:
            failed = ', '.join(f'{outcome.provider}:{outcome.user_id}' for outcome in report.failed)
            raise CalendarSyncIncomplete(f'calendar sync failed for {failed}')

    def _send_chat(self, candidate_user_id: str, actor: ActingUser, text: str) -> None:
        self.context.chat.send_message(candidate_user_id, actor.id, text)

    # Operations

    def schedule_or_update(self, actor: ActingUser, payload: ScheduleAppointmentRequest) -> LifecycleResult:
        candidate_user_id = payload.candidate_user_id or actor.id
        requested_status = payload.status or PENDING_STATUS
        if candidate_user_id != actor.id or requested_status != PENDING_STATUS:
            if not actor.is_staff:
                raise _forbidden()

        if payload.id:
            existing = self.get_appointment(payload.id)
            self.authorize(actor, existing)
            candidate_user_id = existing.candidate_user_id

        return self._save(actor, payload, candidate_user_id, requested_status, existing_id=payload.id)

    def _save(
        self,
        actor: ActingUser,
        payload: AppointmentFields,
        candidate_user_id: str,
        status: str | None,
        existing_id: str | None = None,
    ) -> LifecycleResult:
        with self._locked(candidate_user_id):
            existing = self._reload(existing_id) if existing_id else None
            if existing is not None and not _is_editable(existing):
                raise _invalid_transition('This appointment cannot be edited in its current state.')

            if has_conflict(
                self.db,
                candidate_user_id,
                payload.start_at_utc,
                payload.end_at_utc,
                exclude_appointment_id=existing_id,
            ):
                raise _conflict_error()

            before = existing.snapshot() if existing else None
            next_status = normalize_status(status or existing.status)
            if existing is None:
                audit_action = 'create_appointment'
            elif existing.status == PENDING_STATUS and next_status == SCHEDULED_STATUS:
                audit_action = 'accept_appointment'
            else:
                audit_action = 'update_appointment'

            appointment = existing or Appointment(
                candidate_user_id=candidate_user_id,
                created_by_user_id=actor.id,
            )
            self._apply_fields(appointment, payload)
            appointment.status = next_status
            self.db.add(appointment)
            self.db.flush()

            self._upsert_participant(appointment.id, candidate_user_id, CANDIDATE_ROLE)
            if actor.id != candidate_user_id:
                self._upsert_participant(appointment.id, actor.id, STAFF_ROLE)

            write_audit_event(
                self.db,
                actor_user_id=actor.id,
                action=audit_action,
                entity_type=ENTITY_TYPE,
                entity_id=appointment.id,
                before_json=before,
                after_json=appointment.snapshot(),
            )
            self._commit()

        effects = EffectsPhase(self.db, appointment.id, actor.id)
        effects.run(
            'calendar_sync',
            self._sync_calendars,
            CalendarAppointment.from_appointment(appointment),
            self.participant_user_ids(appointment),
        )
        effects.run(
            'status_notifications',
            notifications.queue_appointment_status_notifications,
            self.db,
            candidate_user_id,
            appointment.id,
            notifications.APPOINTMENT_UPDATED_EVENT if existing else notifications.APPOINTMENT_CREATED_EVENT,
            appointment.status,
        )
        if is_confirmed_status(appointment.status):
            reminder_targets = [candidate_user_id]
            if actor.is_staff and actor.id != candidate_user_id:
                reminder_targets.append(actor.id)
            effects.run(
                'reminder_notifications',
                notifications.queue_appointment_reminder_notifications,
                self.db,
                appointment.id,
                appointment.start_at_utc,
                reminder_targets,
                now=self.context.now(),
            )
        if existing is None:
            effects.run(
                'chat_message',
                self._send_chat,
                candidate_user_id,
                actor,
                chat.build_created_message(appointment),
            )

        return LifecycleResult('update' if existing else 'create', 'saved', appointment.id, appointment, effects.outcomes)

    def review(self, actor: ActingUser, appointment_id: str, decision: str) -> LifecycleResult:
        if not actor.is_staff:
            raise _forbidden()

        appointment = self.get_appointment(appointment_id)
        if decision == DECLINED_STATUS:
            return self._decline(actor, appointment)
        return self._accept(actor, appointment)

    def _accept(self, actor: ActingUser, appointment: Appointment) -> LifecycleResult:
        with self._locked(appointment.candidate_user_id):
            appointment = self._reload(appointment.id)
            if appointment.status != PENDING_STATUS:
                raise _invalid_transition('Only pending appointments can be reviewed.')

            if has_conflict(
                self.db,
                appointment.candidate_user_id,
                appointment.start_at_utc,
                appointment.end_at_utc,
                exclude_appointment_id=appointment.id,
            ):
                raise _conflict_error()

            before = appointment.snapshot()
            appointment.status = SCHEDULED_STATUS
            self._upsert_participant(appointment.id, appointment.candidate_user_id, CANDIDATE_ROLE)
            self._upsert_participant(appointment.id, actor.id, STAFF_ROLE)
            write_audit_event(
                self.db,
                actor_user_id=actor.id,
                action='accept_appointment',
                entity_type=ENTITY_TYPE,
                entity_id=appointment.id,
                before_json=before,
                after_json=appointment.snapshot(),
            )
            self._commit()

        participant_user_ids = self.participant_user_ids(appointment)
        effects = EffectsPhase(self.db, appointment.id, actor.id)
        effects.run(
            'calendar_sync',
            self._sync_calendars,
            CalendarAppointment.from_appointment(appointment),
            participant_user_ids,
        )
        effects.run(
            'status_notifications',
            notifications.queue_appointment_status_notifications,
            self.db,
            appointment.candidate_user_id,
            appointment.id,
            notifications.APPOINTMENT_UPDATED_EVENT,
            appointment.status,
        )
        effects.run(
            'reminder_notifications',
            notifications.queue_appointment_reminder_notifications,
            self.db,
            appointment.id,
            appointment.start_at_utc,
            participant_user_ids,
            now=self.context.now(),
        )
        effects.run(
            'chat_message',
            self._send_chat,
            appointment.candidate_user_id,
            actor,
            chat.build_appointment_message(
                'Appointment request accepted.',
                self.candidate_name(appointment.candidate_user_id),
                appointment,
            ),
        )
        return LifecycleResult('accept', 'saved', appointment.id, appointment, effects.outcomes)

    def _decline(self, actor: ActingUser, appointment: Appointment) -> LifecycleResult:
        appointment_id = appointment.id
        candidate_user_id = appointment.candidate_user_id

        with self._locked(candidate_user_id):
            appointment = self._reload(appointment_id)
            if appointment.status != PENDING_STATUS:
                raise _invalid_transition('Only pending appointments can be reviewed.')

            message = chat.build_appointment_message(
                'Appointment request declined.',
                self.candidate_name(candidate_user_id),
                appointment,
            )
            self._delete(actor, appointment, 'decline_appointment')

        effects = EffectsPhase(self.db, appointment_id, actor.id)
        effects.run('chat_message', self._send_chat, candidate_user_id, actor, message)
        effects.run(
            'status_notifications',
            notifications.queue_appointment_status_notifications,
            self.db,
            candidate_user_id,
            appointment_id,
            notifications.APPOINTMENT_UPDATED_EVENT,
            DECLINED_STATUS,
        )
        return LifecycleResult('decline', 'deleted', appointment_id, effects=effects.outcomes)

    def ignore_overdue(self, actor: ActingUser, appointment_id: str) -> LifecycleResult:
        appointment = self.get_appointment(appointment_id)
        self.authorize(actor, appointment)

        with self._locked(appointment.candidate_user_id):
            appointment = self._reload(appointment_id)
            if not is_overdue_confirmed(appointment, self.context.now()):
                raise _invalid_transition('This appointment cannot be ignored in its current state.')

            mirror = CalendarAppointment.from_appointment(appointment, status=CANCELLED_STATUS)
            participant_user_ids = self.participant_user_ids(appointment)
            self._delete(actor, appointment, 'ignore_overdue_appointment')

        effects = EffectsPhase(self.db, appointment_id, actor.id)
        effects.run('calendar_sync', self._sync_calendars, mirror, participant_user_ids)
        return LifecycleResult('ignore_overdue', 'deleted', appointment_id, effects=effects.outcomes)

    def cancel_outgoing_request(self, actor: ActingUser, appointment_id: str) -> LifecycleResult:
        appointment = self.get_appointment(appointment_id)
        self.authorize(actor, appointment)

        with self._locked(appointment.candidate_user_id):
            appointment = self._reload(appointment_id)
            if not _is_outgoing_request(appointment):
                raise _invalid_transition('This request cannot be canceled in its current state.')
            if not actor.is_staff and appointment.created_by_user_id != actor.id:
                raise _forbidden()

            # Pending requests were never mirrored, so there is nothing to unsync.
            self._delete(actor, appointment, 'cancel_outgoing_appointment_request')

        return LifecycleResult('cancel_outgoing_request', 'deleted', appointment_id)

    def cancel_upcoming(self, actor: ActingUser, appointment_id: str) -> LifecycleResult:
        appointment = self.get_appointment(appointment_id)
        self.authorize(actor, appointment)
        candidate_user_id = appointment.candidate_user_id

        with self._locked(candidate_user_id):
            appointment = self._reload(appointment_id)
            if not is_upcoming_confirmed(appointment, self.context.now()):
                raise _invalid_transition('This appointment cannot be canceled in its current state.')

            mirror = CalendarAppointment.from_appointment(appointment, status=CANCELLED_STATUS)
            participant_user_ids = self.participant_user_ids(appointment)
            recipients = self.cancellation_recipients(actor, appointment)
            message = chat.build_appointment_message(
                'Scheduled appointment canceled.',
                self.candidate_name(candidate_user_id),
                appointment,
            )
            self._delete(actor, appointment, 'cancel_upcoming_appointment')

        effects = EffectsPhase(self.db, appointment_id, actor.id)
        effects.run('calendar_sync', self._sync_calendars, mirror, participant_user_ids)
        effects.run('chat_message', self._send_chat, candidate_user_id, actor, message)
        effects.run(
            'cancelled_notifications',
            notifications.queue_appointment_cancelled_notifications,
            self.db,
            appointment_id,
            recipients,
        )
        return LifecycleResult('cancel_upcoming', 'deleted', appointment_id, effects=effects.outcomes)

    def staff_update(
        self,
        actor: ActingUser,
        appointment_id: str,
        payload: StaffUpdateAppointmentRequest,
    ) -> LifecycleResult:
        """Staff edit with an optional status override.

        Terminal overrides go through the same delete paths as review and
        cancel, so a ``cancelled`` row is never persisted. Cancelling a
        staff proposal that is still pending is a decline.
        """
        if not actor.is_staff:
            raise _forbidden()

        appointment = self.get_appointment(appointment_id)

        if payload.status == DECLINED_STATUS:
            return self.review(actor, appointment_id, DECLINED_STATUS)

        if payload.status == CANCELLED_STATUS:
            if _is_outgoing_request(appointment):
                return self.cancel_outgoing_request(actor, appointment_id)
            if appointment.status == PENDING_STATUS:
                return self.review(actor, appointment_id, DECLINED_STATUS)
            if is_overdue_confirmed(appointment, self.context.now()):
                return self.ignore_overdue(actor, appointment_id)
            return self.cancel_upcoming(actor, appointment_id)

        return self._save(
            actor,
            payload,
            appointment.candidate_user_id,
            payload.status,
            existing_id=appointment_id,
        )
