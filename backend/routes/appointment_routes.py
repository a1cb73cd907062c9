from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError

from backend.auth.dependencies import ActingUser, get_current_user, require_staff
from backend.models.appointment import Appointment
from backend.routes.dependencies import database_unavailable, ensure_database_ready, get_service_context
from backend.schemas import (
    AppointmentMutationResponse,
    AppointmentResponse,
    CandidateSectionsResponse,
    LifecycleActionRequest,
    ReviewAppointmentRequest,
    ScheduleAppointmentRequest,
    StaffSectionsResponse,
    StaffUpdateAppointmentRequest,
)
from backend.services.context import ServiceContext
from backend.services.lifecycle import AppointmentLifecycle, LifecycleResult
from backend.services.sections import (
    bucket_candidate_appointments,
    bucket_staff_appointments,
    should_hide_expired_appointment,
)

router = APIRouter(tags=['appointments'])


def serialize(appointments: list[Appointment]) -> list[AppointmentResponse]:
    return [AppointmentResponse.model_validate(appointment) for appointment in appointments]


def to_mutation_response(result: LifecycleResult) -> AppointmentMutationResponse:
    return AppointmentMutationResponse(
        action=result.action,
        result=result.result,
        appointment_id=result.appointment_id,
        appointment=AppointmentResponse.model_validate(result.appointment) if result.appointment else None,
        effects=[
            {'name': outcome.name, 'ok': outcome.ok, 'error': outcome.error}
            for outcome in result.effects
        ],
    )


def run_lifecycle(operation, *args) -> AppointmentMutationResponse:
    ensure_database_ready()

    try:
        return to_mutation_response(operation(*args))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=AppointmentMutationResponse, status_code=status.HTTP_200_OK)
def schedule_or_update_appointment(
    data: ScheduleAppointmentRequest,
    current_user: ActingUser = Depends(get_current_user),
    context: ServiceContext = Depends(get_service_context),
):
    return run_lifecycle(AppointmentLifecycle(context).schedule_or_update, current_user, data)


@router.post('/{appointment_id}/review', response_model=AppointmentMutationResponse)
def review_appointment(
    appointment_id: str,
    data: ReviewAppointmentRequest,
    current_user: ActingUser = Depends(require_staff),
    context: ServiceContext = Depends(get_service_context),
):
    return run_lifecycle(AppointmentLifecycle(context).review, current_user, appointment_id, data.decision)


@router.put('/{appointment_id}', response_model=AppointmentMutationResponse)
def staff_update_appointment(
    appointment_id: str,
    data: StaffUpdateAppointmentRequest,
    current_user: ActingUser = Depends(require_staff),
    context: ServiceContext = Depends(get_service_context),
):
    return run_lifecycle(AppointmentLifecycle(context).staff_update, current_user, appointment_id, data)


@router.post('/{appointment_id}/lifecycle', response_model=AppointmentMutationResponse)
def manage_appointment_lifecycle(
    appointment_id: str,
    data: LifecycleActionRequest,
    current_user: ActingUser = Depends(get_current_user),
    context: ServiceContext = Depends(get_service_context),
):
    lifecycle = AppointmentLifecycle(context)
    operation = {
        'ignore_overdue': lifecycle.ignore_overdue,
        'cancel_outgoing_request': lifecycle.cancel_outgoing_request,
        'cancel_upcoming': lifecycle.cancel_upcoming,
    }[data.action]
    return run_lifecycle(operation, current_user, appointment_id)


@router.get('/sections', response_model=CandidateSectionsResponse | StaffSectionsResponse)
def list_appointment_sections(
    current_user: ActingUser = Depends(get_current_user),
    context: ServiceContext = Depends(get_service_context),
):
    ensure_database_ready()

    try:
        query = context.db.query(Appointment)
        if not current_user.is_staff:
            query = query.filter(Appointment.candidate_user_id == current_user.id)
        now = context.now()
        appointments = [
            appointment
            for appointment in query.order_by(Appointment.start_at_utc.asc()).all()
            if not should_hide_expired_appointment(appointment, now)
        ]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if current_user.is_staff:
        sections = bucket_staff_appointments(appointments, now)
        return StaffSectionsResponse(
            needs_attention=sections.needs_attention,
            overdue_confirmed=serialize(sections.overdue_confirmed),
            incoming_requests=serialize(sections.incoming_requests),
            upcoming_appointments=serialize(sections.upcoming_appointments),
        )

    sections = bucket_candidate_appointments(appointments, current_user.id, now)
    return CandidateSectionsResponse(
        needs_attention=sections.needs_attention,
        overdue_confirmed=serialize(sections.overdue_confirmed),
        outgoing_requests=serialize(sections.outgoing_requests),
        upcoming_appointments=serialize(sections.upcoming_appointments),
    )
