from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, field_validator, model_validator

from backend.models.appointment import IN_PERSON_MODALITY, VIRTUAL_MODALITY, normalize_status

MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 2000
MAX_LOCATION_LENGTH = 255
MAX_VIDEO_URL_LENGTH = 500
MAX_TIMEZONE_LABEL_LENGTH = 64


def _strip_optional(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


class AppointmentFields(BaseModel):
    title: str
    description: str | None = None
    modality: Literal['virtual', 'in_person']
    location_text: str | None = None
    video_url: str | None = None
    start_at_utc: datetime
    end_at_utc: datetime
    timezone_label: str

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Title is required.')
        if len(normalized) > MAX_TITLE_LENGTH:
            raise ValueError(f'Title must be {MAX_TITLE_LENGTH} characters or fewer.')
        return normalized

    @field_validator('description')
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        return _strip_optional(value, MAX_DESCRIPTION_LENGTH, 'Description')

    @field_validator('location_text')
    @classmethod
    def validate_location_text(cls, value: str | None) -> str | None:
        return _strip_optional(value, MAX_LOCATION_LENGTH, 'Location')

    @field_validator('video_url')
    @classmethod
    def validate_video_url(cls, value: str | None) -> str | None:
        normalized = _strip_optional(value, MAX_VIDEO_URL_LENGTH, 'Video URL')
        if normalized and not normalized.startswith(('http://', 'https://')):
            raise ValueError('Video URL must be an http(s) link.')
        return normalized

    @field_validator('timezone_label')
    @classmethod
    def validate_timezone_label(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or len(normalized) > MAX_TIMEZONE_LABEL_LENGTH:
            raise ValueError('Timezone label is required.')
        return normalized

    @field_validator('start_at_utc', 'end_at_utc')
    @classmethod
    def validate_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode='after')
    def validate_range_and_modality(self) -> 'AppointmentFields':
        if self.end_at_utc <= self.start_at_utc:
            raise ValueError('end_at_utc must be after start_at_utc')
        if self.modality == VIRTUAL_MODALITY and not self.video_url:
            raise ValueError('video_url required for virtual appointments')
        if self.modality == IN_PERSON_MODALITY and not self.location_text:
            raise ValueError('location_text required for in-person appointments')
        return self


class ScheduleAppointmentRequest(AppointmentFields):
    id: str | None = None
    candidate_user_id: str | None = None
    status: Literal['pending', 'scheduled', 'accepted'] | None = None

    @field_validator('status')
    @classmethod
    def normalize_confirmed_status(cls, value: str | None) -> str | None:
        return normalize_status(value)


class StaffUpdateAppointmentRequest(AppointmentFields):
    status: Literal['scheduled', 'accepted', 'declined', 'cancelled'] | None = None

    @field_validator('status')
    @classmethod
    def normalize_confirmed_status(cls, value: str | None) -> str | None:
        return normalize_status(value)


class ReviewAppointmentRequest(BaseModel):
    decision: Literal['accepted', 'scheduled', 'declined']

    @field_validator('decision')
    @classmethod
    def normalize_decision(cls, value: str) -> str:
        return normalize_status(value)


class LifecycleActionRequest(BaseModel):
    action: Literal['ignore_overdue', 'cancel_outgoing_request', 'cancel_upcoming']


class ConnectCalendarRequest(BaseModel):
    provider: str
    oauth_code: str | None = None
    oauth_tokens: dict[str, Any] | None = None

    @field_validator('provider')
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('oauth_code')
    @classmethod
    def validate_oauth_code(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode='after')
    def require_credentials(self) -> 'ConnectCalendarRequest':
        if not self.oauth_code and not self.oauth_tokens:
            raise ValueError('oauth_code or oauth_tokens is required.')
        return self


class AppointmentResponse(BaseModel):
    id: str
    title: str
    description: str | None = None
    modality: str
    location_text: str | None = None
    video_url: str | None = None
    start_at_utc: datetime
    end_at_utc: datetime
    timezone_label: str
    status: str
    candidate_user_id: str
    created_by_user_id: str

    @field_validator('start_at_utc', 'end_at_utc')
    @classmethod
    def attach_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    class Config:
        from_attributes = True


class EffectOutcomeResponse(BaseModel):
    name: str
    ok: bool
    error: str | None = None


class AppointmentMutationResponse(BaseModel):
    success: bool = True
    action: str
    result: Literal['saved', 'deleted']
    appointment_id: str
    appointment: AppointmentResponse | None = None
    effects: list[EffectOutcomeResponse] = []


class CandidateSectionsResponse(BaseModel):
    role: Literal['candidate'] = 'candidate'
    needs_attention: bool
    overdue_confirmed: list[AppointmentResponse]
    outgoing_requests: list[AppointmentResponse]
    upcoming_appointments: list[AppointmentResponse]


class StaffSectionsResponse(BaseModel):
    role: Literal['staff'] = 'staff'
    needs_attention: bool
    overdue_confirmed: list[AppointmentResponse]
    incoming_requests: list[AppointmentResponse]
    upcoming_appointments: list[AppointmentResponse]


class CalendarConnectionResponse(BaseModel):
    id: str
    user_id: str
    provider: str
    sync_state: dict | None = None

    class Config:
        from_attributes = True
