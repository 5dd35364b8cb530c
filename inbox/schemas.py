"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (camelCase on the wire)
- The provider webhook form model
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from inbox.utils import format_ts, is_valid_phone, normalize_phone, to_naive_utc


Channel = Literal["sms", "whatsapp"]
Direction = Literal["INBOUND", "OUTBOUND"]

# Stored as naive UTC, rendered as 2025-01-15T10:00:00.000Z
Timestamp = Annotated[datetime, PlainSerializer(format_ts, return_type=str)]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    """Base for API models: snake_case in Python, camelCase in JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ContactCreate(CamelModel):
    """
    Validates:
    - name: non-empty
    - phone: normalized, then E.164-like (optional +, 2-15 digits, no leading 0)
    - channel: sms (default) or whatsapp
    """
    name: str = Field(..., min_length=1, max_length=200)
    phone: str
    channel: Channel = "sms"

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        phone = normalize_phone(v)
        if not is_valid_phone(phone):
            raise ValueError("phone must be a valid E.164 number")
        return phone

    model_config = {
        "json_schema_extra": {
            "examples": [{"name": "Ada", "phone": "+14155550100", "channel": "sms"}]
        }
    }


class ContactUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    channel: Optional[Channel] = None


class ThreadUpdate(CamelModel):
    is_unread: Optional[bool] = None
    is_archived: Optional[bool] = None


class SendMessageRequest(CamelModel):
    contact_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=1600)
    channel: Optional[Channel] = None


class ScheduleMessageRequest(CamelModel):
    contact_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=1600)
    channel: Channel
    scheduled_for: datetime

    @field_validator("scheduled_for")
    @classmethod
    def normalize_scheduled_for(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class NoteCreate(CamelModel):
    contact_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, description="Note content required")
    is_private: bool = False


class NoteUpdate(CamelModel):
    content: Optional[str] = None
    is_private: Optional[bool] = None


class TeamMemberCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., pattern=EMAIL_PATTERN)


class TwilioWebhookForm(BaseModel):
    """
    Form fields Twilio posts for inbound messages and status callbacks.

    Field names follow Twilio's PascalCase; unknown fields are ignored.
    """
    from_: str = Field(..., alias="From", min_length=1)
    to: Optional[str] = Field(None, alias="To")
    body: Optional[str] = Field(None, alias="Body")
    message_sid: Optional[str] = Field(None, alias="MessageSid")
    sms_message_sid: Optional[str] = Field(None, alias="SmsMessageSid")
    sms_sid: Optional[str] = Field(None, alias="SmsSid")
    message_status: Optional[str] = Field(None, alias="MessageStatus")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def sid(self) -> Optional[str]:
        return self.message_sid or self.sms_message_sid or self.sms_sid or None

    @property
    def is_status_callback(self) -> bool:
        return self.message_status is not None and self.body is None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error description")
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ContactResponse(CamelModel):
    id: str
    name: str
    phone: str
    channel: Channel
    created_at: Timestamp
    updated_at: Timestamp


class ThreadResponse(CamelModel):
    id: str
    contact_id: str
    channel: Channel
    is_unread: bool
    is_archived: bool
    last_message_at: Optional[Timestamp] = None
    created_at: Timestamp
    updated_at: Timestamp


class ThreadWithContactResponse(ThreadResponse):
    contact: ContactResponse


class MessageResponse(CamelModel):
    id: str
    thread_id: str
    body: str
    direction: Direction
    channel: Channel
    twilio_sid: Optional[str] = None
    status: str
    scheduled_for: Optional[Timestamp] = None
    created_at: Timestamp


class ScheduledMessageResponse(MessageResponse):
    thread: ThreadWithContactResponse


class SendMessageResponse(CamelModel):
    success: bool = True
    message: MessageResponse


class NoteResponse(CamelModel):
    id: str
    contact_id: str
    content: str
    is_private: bool
    created_at: Timestamp
    updated_at: Timestamp


class TeamMemberResponse(CamelModel):
    id: str
    name: str
    email: str


class ChannelCount(CamelModel):
    channel: Channel
    count: int = Field(..., ge=0)


class DayChannelCount(CamelModel):
    date: str
    channel: Channel
    count: int = Field(..., ge=0)


class AnalyticsResponse(CamelModel):
    """
    Response model for GET /api/analytics.

    avg_response_time is in seconds: for inbound messages answered in the
    same thread, the mean gap to the first outbound reply.
    """
    total_messages: int = Field(..., ge=0)
    inbound_count: int = Field(..., ge=0)
    outbound_count: int = Field(..., ge=0)
    contacts_count: int = Field(..., ge=0)
    avg_response_time: float = Field(..., ge=0)
    avg_response_time_minutes: int = Field(..., ge=0)
    messages_by_channel: list[ChannelCount] = Field(default_factory=list)
    messages_by_day: list[DayChannelCount] = Field(default_factory=list)


class ContactStats(CamelModel):
    total_messages: int
    last_message_at: Optional[Timestamp] = None
    first_message_at: Optional[Timestamp] = None
    thread_count: int
    channels: list[Channel]
    inbound_count: int
    outbound_count: int
    avg_response_time_minutes: int


class ProfileMeta(CamelModel):
    fetched_at: Timestamp
    response_time_ms: float


class ContactProfileResponse(ContactResponse):
    notes: list[NoteResponse]
    threads: list[ThreadResponse]
    messages: list[MessageResponse]
    stats: ContactStats
    meta: ProfileMeta = Field(..., alias="_meta")


class CronResult(CamelModel):
    id: str
    status: str
    error: Optional[str] = None


class CronResponse(CamelModel):
    processed: int
    results: list[CronResult]


# =============================================================================
# Auth Models
# =============================================================================

class SignUpRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str


class SignInRequest(CamelModel):
    email: str
    password: str


class SocialSignInRequest(CamelModel):
    provider: Optional[str] = None
    callback_url: str = "/dashboard"


class SocialSignInResponse(BaseModel):
    url: str


class UserResponse(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    image: Optional[str] = None


class SessionInfo(CamelModel):
    id: str
    expires_at: Timestamp


class SessionResponse(CamelModel):
    user: UserResponse
    session: SessionInfo
