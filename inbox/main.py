import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from twilio.base.exceptions import TwilioException
from twilio.twiml.messaging_response import MessagingResponse

from inbox import storage
from inbox.auth import router as auth_router
from inbox.config import settings
from inbox.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from inbox.messaging import MessagingNotConfigured, TwilioSender, get_sender
from inbox.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_outbound,
    record_scheduled_sweep,
    record_webhook_outcome,
)
from inbox.schemas import (
    AnalyticsResponse,
    ContactCreate,
    ContactProfileResponse,
    ContactResponse,
    ContactStats,
    ContactUpdate,
    CronResponse,
    CronResult,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    NoteCreate,
    NoteResponse,
    NoteUpdate,
    ProfileMeta,
    ScheduledMessageResponse,
    ScheduleMessageRequest,
    SendMessageRequest,
    SendMessageResponse,
    TeamMemberCreate,
    TeamMemberResponse,
    ThreadResponse,
    ThreadUpdate,
    ThreadWithContactResponse,
    TwilioWebhookForm,
)
from inbox.storage import ThreadResolutionError, check_db_health, get_db, init_db
from inbox.utils import (
    channel_from_address,
    normalize_phone,
    utcnow,
    verify_twilio_signature,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Unified Inbox API",
    description="Contacts, SMS/WhatsApp threads, notes and analytics over Twilio",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(auth_router)

NOT_FOUND = {404: {"model": ErrorResponse}}
BAD_REQUEST = {400: {"model": ErrorResponse}}


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid data", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def _require_contact(db: Session, contact_id: str):
    contact = storage.get_contact(db, contact_id)
    if contact is None:
        raise _not_found("Contact")
    return contact


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. DB is reachable and schema is applied
    2. AUTH_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.AUTH_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="AUTH_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/api/contacts", response_model=list[ContactResponse])
async def list_contacts(db: Session = Depends(get_db)):
    """All contacts, newest first."""
    return storage.list_contacts(db)


@app.post(
    "/api/contacts",
    response_model=ContactResponse,
    status_code=status.HTTP_201_CREATED,
    responses=BAD_REQUEST,
)
async def create_contact(payload: ContactCreate, db: Session = Depends(get_db)):
    """
    Create a contact.

    The phone is normalized before validation; a second contact for the
    same number is rejected with 400.
    """
    contact, is_duplicate = storage.create_contact(
        db, name=payload.name, phone=payload.phone, channel=payload.channel
    )
    if is_duplicate:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A contact with this phone number already exists",
        )
    return contact


@app.get("/api/contacts/{contact_id}", response_model=ContactResponse, responses=NOT_FOUND)
async def get_contact(contact_id: str, db: Session = Depends(get_db)):
    return _require_contact(db, contact_id)


@app.patch("/api/contacts/{contact_id}", response_model=ContactResponse, responses=NOT_FOUND)
async def update_contact(contact_id: str, payload: ContactUpdate, db: Session = Depends(get_db)):
    contact = _require_contact(db, contact_id)
    return storage.update_contact(db, contact, name=payload.name, channel=payload.channel)


@app.delete("/api/contacts/{contact_id}", response_model=ContactResponse, responses=NOT_FOUND)
async def delete_contact(contact_id: str, db: Session = Depends(get_db)):
    """Delete a contact together with its threads, messages and notes."""
    contact = _require_contact(db, contact_id)
    deleted = ContactResponse.model_validate(contact)
    storage.delete_contact(db, contact)
    logger.info(f"Contact deleted: {contact_id}")
    return deleted


@app.get(
    "/api/contacts/{contact_id}/profile",
    response_model=ContactProfileResponse,
    responses=NOT_FOUND,
)
async def get_contact_profile(contact_id: str, db: Session = Depends(get_db)):
    """
    Contact with notes, threads, messages (newest first) and stats.

    stats.avgResponseTimeMinutes averages the gap between an inbound
    message and the outbound message that directly follows it.
    """
    start_time = time.perf_counter()
    profile = storage.get_contact_profile(db, contact_id)
    if profile is None:
        logger.warning(f"Profile requested for unknown contact: {contact_id}")
        raise _not_found("Contact")

    logger.info(f"Profile for {contact_id}: {profile['stats']['total_messages']} messages")

    return ContactProfileResponse(
        **ContactResponse.model_validate(profile["contact"]).model_dump(),
        notes=[NoteResponse.model_validate(n) for n in profile["notes"]],
        threads=[ThreadResponse.model_validate(t) for t in profile["threads"]],
        messages=[MessageResponse.model_validate(m) for m in profile["messages"]],
        stats=ContactStats(**profile["stats"]),
        meta=ProfileMeta(
            fetched_at=utcnow(),
            response_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        ),
    )


# =============================================================================
# Thread Routes
# =============================================================================

@app.get("/api/threads", response_model=ThreadResponse, responses={**BAD_REQUEST, **NOT_FOUND})
async def get_or_create_thread(
    contact_id: Annotated[Optional[str], Query(alias="contactId")] = None,
    channel: Annotated[str, Query()] = "sms",
    db: Session = Depends(get_db),
):
    """Find the thread for a contact and channel, creating it on first use."""
    if not contact_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Contact ID is required")
    if channel not in ("sms", "whatsapp"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid channel. Must be either "sms" or "whatsapp"',
        )

    _require_contact(db, contact_id)
    try:
        return storage.find_or_create_thread(db, contact_id, channel)
    except ThreadResolutionError as e:
        logger.error(f"Thread resolution failed for contact={contact_id}, channel={channel}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch thread")


@app.get("/api/threads/list", response_model=list[ThreadWithContactResponse])
async def list_threads(archived: bool = False, db: Session = Depends(get_db)):
    """Inbox view: threads with their contact, most recent activity first."""
    return storage.list_threads(db, archived=archived)


@app.patch("/api/threads/{thread_id}", response_model=ThreadResponse, responses=NOT_FOUND)
async def update_thread(thread_id: str, payload: ThreadUpdate, db: Session = Depends(get_db)):
    thread = storage.get_thread(db, thread_id)
    if thread is None:
        raise _not_found("Thread")
    return storage.update_thread(db, thread, is_unread=payload.is_unread, is_archived=payload.is_archived)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages", response_model=list[MessageResponse], responses={**BAD_REQUEST, **NOT_FOUND})
async def list_messages(
    thread_id: Annotated[Optional[str], Query(alias="threadId")] = None,
    db: Session = Depends(get_db),
):
    """Messages of a thread, oldest first."""
    if not thread_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="threadId required")
    if storage.get_thread(db, thread_id) is None:
        raise _not_found("Thread")

    messages = storage.get_thread_messages(db, thread_id)
    logger.debug(f"Retrieved {len(messages)} messages for thread {thread_id}")
    return messages


@app.post("/api/messages/send", response_model=SendMessageResponse, responses=NOT_FOUND)
def send_message(
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    sender: TwilioSender = Depends(get_sender),
):
    """
    Send a message to a contact through Twilio and store it.

    The channel defaults to the contact's preferred channel. Nothing is
    stored when the provider rejects the message.
    """
    contact = _require_contact(db, payload.contact_id)
    channel = payload.channel or contact.channel or "sms"

    try:
        sid = sender.send(channel, contact.phone, payload.body)
    except (TwilioException, MessagingNotConfigured) as e:
        logger.error(f"Send to contact {contact.id} over {channel} failed: {e}")
        record_outbound(channel, "failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to send", "details": str(e)},
        )

    record_outbound(channel, "sent")
    thread = storage.find_or_create_thread(db, contact.id, channel)
    message = storage.create_outbound_message(
        db, thread, body=payload.body, channel=channel, status="sent", twilio_sid=sid
    )
    return SendMessageResponse(message=MessageResponse.model_validate(message))


@app.post(
    "/api/messages/schedule",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**BAD_REQUEST, **NOT_FOUND},
)
async def schedule_message(payload: ScheduleMessageRequest, db: Session = Depends(get_db)):
    """Queue an outbound message; the cron sweep sends it once due."""
    contact = _require_contact(db, payload.contact_id)
    thread = storage.find_or_create_thread(db, contact.id, payload.channel)
    message = storage.create_outbound_message(
        db,
        thread,
        body=payload.body,
        channel=payload.channel,
        status="scheduled",
        scheduled_for=payload.scheduled_for,
    )
    logger.info(f"Message {message.id} scheduled for {payload.scheduled_for.isoformat()}")
    return message


@app.get("/api/messages/schedule", response_model=list[ScheduledMessageResponse])
async def list_due_scheduled_messages(db: Session = Depends(get_db)):
    """Scheduled messages that are due, with their thread and contact."""
    return storage.due_scheduled_messages(db)


# =============================================================================
# Cron Route
# =============================================================================

@app.get("/api/cron/send-scheduled", response_model=CronResponse)
def send_scheduled_messages(
    authorization: Annotated[Optional[str], Header()] = None,
    db: Session = Depends(get_db),
    sender: TwilioSender = Depends(get_sender),
) -> CronResponse:
    """
    Send every due scheduled message.

    A failure on one message marks it failed and the sweep moves on.
    When CRON_SECRET is set the caller must present it as a bearer token.
    """
    if settings.CRON_SECRET:
        expected = f"Bearer {settings.CRON_SECRET}"
        if not authorization or not secrets.compare_digest(
            authorization.encode("utf-8"), expected.encode("utf-8")
        ):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    record_scheduled_sweep()
    results = []

    for message in storage.due_scheduled_messages(db):
        try:
            sid = sender.send(message.channel, message.thread.contact.phone, message.body)
            storage.mark_scheduled_sent(db, message, sid)
        except Exception as e:
            db.rollback()
            logger.exception(f"Failed to send scheduled message {message.id}")
            storage.mark_message_failed(db, message)
            record_outbound(message.channel, "failed")
            results.append(CronResult(id=message.id, status="failed", error=str(e) or "Unknown error occurred"))
            continue

        record_outbound(message.channel, "sent")
        results.append(CronResult(id=message.id, status="sent"))

    logger.info(f"Scheduled sweep processed {len(results)} messages")
    return CronResponse(processed=len(results), results=results)


# =============================================================================
# Note Routes
# =============================================================================

@app.get("/api/notes", response_model=list[NoteResponse], responses=BAD_REQUEST)
async def list_notes(
    contact_id: Annotated[Optional[str], Query(alias="contactId")] = None,
    db: Session = Depends(get_db),
):
    if not contact_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="contactId required")
    return storage.list_notes(db, contact_id)


@app.post(
    "/api/notes",
    response_model=NoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**BAD_REQUEST, **NOT_FOUND},
)
async def create_note(payload: NoteCreate, db: Session = Depends(get_db)):
    _require_contact(db, payload.contact_id)
    return storage.create_note(db, payload.contact_id, payload.content, payload.is_private)


@app.patch("/api/notes/{note_id}", response_model=NoteResponse, responses=NOT_FOUND)
async def update_note(note_id: str, payload: NoteUpdate, db: Session = Depends(get_db)):
    note = storage.get_note(db, note_id)
    if note is None:
        raise _not_found("Note")
    return storage.update_note(db, note, content=payload.content, is_private=payload.is_private)


@app.delete("/api/notes/{note_id}", response_model=NoteResponse, responses=NOT_FOUND)
async def delete_note(note_id: str, db: Session = Depends(get_db)):
    note = storage.get_note(db, note_id)
    if note is None:
        raise _not_found("Note")
    deleted = NoteResponse.model_validate(note)
    storage.delete_note(db, note)
    return deleted


# =============================================================================
# Team Member Routes
# =============================================================================

@app.get("/api/team/members", response_model=list[TeamMemberResponse])
async def list_team_members(db: Session = Depends(get_db)):
    """Team members ordered by name, for @mentions in notes."""
    return storage.list_team_members(db)


@app.post(
    "/api/team/members",
    response_model=TeamMemberResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
async def create_team_member(payload: TeamMemberCreate, db: Session = Depends(get_db)):
    member, is_duplicate = storage.create_team_member(db, payload.name, payload.email)
    if is_duplicate:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A team member with this email already exists",
        )
    return member


# =============================================================================
# Analytics Route
# =============================================================================

@app.get("/api/analytics", response_model=AnalyticsResponse)
async def get_analytics(db: Session = Depends(get_db)) -> AnalyticsResponse:
    """
    Dashboard analytics:
        - totalMessages, inboundCount, outboundCount, contactsCount
        - messagesByChannel, messagesByDay (last 7 days)
        - avgResponseTime (seconds) and avgResponseTimeMinutes
    """
    return AnalyticsResponse(**storage.get_analytics(db))


# =============================================================================
# Twilio Webhook Route
# =============================================================================

def _twiml_ack() -> Response:
    return Response(content=str(MessagingResponse()), media_type="text/xml")


@app.post(
    "/api/webhooks/twilio",
    responses={
        400: {"model": ErrorResponse, "description": "Missing From"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def twilio_webhook(
    request: Request,
    x_twilio_signature: Annotated[Optional[str], Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
) -> Response:
    """
    Receive inbound messages and delivery status callbacks from Twilio.

    Inbound messages upsert the sender as a contact, land in the contact's
    thread for the channel and mark it unread. Replayed MessageSids are
    acknowledged without storing a second copy.
    """
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}

    if settings.TWILIO_VALIDATE_SIGNATURE and not verify_twilio_signature(
        str(request.url), params, x_twilio_signature, settings.TWILIO_AUTH_TOKEN
    ):
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        payload = TwilioWebhookForm.model_validate(params)
    except ValidationError as e:
        logger.error(f"Invalid webhook payload: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid data", "details": jsonable_encoder(e.errors())},
        )

    if payload.is_status_callback:
        found = payload.sid is not None and storage.update_message_status_by_sid(
            db, payload.sid, payload.message_status
        )
        record_webhook_outcome("status_update")
        log_webhook_data(request, message_sid=payload.sid, result="status_update" if found else "unknown_sid")
        return _twiml_ack()

    channel = channel_from_address(payload.from_, payload.to)
    phone = normalize_phone(payload.from_)
    logger.info(f"Inbound {channel} message from {phone}, sid={payload.sid}")

    try:
        message, is_duplicate = storage.record_inbound_message(
            db, phone=phone, channel=channel, body=payload.body or "", twilio_sid=payload.sid
        )
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to store inbound message {payload.sid}")
        record_webhook_outcome("error")
        log_webhook_data(request, message_sid=payload.sid, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "details": str(e)},
        )

    result = "duplicate" if is_duplicate else "created"
    record_webhook_outcome(result)
    log_webhook_data(request, message_sid=payload.sid, dup=is_duplicate, result=result)
    return _twiml_ack()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
