import logging
from datetime import datetime, timedelta
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, event, func, inspect, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, declarative_base, selectinload, sessionmaker

from inbox.config import settings
from inbox.utils import utcnow

logger = logging.getLogger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("contacts", "threads", "messages", "notes", "team_members")


class ThreadResolutionError(RuntimeError):
    """Raised when a thread can be neither created nor found."""


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import inbox.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Contact Repository Functions
# =============================================================================

def list_contacts(db: Session) -> list:
    from inbox.models import Contact

    return db.query(Contact).order_by(Contact.created_at.desc()).all()


def get_contact(db: Session, contact_id: str):
    from inbox.models import Contact

    return db.get(Contact, contact_id)


def get_contact_by_phone(db: Session, phone: str):
    from inbox.models import Contact

    return db.query(Contact).filter(Contact.phone == phone).first()


def create_contact(db: Session, name: str, phone: str, channel: str = "sms") -> Tuple[Optional[object], bool]:
    """
    Create a contact unless one already exists for the phone number.

    Returns:
        Tuple of (contact, is_duplicate)
        - (Contact, False): created
        - (None, True): a contact with this phone already exists
    """
    from inbox.models import Contact

    if get_contact_by_phone(db, phone) is not None:
        logger.info(f"Contact already exists for phone {phone}")
        return None, True

    contact = Contact(name=name, phone=phone, channel=channel)
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Contact created concurrently for phone {phone}")
        return None, True

    db.refresh(contact)
    logger.info(f"Contact created: {contact.id}")
    return contact, False


def update_contact(db: Session, contact, **fields):
    for key, value in fields.items():
        if value is not None:
            setattr(contact, key, value)
    db.commit()
    db.refresh(contact)
    return contact


def delete_contact(db: Session, contact) -> None:
    db.delete(contact)
    db.commit()


def upsert_contact_by_phone(db: Session, phone: str, channel: str):
    """
    Return the contact for a phone number, creating it (named after the
    phone) when absent. Existing contacts are left untouched.
    """
    from inbox.models import Contact

    contact = get_contact_by_phone(db, phone)
    if contact is not None:
        return contact

    contact = Contact(name=phone, phone=phone, channel=channel)
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        contact = get_contact_by_phone(db, phone)
        if contact is None:
            raise
        return contact

    db.refresh(contact)
    logger.info(f"Contact created from inbound message: {contact.id}")
    return contact


# =============================================================================
# Thread Repository Functions
# =============================================================================

def get_thread(db: Session, thread_id: str):
    from inbox.models import Thread

    return db.get(Thread, thread_id)


def _find_thread(db: Session, contact_id: str, channel: str):
    from inbox.models import Thread

    return (
        db.query(Thread)
        .filter(Thread.contact_id == contact_id, Thread.channel == channel)
        .first()
    )


def find_or_create_thread(db: Session, contact_id: str, channel: str, **defaults):
    """
    Return the thread for (contact_id, channel), creating it if needed.

    A concurrent request may insert the same thread between our lookup and
    insert; the unique constraint rejects the second insert, so we roll back
    and read the winner's row.

    Raises:
        ThreadResolutionError: the insert failed and no thread exists
    """
    from inbox.models import Thread

    thread = _find_thread(db, contact_id, channel)
    if thread is not None:
        return thread

    logger.info(f"Creating thread for contact={contact_id}, channel={channel}")
    thread = Thread(contact_id=contact_id, channel=channel, **defaults)
    db.add(thread)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Thread insert conflict for contact={contact_id}, channel={channel}: {e.orig}")
        thread = _find_thread(db, contact_id, channel)
        if thread is None:
            raise ThreadResolutionError("Failed to create or find thread") from e
        return thread

    db.refresh(thread)
    return thread


def list_threads(db: Session, archived: bool = False) -> list:
    from inbox.models import Thread

    return (
        db.query(Thread)
        .options(selectinload(Thread.contact))
        .filter(Thread.is_archived == archived)
        .order_by(Thread.last_message_at.is_(None), Thread.last_message_at.desc())
        .all()
    )


def update_thread(db: Session, thread, is_unread: Optional[bool] = None, is_archived: Optional[bool] = None):
    if is_unread is not None:
        thread.is_unread = is_unread
    if is_archived is not None:
        thread.is_archived = is_archived
    db.commit()
    db.refresh(thread)
    return thread


# =============================================================================
# Message Repository Functions
# =============================================================================

def get_thread_messages(db: Session, thread_id: str) -> list:
    from inbox.models import Message

    return (
        db.query(Message)
        .filter(Message.thread_id == thread_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def record_inbound_message(
    db: Session,
    phone: str,
    channel: str,
    body: str,
    twilio_sid: Optional[str] = None,
) -> Tuple[object, bool]:
    """
    Store an inbound provider message (idempotent on twilio_sid).

    Upserts the contact, finds or creates its thread for the channel,
    stores the message and marks the thread unread.

    Returns:
        Tuple of (message_or_none, is_duplicate)
    """
    from inbox.models import Message

    contact = upsert_contact_by_phone(db, phone, channel)
    now = utcnow()
    thread = find_or_create_thread(
        db, contact.id, channel, is_unread=True, last_message_at=now
    )

    message = Message(
        thread_id=thread.id,
        body=body,
        direction="INBOUND",
        channel=channel,
        twilio_sid=twilio_sid or None,
        status="received",
        created_at=now,
    )
    db.add(message)
    thread.is_unread = True
    thread.last_message_at = now
    try:
        db.commit()
    except IntegrityError:
        # twilio_sid already stored - provider retried the webhook
        db.rollback()
        logger.info(f"Duplicate inbound message detected: {twilio_sid}")
        return None, True

    db.refresh(message)
    logger.info(f"Inbound message stored: {message.id} in thread {thread.id}")
    return message, False


def create_outbound_message(
    db: Session,
    thread,
    body: str,
    channel: str,
    status: str,
    twilio_sid: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
):
    from inbox.models import Message

    message = Message(
        thread_id=thread.id,
        body=body,
        direction="OUTBOUND",
        channel=channel,
        twilio_sid=twilio_sid,
        status=status,
        scheduled_for=scheduled_for,
    )
    db.add(message)
    if status == "sent":
        thread.last_message_at = utcnow()
    db.commit()
    db.refresh(message)
    logger.info(f"Outbound message stored: {message.id}, status={status}")
    return message


def update_message_status_by_sid(db: Session, twilio_sid: str, status: str) -> bool:
    """Apply a provider delivery status. Returns False if no message has the sid."""
    from inbox.models import Message

    message = db.query(Message).filter(Message.twilio_sid == twilio_sid).first()
    if message is None:
        logger.warning(f"Status callback for unknown message sid: {twilio_sid}")
        return False
    message.status = status
    db.commit()
    logger.info(f"Message {message.id} status -> {status}")
    return True


def due_scheduled_messages(db: Session, now: Optional[datetime] = None) -> list:
    """Scheduled messages whose send time has passed, with thread and contact loaded."""
    from inbox.models import Message, Thread

    now = now or utcnow()
    return (
        db.query(Message)
        .options(selectinload(Message.thread).selectinload(Thread.contact))
        .filter(Message.status == "scheduled", Message.scheduled_for <= now)
        .order_by(Message.scheduled_for.asc())
        .all()
    )


def mark_scheduled_sent(db: Session, message, twilio_sid: str) -> None:
    message.status = "sent"
    message.twilio_sid = twilio_sid
    message.thread.last_message_at = utcnow()
    db.commit()


def mark_message_failed(db: Session, message) -> None:
    message.status = "failed"
    db.commit()


# =============================================================================
# Note Repository Functions
# =============================================================================

def list_notes(db: Session, contact_id: str) -> list:
    from inbox.models import Note

    return (
        db.query(Note)
        .filter(Note.contact_id == contact_id)
        .order_by(Note.created_at.desc())
        .all()
    )


def get_note(db: Session, note_id: str):
    from inbox.models import Note

    return db.get(Note, note_id)


def create_note(db: Session, contact_id: str, content: str, is_private: bool = False):
    from inbox.models import Note

    note = Note(contact_id=contact_id, content=content, is_private=is_private)
    db.add(note)
    db.commit()
    db.refresh(note)
    return note


def update_note(db: Session, note, content: Optional[str] = None, is_private: Optional[bool] = None):
    # Empty content is ignored rather than blanking the note
    if content:
        note.content = content
    if is_private is not None:
        note.is_private = is_private
    db.commit()
    db.refresh(note)
    return note


def delete_note(db: Session, note) -> None:
    db.delete(note)
    db.commit()


# =============================================================================
# Team Member Repository Functions
# =============================================================================

def list_team_members(db: Session) -> list:
    from inbox.models import TeamMember

    return db.query(TeamMember).order_by(TeamMember.name.asc()).all()


def create_team_member(db: Session, name: str, email: str) -> Tuple[Optional[object], bool]:
    from inbox.models import TeamMember

    member = TeamMember(name=name, email=email.lower())
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None, True
    db.refresh(member)
    return member, False


# =============================================================================
# Analytics
# =============================================================================

def _average_response_seconds(db: Session, thread_ids: Optional[list] = None) -> float:
    """
    Mean gap between each inbound message and the first later outbound
    message in the same thread. Inbound messages never answered are skipped.
    """
    from inbox.models import Message

    reply = aliased(Message)
    first_reply = (
        select(func.min(reply.created_at))
        .where(
            reply.thread_id == Message.thread_id,
            reply.direction == "OUTBOUND",
            reply.created_at > Message.created_at,
        )
        .correlate(Message)
        .scalar_subquery()
    )
    query = db.query(Message.created_at, first_reply).filter(Message.direction == "INBOUND")
    if thread_ids is not None:
        query = query.filter(Message.thread_id.in_(thread_ids))

    gaps = [
        (replied_at - received_at).total_seconds()
        for received_at, replied_at in query.all()
        if replied_at is not None
    ]
    return sum(gaps) / len(gaps) if gaps else 0.0


def get_analytics(db: Session, days: int = 7) -> dict:
    """
    Dashboard figures:
    - message totals by direction, contact count
    - messages per channel
    - messages per day and channel over the last `days` days
    - average response time to inbound messages
    """
    from inbox.models import Contact, Message

    logger.info("Computing analytics")

    total_messages = db.query(func.count(Message.id)).scalar() or 0
    inbound_count = db.query(func.count(Message.id)).filter(Message.direction == "INBOUND").scalar() or 0
    outbound_count = db.query(func.count(Message.id)).filter(Message.direction == "OUTBOUND").scalar() or 0
    contacts_count = db.query(func.count(Contact.id)).scalar() or 0

    by_channel = (
        db.query(Message.channel, func.count(Message.id).label("count"))
        .group_by(Message.channel)
        .order_by(Message.channel.asc())
        .all()
    )

    since = utcnow() - timedelta(days=days)
    day = func.date(Message.created_at)
    by_day = (
        db.query(day.label("date"), Message.channel, func.count(Message.id).label("count"))
        .filter(Message.created_at >= since)
        .group_by(day, Message.channel)
        .order_by(day.asc(), Message.channel.asc())
        .all()
    )

    avg_response = _average_response_seconds(db)

    return {
        "total_messages": total_messages,
        "inbound_count": inbound_count,
        "outbound_count": outbound_count,
        "contacts_count": contacts_count,
        "avg_response_time": avg_response,
        "avg_response_time_minutes": round(avg_response / 60),
        "messages_by_channel": [
            {"channel": row.channel, "count": row.count} for row in by_channel
        ],
        "messages_by_day": [
            {"date": str(row.date), "channel": row.channel, "count": row.count}
            for row in by_day
        ],
    }


# =============================================================================
# Contact Profile
# =============================================================================

def get_contact_profile(db: Session, contact_id: str) -> Optional[dict]:
    """
    Contact with notes, threads, all its messages (newest first) and
    per-contact stats. Returns None if the contact does not exist.
    """
    from inbox.models import Contact, Message, Note, Thread

    contact = db.get(Contact, contact_id)
    if contact is None:
        return None

    notes = (
        db.query(Note)
        .filter(Note.contact_id == contact_id)
        .order_by(Note.created_at.desc())
        .all()
    )
    threads = (
        db.query(Thread)
        .filter(Thread.contact_id == contact_id)
        .order_by(Thread.last_message_at.is_(None), Thread.last_message_at.desc())
        .all()
    )
    messages = (
        db.query(Message)
        .join(Thread, Message.thread_id == Thread.id)
        .filter(Thread.contact_id == contact_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .all()
    )

    # Newest first: an OUTBOUND directly followed by an older INBOUND is a reply
    gaps = [
        (newer.created_at - older.created_at).total_seconds()
        for newer, older in zip(messages, messages[1:])
        if newer.direction == "OUTBOUND" and older.direction == "INBOUND"
    ]
    avg_minutes = round(sum(gaps) / len(gaps) / 60) if gaps else 0

    stats = {
        "total_messages": len(messages),
        "last_message_at": messages[0].created_at if messages else None,
        "first_message_at": messages[-1].created_at if messages else None,
        "thread_count": len({m.thread_id for m in messages}),
        "channels": sorted({m.channel for m in messages}),
        "inbound_count": sum(1 for m in messages if m.direction == "INBOUND"),
        "outbound_count": sum(1 for m in messages if m.direction == "OUTBOUND"),
        "avg_response_time_minutes": avg_minutes,
    }

    return {
        "contact": contact,
        "notes": notes,
        "threads": threads,
        "messages": messages,
        "stats": stats,
    }
