"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from inbox.storage import Base
from inbox.utils import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class Contact(Base):
    """
    A person reachable over SMS or WhatsApp.

    Table: contacts
    Unique: phone (normalized)
    """
    __tablename__ = "contacts"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True, index=True)
    channel = Column(String, nullable=False, default="sms")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    threads = relationship("Thread", back_populates="contact", cascade="all, delete-orphan")
    notes = relationship("Note", back_populates="contact", cascade="all, delete-orphan")


class Thread(Base):
    """
    Conversation with one contact on one channel.

    Table: threads
    Unique: (contact_id, channel)
    """
    __tablename__ = "threads"
    __table_args__ = (
        UniqueConstraint("contact_id", "channel", name="uq_threads_contact_channel"),
    )

    id = Column(String, primary_key=True, default=new_id)
    contact_id = Column(
        String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel = Column(String, nullable=False, default="sms")
    is_unread = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    last_message_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="threads")
    messages = relationship(
        "Message",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )


class Message(Base):
    """
    A single inbound or outbound message.

    Table: messages
    Unique: twilio_sid (when present; replayed webhooks are not stored twice)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    thread_id = Column(
        String, ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    body = Column(Text, nullable=False, default="")
    direction = Column(String, nullable=False)
    channel = Column(String, nullable=False, default="sms")
    twilio_sid = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default="sent", index=True)
    scheduled_for = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    thread = relationship("Thread", back_populates="messages")


class Note(Base):
    """Internal note attached to a contact. Table: notes"""
    __tablename__ = "notes"

    id = Column(String, primary_key=True, default=new_id)
    contact_id = Column(
        String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content = Column(Text, nullable=False)
    is_private = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="notes")


class TeamMember(Base):
    """Table: team_members"""
    __tablename__ = "team_members"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# Auth tables
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True, index=True)
    image = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("AuthSession", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    """OAuth identity linked to a user. Unique: (provider, provider_account_id)"""
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    provider_account_id = Column(String, nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="accounts")


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String, nullable=False, unique=True, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    user_agent = Column(String, nullable=True)

    user = relationship("User", back_populates="sessions")
