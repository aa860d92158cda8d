"""
Database Models

SQLAlchemy ORM models for conversation sessions, their message history,
and the appointments booked through the chat channel.

All datetime columns hold naive wall-clock times in the business timezone.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    DateTime, ForeignKey, Index, Integer, String, Text, Uuid,
    Enum as SQLEnum, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class ConversationState(str, Enum):
    """Dialogue state hint fed back into the interpretation prompt."""
    INTRO = "INTRO"
    ASKING_APPOINTMENT_TYPE = "ASKING_APPOINTMENT_TYPE"
    ASKING_DATE = "ASKING_DATE"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"


class MessageRole(str, Enum):
    """Author of a conversation message."""
    USER = "USER"
    BOT = "BOT"


class AppointmentType(str, Enum):
    """Scheduling track. Each track has its own conflict domain."""
    ONLINE = "ONLINE"
    IN_STORE = "IN_STORE"


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Statuses that still occupy their slot
ACTIVE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class ConversationSession(Base, TimestampMixin):
    """
    Conversation session.

    One row per client phone number. Holds the dialogue state hint,
    partially collected slots and the human-takeover pause window.
    """

    __tablename__ = "conversation_sessions"
    __table_args__ = (
        Index("idx_conversation_phone", "phone_number", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[ConversationState] = mapped_column(
        SQLEnum(ConversationState),
        default=ConversationState.INTRO,
        nullable=False
    )
    context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    appointment_type: Mapped[Optional[AppointmentType]] = mapped_column(
        SQLEnum(AppointmentType),
        nullable=True
    )
    service_intent: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    # Weak reference, lookup only
    scheduled_appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True
    )
    paused_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paused_by: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    messages: Mapped[List["ConversationMessage"]] = relationship(
        "ConversationMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<ConversationSession(phone={self.phone_number}, state={self.state})>"


class ConversationMessage(Base):
    """Append-only message in a conversation."""

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("idx_message_session_created", "session_id", "created_at"),
    )

    # Integer key doubles as a tiebreaker for messages sharing a timestamp
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversation_sessions.id", ondelete="CASCADE"),
        nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(SQLEnum(MessageRole), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    session: Mapped["ConversationSession"] = relationship(
        "ConversationSession",
        back_populates="messages"
    )


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    One booked slot on one track. Cancellation is a status change,
    rows are never physically removed.

    slot_start is start floored to the slot boundary. The partial unique
    index on (type, slot_start) keeps two active bookings out of the same
    slot even when overlap checks race.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_type_start", "type", "start"),
        Index("idx_appointment_phone_status", "client_phone", "status"),
        Index(
            "uq_appointment_active_slot",
            "type",
            "slot_start",
            unique=True,
            postgresql_where=text("status IN ('SCHEDULED', 'CONFIRMED')"),
            sqlite_where=text("status IN ('SCHEDULED', 'CONFIRMED')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[AppointmentType] = mapped_column(
        SQLEnum(AppointmentType),
        nullable=False
    )
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    slot_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus),
        default=AppointmentStatus.SCHEDULED,
        nullable=False
    )

    # External calendar projection
    calendar_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    calendar_sync_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    calendar_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Audit
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    last_edited_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    @property
    def is_active(self) -> bool:
        """Check if the appointment still occupies its slot."""
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, type={self.type}, "
            f"start={self.start}, status={self.status})>"
        )
