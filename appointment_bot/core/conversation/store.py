"""
Conversation Store.

Durable per-phone dialogue state and message history, backed by the
relational database. Pause expiry is lazy: an expired pause is cleared
the next time it is checked, there is no background sweep.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointment_bot.config import get_settings
from appointment_bot.core.clock import Clock, local_now
from appointment_bot.models.database import (
    AppointmentType,
    ConversationMessage,
    ConversationSession,
    ConversationState,
    MessageRole,
)

logger = logging.getLogger(__name__)

HUMAN_INTERVENTION = "HUMAN_INTERVENTION"

# Columns update_session may write
UPDATABLE_FIELDS = frozenset({
    "state",
    "context",
    "client_name",
    "appointment_type",
    "service_intent",
    "scheduled_appointment_id",
})


@dataclass
class StoredMessage:
    """One message from the conversation history."""

    role: MessageRole
    content: str
    created_at: datetime


@dataclass
class Conversation:
    """Snapshot of a session with its most recent messages, oldest first."""

    id: uuid.UUID
    phone_number: str
    state: ConversationState = ConversationState.INTRO
    context: dict[str, Any] = field(default_factory=dict)
    client_name: Optional[str] = None
    appointment_type: Optional[AppointmentType] = None
    service_intent: Optional[str] = None
    scheduled_appointment_id: Optional[uuid.UUID] = None
    paused_until: Optional[datetime] = None
    paused_by: Optional[str] = None
    messages: list[StoredMessage] = field(default_factory=list)

    @classmethod
    def from_model(
        cls,
        row: ConversationSession,
        messages: list[ConversationMessage],
    ) -> "Conversation":
        return cls(
            id=row.id,
            phone_number=row.phone_number,
            state=row.state,
            context=dict(row.context or {}),
            client_name=row.client_name,
            appointment_type=row.appointment_type,
            service_intent=row.service_intent,
            scheduled_appointment_id=row.scheduled_appointment_id,
            paused_until=row.paused_until,
            paused_by=row.paused_by,
            messages=[
                StoredMessage(role=m.role, content=m.content, created_at=m.created_at)
                for m in messages
            ],
        )


class ConversationStore:
    """
    Repository for conversation sessions and messages.

    At most one session exists per phone number; the unique index on
    phone_number settles concurrent first messages.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        now: Optional[Clock] = None,
        history_window: Optional[int] = None,
    ):
        """Initialize store.

        Args:
            session_factory: Async session factory (defaults to the app database)
            now: Clock returning naive business-timezone datetimes
            history_window: Messages returned with each session
        """
        self._session_factory = session_factory
        self._now = now or local_now
        self.history_window = history_window or get_settings().llm_history_window

    def _get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from appointment_bot.infra.database import async_session_factory
            self._session_factory = async_session_factory
        return self._session_factory

    async def _get_row(self, db: AsyncSession, phone_number: str) -> Optional[ConversationSession]:
        result = await db.execute(
            select(ConversationSession).where(ConversationSession.phone_number == phone_number)
        )
        return result.scalar_one_or_none()

    def _new_row(self, phone_number: str, **values) -> ConversationSession:
        now = self._now()
        return ConversationSession(
            id=uuid.uuid4(),
            phone_number=phone_number,
            state=ConversationState.INTRO,
            context={},
            created_at=now,
            updated_at=now,
            **values,
        )

    # === Sessions ===

    async def find_or_create_by_phone(self, phone_number: str) -> Conversation:
        """Load the session for a phone number, creating it on first contact.

        Returns:
            Conversation with the most recent messages in chronological order
        """
        async with self._get_session_factory()() as db:
            row = await self._get_row(db, phone_number)

            if row is None:
                row = self._new_row(phone_number)
                db.add(row)
                try:
                    await db.commit()
                    logger.info(f"Conversation created for {phone_number}")
                    return Conversation.from_model(row, [])
                except IntegrityError:
                    # Created concurrently by another message
                    await db.rollback()
                    row = await self._get_row(db, phone_number)
                    if row is None:
                        raise

            result = await db.execute(
                select(ConversationMessage)
                .where(ConversationMessage.session_id == row.id)
                .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
                .limit(self.history_window)
            )
            messages = list(reversed(result.scalars().all()))

            return Conversation.from_model(row, messages)

    async def update_session(self, session_id: uuid.UUID, updates: dict[str, Any]) -> None:
        """Write a partial set of session fields.

        Raises:
            ValueError: If a field is not updatable
        """
        if not updates:
            return

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        async with self._get_session_factory()() as db:
            async with db.begin():
                await db.execute(
                    update(ConversationSession)
                    .where(ConversationSession.id == session_id)
                    .values(**updates, updated_at=self._now())
                )

    async def append_message(
        self,
        session_id: uuid.UUID,
        role: MessageRole,
        content: str,
    ) -> None:
        """Append one message to the history."""
        async with self._get_session_factory()() as db:
            async with db.begin():
                db.add(ConversationMessage(
                    session_id=session_id,
                    role=MessageRole(role),
                    content=content,
                    created_at=self._now(),
                ))

    async def clear(self, phone_number: str) -> bool:
        """Delete the session and its history.

        Returns:
            True if a session existed
        """
        async with self._get_session_factory()() as db:
            async with db.begin():
                row = await self._get_row(db, phone_number)
                if row is None:
                    return False
                await db.execute(
                    delete(ConversationMessage).where(ConversationMessage.session_id == row.id)
                )
                await db.execute(
                    delete(ConversationSession).where(ConversationSession.id == row.id)
                )

        logger.info(f"Conversation history cleared for {phone_number}")
        return True

    # === Pause ===

    async def pause(
        self,
        phone_number: str,
        hours: float,
        reason: str = HUMAN_INTERVENTION,
    ) -> datetime:
        """Silence the bot for a phone number.

        Creates the session if the phone has never written.

        Returns:
            The instant the pause ends
        """
        paused_until = self._now() + timedelta(hours=hours)

        async with self._get_session_factory()() as db:
            try:
                async with db.begin():
                    row = await self._get_row(db, phone_number)
                    if row is None:
                        db.add(self._new_row(
                            phone_number, paused_until=paused_until, paused_by=reason
                        ))
                    else:
                        row.paused_until = paused_until
                        row.paused_by = reason
                        row.updated_at = self._now()
            except IntegrityError:
                async with db.begin():
                    await db.execute(
                        update(ConversationSession)
                        .where(ConversationSession.phone_number == phone_number)
                        .values(paused_until=paused_until, paused_by=reason)
                    )

        return paused_until

    async def unpause(self, phone_number: str) -> None:
        """Lift a pause. No-op when the phone is unknown."""
        async with self._get_session_factory()() as db:
            async with db.begin():
                await db.execute(
                    update(ConversationSession)
                    .where(ConversationSession.phone_number == phone_number)
                    .values(paused_until=None, paused_by=None)
                )

    async def is_paused(self, phone_number: str) -> bool:
        """Check the pause, clearing it when it has expired."""
        return await self._active_pause_until(phone_number) is not None

    async def pause_remaining_minutes(self, phone_number: str) -> Optional[int]:
        """Minutes left in the pause, rounded up. None when not paused."""
        paused_until = await self._active_pause_until(phone_number)
        if paused_until is None:
            return None
        remaining = (paused_until - self._now()).total_seconds() / 60
        return max(1, math.ceil(remaining))

    async def _active_pause_until(self, phone_number: str) -> Optional[datetime]:
        async with self._get_session_factory()() as db:
            async with db.begin():
                row = await self._get_row(db, phone_number)
                if row is None or row.paused_until is None:
                    return None

                if self._now() >= row.paused_until:
                    logger.info(f"Pause expired for {phone_number}")
                    row.paused_until = None
                    row.paused_by = None
                    return None

                return row.paused_until


# Singleton
_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get singleton ConversationStore."""
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store
