"""
Dialogue Orchestrator.

Answers one inbound client message: checks the pause, interprets the
message, dispatches on the intent (book, cancel, reschedule, abort or
plain reply), records both sides of the exchange and updates the
session. The stored state is only a hint for the next interpretation;
the intent returned by the language model drives the branching.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from appointment_bot.config import get_settings
from appointment_bot.core.conversation.store import (
    HUMAN_INTERVENTION,
    Conversation,
    ConversationStore,
    get_conversation_store,
)
from appointment_bot.core.intelligence.interpreter import (
    LanguageInterpreter,
    get_language_interpreter,
)
from appointment_bot.core.intelligence.types import Intent, Interpretation, SlotData
from appointment_bot.core.scheduling.datetime_parser import (
    DateTimeParser,
    format_date,
    format_time,
    get_datetime_parser,
)
from appointment_bot.core.scheduling.errors import (
    AppointmentAlreadyCancelledError,
    AppointmentNotFoundError,
    AppointmentNotReschedulableError,
    SlotUnavailableError,
    SlotValidationError,
)
from appointment_bot.core.scheduling.responses import (
    ResponseGenerator,
    get_response_generator,
)
from appointment_bot.core.scheduling.scheduler import (
    AppointmentCreate,
    AppointmentScheduler,
    get_appointment_scheduler,
)
from appointment_bot.infra.redis import (
    ConversationLocks,
    ConversationLockTimeout,
    get_conversation_locks,
)
from appointment_bot.models.database import (
    AppointmentType,
    ConversationState,
    MessageRole,
)

logger = logging.getLogger(__name__)

PENDING_RESCHEDULE_KEY = "pendingReschedule"

# Free times offered after a conflict
MAX_SUGGESTED_SLOTS = 5

# Intents whose slots move the state hint forward
SLOT_COLLECTING_INTENTS = {Intent.SCHEDULE_APPOINTMENT, Intent.COLLECT_DATA}


@dataclass
class ChatbotResponse:
    """Reply for one inbound message."""

    message: str
    intent: Intent
    appointment_created: bool = False
    appointment_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "message": self.message,
            "intent": self.intent.value,
            "appointmentCreated": self.appointment_created,
        }
        if self.appointment_id:
            result["appointmentId"] = self.appointment_id
        return result


class DialogueOrchestrator:
    """
    Top-level state machine for the chat channel.

    Coordinates:
    - Conversation store (history, state, pause)
    - Language interpreter
    - Date/time parsing
    - Appointment scheduler
    - Reply templates
    """

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        interpreter: Optional[LanguageInterpreter] = None,
        scheduler: Optional[AppointmentScheduler] = None,
        parser: Optional[DateTimeParser] = None,
        responses: Optional[ResponseGenerator] = None,
        locks: Optional[ConversationLocks] = None,
    ):
        """Initialize orchestrator with optional dependencies.

        Args:
            store: Conversation store
            interpreter: Language interpreter
            scheduler: Appointment scheduler
            parser: Date/time parser
            responses: Reply templates
            locks: Per-phone locks
        """
        self._store = store
        self._interpreter = interpreter
        self._scheduler = scheduler
        self._parser = parser
        self._responses = responses
        self._locks = locks

        settings = get_settings()
        self.editor = settings.chatbot_editor
        self.default_pause_hours = settings.default_pause_hours

    def _get_store(self) -> ConversationStore:
        if self._store is None:
            self._store = get_conversation_store()
        return self._store

    def _get_interpreter(self) -> LanguageInterpreter:
        if self._interpreter is None:
            self._interpreter = get_language_interpreter()
        return self._interpreter

    def _get_scheduler(self) -> AppointmentScheduler:
        if self._scheduler is None:
            self._scheduler = get_appointment_scheduler()
        return self._scheduler

    def _get_parser(self) -> DateTimeParser:
        if self._parser is None:
            self._parser = get_datetime_parser()
        return self._parser

    def _get_responses(self) -> ResponseGenerator:
        if self._responses is None:
            self._responses = get_response_generator()
        return self._responses

    def _get_locks(self) -> ConversationLocks:
        if self._locks is None:
            self._locks = get_conversation_locks()
        return self._locks

    # === Message processing ===

    async def process_message(self, phone_number: str, message: str) -> Optional[ChatbotResponse]:
        """
        Answer one inbound message.

        Messages from the same phone are processed one at a time. A
        message whose turn never comes gets the apology and is not
        recorded, so the client can send it again.

        Args:
            phone_number: Client phone number
            message: Message text

        Returns:
            ChatbotResponse, or None when the conversation is paused
            and nothing must be sent
        """
        try:
            async with self._get_locks().hold(phone_number):
                return await self._process(phone_number, message)
        except ConversationLockTimeout as e:
            logger.error(f"Message from {phone_number} rejected, conversation busy: {e}")
            return ChatbotResponse(
                message=self._get_responses().apology(),
                intent=Intent.SMALL_TALK,
            )

    async def _process(self, phone_number: str, message: str) -> Optional[ChatbotResponse]:
        store = self._get_store()
        conversation: Optional[Conversation] = None

        try:
            if await store.is_paused(phone_number):
                remaining = await store.pause_remaining_minutes(phone_number)
                logger.info(
                    f"Message from {phone_number} ignored, conversation paused "
                    f"({remaining} min left)"
                )
                return None

            conversation = await store.find_or_create_by_phone(phone_number)
            interpretation = await self._get_interpreter().interpret(conversation, message)
            await store.append_message(conversation.id, MessageRole.USER, message)

            logger.debug(
                f"Interpreted {phone_number}: intent={interpretation.intent.value} "
                f"slots={interpretation.slots.to_dict()}"
            )

            updates: dict[str, Any] = {}
            response = await self._dispatch(conversation, interpretation, updates)

            await store.append_message(conversation.id, MessageRole.BOT, response.message)
            await store.update_session(
                conversation.id,
                self._session_updates(interpretation, updates),
            )

            return response

        except Exception as e:
            state = conversation.state.value if conversation else "unknown"
            logger.error(
                f"Failed to process message from {phone_number} "
                f"(state={state}, message={message[:100]!r}): {e}",
                exc_info=True,
            )
            return ChatbotResponse(
                message=self._get_responses().apology(),
                intent=Intent.SMALL_TALK,
            )

    async def _dispatch(
        self,
        conversation: Conversation,
        interpretation: Interpretation,
        updates: dict[str, Any],
    ) -> ChatbotResponse:
        """Route on intent. Handlers put the session fields they decide into updates."""
        intent = interpretation.intent

        if intent == Intent.CONFIRM_APPOINTMENT:
            return await self._handle_confirm(conversation, interpretation, updates)
        if intent == Intent.SCHEDULE_APPOINTMENT:
            return self._handle_schedule(conversation, interpretation, updates)
        if intent == Intent.CANCEL_APPOINTMENT:
            return await self._handle_cancel_appointment(conversation, interpretation, updates)
        if intent == Intent.RESCHEDULE_APPOINTMENT:
            return await self._handle_reschedule(conversation, interpretation, updates)
        if intent == Intent.CANCEL:
            updates["state"] = ConversationState.INTRO
            updates["context"] = self._without_pending(conversation.context)
            return ChatbotResponse(message=interpretation.reply, intent=Intent.CANCEL)

        return ChatbotResponse(message=interpretation.reply, intent=intent)

    # === Handlers ===

    async def _handle_confirm(
        self,
        conversation: Conversation,
        interpretation: Interpretation,
        updates: dict[str, Any],
    ) -> ChatbotResponse:
        """Book when every slot arrived this turn together with a yes."""
        slots = interpretation.slots
        responses = self._get_responses()

        complete = (
            slots.client_name
            and slots.appointment_type
            and slots.has_date_time
            and slots.is_confirmed
        )
        if not complete:
            return ChatbotResponse(message=interpretation.reply, intent=Intent.CONFIRM_APPOINTMENT)

        start = self._get_parser().parse_date_time(slots.appointment_date, slots.appointment_time)
        if start is None:
            logger.info(
                f"Could not parse {slots.appointment_date!r} {slots.appointment_time!r} "
                f"for {conversation.phone_number}"
            )
            return ChatbotResponse(message=responses.parse_failure(), intent=Intent.COLLECT_DATA)

        scheduler = self._get_scheduler()
        try:
            appointment = await scheduler.create_appointment(AppointmentCreate(
                client_name=slots.client_name,
                client_phone=conversation.phone_number,
                type=slots.appointment_type,
                start=start,
                created_by=self.editor,
            ))
        except SlotValidationError as e:
            logger.info(f"Booking rejected for {conversation.phone_number}: {e.message}")
            return ChatbotResponse(message=e.message, intent=Intent.COLLECT_DATA)
        except SlotUnavailableError:
            logger.info(f"Slot {slots.appointment_type.value} {start} unavailable")
            free = await self._suggest_slots(start, slots.appointment_type)
            return ChatbotResponse(
                message=responses.slot_unavailable(free),
                intent=Intent.SCHEDULE_APPOINTMENT,
            )

        updates["scheduled_appointment_id"] = appointment.id
        updates["state"] = ConversationState.COMPLETED
        updates["context"] = {}

        logger.info(
            f"Appointment {appointment.id} booked via chat for {conversation.phone_number}"
        )

        return ChatbotResponse(
            message=responses.booking_confirmed(appointment),
            intent=Intent.CONFIRM_APPOINTMENT,
            appointment_created=True,
            appointment_id=str(appointment.id),
        )

    def _handle_schedule(
        self,
        conversation: Conversation,
        interpretation: Interpretation,
        updates: dict[str, Any],
    ) -> ChatbotResponse:
        """Accumulate partial slots for later turns."""
        merged = dict(conversation.context)
        merged.update(interpretation.slots.to_dict())
        updates["context"] = merged

        return ChatbotResponse(message=interpretation.reply, intent=Intent.SCHEDULE_APPOINTMENT)

    async def _handle_cancel_appointment(
        self,
        conversation: Conversation,
        interpretation: Interpretation,
        updates: dict[str, Any],
    ) -> ChatbotResponse:
        responses = self._get_responses()
        scheduler = self._get_scheduler()

        appointment = await scheduler.find_active_appointment_by_phone(conversation.phone_number)
        if appointment is None:
            return ChatbotResponse(
                message=responses.no_active_appointment(),
                intent=Intent.CANCEL_APPOINTMENT,
            )

        if not interpretation.slots.is_confirmed:
            return ChatbotResponse(
                message=responses.confirm_cancellation(appointment),
                intent=Intent.CANCEL_APPOINTMENT,
            )

        try:
            await scheduler.cancel_appointment(appointment.id, self.editor)
        except AppointmentAlreadyCancelledError:
            return ChatbotResponse(
                message=responses.already_cancelled(),
                intent=Intent.CANCEL_APPOINTMENT,
            )
        except AppointmentNotFoundError:
            return ChatbotResponse(
                message=responses.no_active_appointment(),
                intent=Intent.CANCEL_APPOINTMENT,
            )

        updates["state"] = ConversationState.INTRO
        updates["scheduled_appointment_id"] = None

        logger.info(
            f"Appointment {appointment.id} cancelled via chat for {conversation.phone_number}"
        )

        return ChatbotResponse(message=responses.cancelled(), intent=Intent.CANCEL_APPOINTMENT)

    async def _handle_reschedule(
        self,
        conversation: Conversation,
        interpretation: Interpretation,
        updates: dict[str, Any],
    ) -> ChatbotResponse:
        """Move the active appointment.

        A validated target slot waiting for the client's yes is kept in
        the session context, so the confirming turn does not need to
        repeat the date and time.
        """
        responses = self._get_responses()
        scheduler = self._get_scheduler()
        slots = interpretation.slots

        appointment = await scheduler.find_active_appointment_by_phone(conversation.phone_number)
        if appointment is None:
            return self._reschedule_reply(responses.no_active_appointment())

        pending_start = self._pending_start(conversation.context)

        if slots.is_confirmed and pending_start is not None:
            # The yes answers the recap, whatever relative date the model repeats
            new_start = pending_start
        else:
            date_text = slots.appointment_date
            time_text = slots.appointment_time
            if pending_start is not None:
                date_text = date_text or format_date(pending_start)
                time_text = time_text or format_time(pending_start)

            if not (date_text and time_text):
                return self._reschedule_reply(responses.ask_new_slot(appointment))

            new_start = self._get_parser().parse_date_time(date_text, time_text)
            if new_start is None:
                updates["context"] = self._without_pending(conversation.context)
                return self._reschedule_reply(responses.parse_failure())

        new_end = scheduler.default_end(new_start)
        try:
            await scheduler.validate_appointment(
                new_start, new_end, appointment.type, exclude_id=appointment.id
            )
        except SlotValidationError as e:
            updates["context"] = self._without_pending(conversation.context)
            return self._reschedule_reply(e.message)
        except SlotUnavailableError:
            updates["context"] = self._without_pending(conversation.context)
            free = await self._suggest_slots(new_start, appointment.type)
            return self._reschedule_reply(responses.slot_unavailable(free))

        if not slots.is_confirmed:
            context = dict(conversation.context)
            context[PENDING_RESCHEDULE_KEY] = {"start": new_start.isoformat()}
            updates["context"] = context
            return self._reschedule_reply(responses.confirm_reschedule(new_start))

        try:
            moved = await scheduler.reschedule_appointment(
                appointment.id, new_start, new_end, self.editor
            )
        except SlotValidationError as e:
            updates["context"] = self._without_pending(conversation.context)
            return self._reschedule_reply(e.message)
        except SlotUnavailableError:
            updates["context"] = self._without_pending(conversation.context)
            free = await self._suggest_slots(new_start, appointment.type)
            return self._reschedule_reply(responses.slot_unavailable(free))
        except (AppointmentNotFoundError, AppointmentNotReschedulableError):
            updates["context"] = self._without_pending(conversation.context)
            return self._reschedule_reply(responses.no_active_appointment())

        updates["state"] = ConversationState.INTRO
        updates["scheduled_appointment_id"] = moved.id
        updates["context"] = self._without_pending(conversation.context)

        logger.info(
            f"Appointment {moved.id} rescheduled via chat for {conversation.phone_number}"
        )

        return self._reschedule_reply(responses.rescheduled(moved))

    @staticmethod
    def _reschedule_reply(message: str) -> ChatbotResponse:
        return ChatbotResponse(message=message, intent=Intent.RESCHEDULE_APPOINTMENT)

    # === Helpers ===

    async def _suggest_slots(self, start, appointment_type: AppointmentType) -> list[str]:
        free = await self._get_scheduler().get_available_slots(start.date(), appointment_type)
        return free[:MAX_SUGGESTED_SLOTS]

    @staticmethod
    def _pending_start(context: dict) -> Optional[datetime]:
        """Validated target slot awaiting confirmation, if any."""
        pending = context.get(PENDING_RESCHEDULE_KEY) or {}
        try:
            return datetime.fromisoformat(pending["start"])
        except (KeyError, TypeError, ValueError):
            return None

    @staticmethod
    def _without_pending(context: dict) -> dict:
        return {k: v for k, v in context.items() if k != PENDING_RESCHEDULE_KEY}

    def _session_updates(
        self,
        interpretation: Interpretation,
        decided: dict[str, Any],
    ) -> dict[str, Any]:
        """Slot-derived session fields, overridden by what the handler decided."""
        slots: SlotData = interpretation.slots
        updates: dict[str, Any] = {}

        if interpretation.intent in SLOT_COLLECTING_INTENTS:
            if slots.has_date_time:
                updates["state"] = ConversationState.CONFIRMING
            elif slots.appointment_type:
                updates["state"] = ConversationState.ASKING_DATE
            elif slots.client_name:
                updates["state"] = ConversationState.ASKING_APPOINTMENT_TYPE
        elif interpretation.intent == Intent.CONFIRM_APPOINTMENT and slots.is_confirmed:
            updates["state"] = ConversationState.CONFIRMING

        if slots.client_name:
            updates["client_name"] = slots.client_name
        if slots.appointment_type:
            updates["appointment_type"] = slots.appointment_type
        if slots.service_intent:
            updates["service_intent"] = slots.service_intent.value

        updates.update(decided)
        return updates

    # === Operator controls ===

    async def clear_history(self, phone_number: str) -> bool:
        """Delete the conversation and its messages."""
        return await self._get_store().clear(phone_number)

    async def pause_conversation(
        self,
        phone_number: str,
        hours: Optional[float] = None,
        reason: str = HUMAN_INTERVENTION,
    ) -> None:
        """Silence the bot for a phone number."""
        hours = hours if hours is not None else self.default_pause_hours
        paused_until = await self._get_store().pause(phone_number, hours, reason)
        logger.info(f"Conversation {phone_number} paused until {paused_until} ({reason})")

    async def unpause_conversation(self, phone_number: str) -> None:
        await self._get_store().unpause(phone_number)
        logger.info(f"Conversation {phone_number} unpaused")

    async def is_conversation_paused(self, phone_number: str) -> bool:
        return await self._get_store().is_paused(phone_number)

    async def get_pause_time_remaining(self, phone_number: str) -> Optional[int]:
        """Minutes left in the pause, or None."""
        return await self._get_store().pause_remaining_minutes(phone_number)

    async def handle_operator_message(self, phone_number: str) -> None:
        """A human replied from the business phone: yield the conversation."""
        await self.pause_conversation(phone_number, reason=HUMAN_INTERVENTION)


# Singleton
_orchestrator: Optional[DialogueOrchestrator] = None


def get_dialogue_orchestrator() -> DialogueOrchestrator:
    """Get singleton DialogueOrchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = DialogueOrchestrator()
    return _orchestrator
