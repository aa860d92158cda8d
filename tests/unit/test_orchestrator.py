"""Tests for the Dialogue Orchestrator, end to end on SQLite."""

import asyncio
from datetime import date, datetime

import pytest
from unittest.mock import AsyncMock, MagicMock

from appointment_bot.core.conversation.store import ConversationStore
from appointment_bot.core.intelligence.types import Intent, Interpretation, SlotData
from appointment_bot.core.scheduling.calendar_sync import CalendarEvent, CalendarSynchronizer
from appointment_bot.core.scheduling.datetime_parser import DateTimeParser
from appointment_bot.core.scheduling.orchestrator import (
    PENDING_RESCHEDULE_KEY,
    ChatbotResponse,
    DialogueOrchestrator,
)
from appointment_bot.core.scheduling.responses import ResponseGenerator
from appointment_bot.core.scheduling.scheduler import AppointmentCreate, AppointmentScheduler
from appointment_bot.infra.redis import ConversationLocks
from appointment_bot.models.database import (
    AppointmentStatus,
    AppointmentType,
    ConversationState,
    MessageRole,
)

PHONE = "5583999990000"
OTHER_PHONE = "5583988887777"
ADDRESS = "Rua das Flores, 100"

FULL_SLOTS = {
    "clientName": "João",
    "serviceIntent": "FABRICAR",
    "appointmentType": "IN_STORE",
    "appointmentDate": "amanhã",
    "appointmentTime": "10h",
    "confirmation": "yes",
}


class ScriptedInterpreter:
    """Returns queued interpretations in order."""

    def __init__(self):
        self.queue: list[Interpretation] = []
        self.calls: list[tuple] = []

    def script(self, intent: Intent, reply: str = "Certo!", **slots) -> None:
        self.queue.append(Interpretation(
            reply=reply,
            intent=intent,
            slots=SlotData.from_dict(slots),
        ))

    async def interpret(self, conversation, message):
        self.calls.append((conversation, message))
        return self.queue.pop(0)


@pytest.fixture
def interpreter():
    return ScriptedInterpreter()


@pytest.fixture
def mock_calendar():
    calendar = MagicMock(spec=CalendarSynchronizer)
    calendar.create = AsyncMock(return_value=None)
    calendar.update = AsyncMock(return_value=None)
    calendar.delete = AsyncMock(return_value=False)
    return calendar


@pytest.fixture
def store(session_factory, clock):
    return ConversationStore(session_factory=session_factory, now=clock)


@pytest.fixture
def scheduler(session_factory, mock_calendar, clock):
    return AppointmentScheduler(session_factory=session_factory, calendar=mock_calendar, now=clock)


@pytest.fixture
def orchestrator(store, interpreter, scheduler, clock):
    return DialogueOrchestrator(
        store=store,
        interpreter=interpreter,
        scheduler=scheduler,
        parser=DateTimeParser(now=clock),
        responses=ResponseGenerator(business_address=ADDRESS),
        locks=ConversationLocks(use_redis=False),
    )


async def book(scheduler, start: datetime, phone: str = PHONE, type=AppointmentType.IN_STORE):
    return await scheduler.create_appointment(AppointmentCreate(
        client_name="João",
        client_phone=phone,
        type=type,
        start=start,
    ))


class TestChatbotResponse:
    """Test ChatbotResponse serialization."""

    def test_to_dict(self):
        response = ChatbotResponse(
            message="Olá",
            intent=Intent.CONFIRM_APPOINTMENT,
            appointment_created=True,
            appointment_id="abc",
        )

        assert response.to_dict() == {
            "message": "Olá",
            "intent": "CONFIRM_APPOINTMENT",
            "appointmentCreated": True,
            "appointmentId": "abc",
        }

    def test_to_dict_without_appointment(self):
        assert "appointmentId" not in ChatbotResponse("Olá", Intent.SMALL_TALK).to_dict()


class TestBookingConversation:
    """Scenario A: a full booking across turns."""

    @pytest.mark.asyncio
    async def test_books_after_confirmation(self, orchestrator, interpreter, store, scheduler):
        interpreter.script(Intent.SMALL_TALK, "Olá! Sou a Maria. Qual é o seu nome?")
        interpreter.script(
            Intent.SCHEDULE_APPOINTMENT, "Prazer, João! Online ou na loja?",
            clientName="João", serviceIntent="FABRICAR",
        )
        interpreter.script(
            Intent.SCHEDULE_APPOINTMENT, "Ótimo! Qual dia e horário?",
            clientName="João", appointmentType="IN_STORE",
        )
        interpreter.script(
            Intent.SCHEDULE_APPOINTMENT, "Confirma visita amanhã às 10h?",
            appointmentDate="amanhã", appointmentTime="10h",
        )
        interpreter.script(Intent.CONFIRM_APPOINTMENT, "Confirmado!", **FULL_SLOTS)

        first = await orchestrator.process_message(PHONE, "oi")
        assert first.message == "Olá! Sou a Maria. Qual é o seu nome?"
        assert first.intent == Intent.SMALL_TALK

        await orchestrator.process_message(PHONE, "João, quero fabricar um sofá")
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.ASKING_APPOINTMENT_TYPE
        assert conversation.client_name == "João"
        assert conversation.service_intent == "FABRICAR"

        await orchestrator.process_message(PHONE, "na loja")
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.ASKING_DATE
        assert conversation.appointment_type == AppointmentType.IN_STORE

        await orchestrator.process_message(PHONE, "amanhã 10h")
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.CONFIRMING
        assert conversation.context["appointmentDate"] == "amanhã"
        assert conversation.context["clientName"] == "João"

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.appointment_created is True
        assert response.intent == Intent.CONFIRM_APPOINTMENT
        assert "terça-feira, 20 de outubro de 2026" in response.message
        assert "10:00" in response.message
        assert ADDRESS in response.message

        appointment = await scheduler.find_active_appointment_by_phone(PHONE)
        assert str(appointment.id) == response.appointment_id
        assert appointment.type == AppointmentType.IN_STORE
        assert appointment.start == datetime(2026, 10, 20, 10, 0)
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.created_by == "chatbot"

        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.COMPLETED
        assert conversation.scheduled_appointment_id == appointment.id
        assert conversation.context == {}
        assert len(conversation.messages) == 10
        assert conversation.messages[-1].role == MessageRole.BOT

    @pytest.mark.asyncio
    async def test_online_booking_mentions_link(self, orchestrator, interpreter):
        interpreter.script(Intent.CONFIRM_APPOINTMENT, **{**FULL_SLOTS, "appointmentType": "ONLINE"})

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.appointment_created is True
        assert "link da reunião em breve" in response.message

    @pytest.mark.asyncio
    async def test_online_booking_with_meet_link(self, orchestrator, interpreter, mock_calendar):
        mock_calendar.create = AsyncMock(return_value=CalendarEvent(
            event_id="evt-1", meeting_link="https://meet.google.com/abc-defg-hij"
        ))
        interpreter.script(Intent.CONFIRM_APPOINTMENT, **{**FULL_SLOTS, "appointmentType": "ONLINE"})

        response = await orchestrator.process_message(PHONE, "sim")

        assert "https://meet.google.com/abc-defg-hij" in response.message

    @pytest.mark.asyncio
    async def test_incomplete_confirmation_echoes_reply(self, orchestrator, interpreter, scheduler):
        slots = {k: v for k, v in FULL_SLOTS.items() if k != "clientName"}
        interpreter.script(Intent.CONFIRM_APPOINTMENT, "Qual é o seu nome?", **slots)

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.message == "Qual é o seu nome?"
        assert response.appointment_created is False
        assert await scheduler.find_active_appointment_by_phone(PHONE) is None

    @pytest.mark.asyncio
    async def test_unparseable_date(self, orchestrator, interpreter):
        interpreter.script(Intent.CONFIRM_APPOINTMENT, **{**FULL_SLOTS, "appointmentDate": "algum dia"})

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.intent == Intent.COLLECT_DATA
        assert "não consegui entender a data" in response.message

    @pytest.mark.asyncio
    async def test_rule_violation_reported_verbatim(self, orchestrator, interpreter):
        interpreter.script(Intent.CONFIRM_APPOINTMENT, **{**FULL_SLOTS, "appointmentDate": "sábado"})

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.intent == Intent.COLLECT_DATA
        assert response.message == "Atendimentos disponíveis apenas de segunda a sexta-feira."
        assert response.appointment_created is False


class TestDoubleBooking:
    """Scenario B: the same slot requested twice."""

    @pytest.mark.asyncio
    async def test_second_request_offers_other_times(
        self, orchestrator, interpreter, scheduler, session_factory
    ):
        await book(scheduler, datetime(2026, 10, 20, 10, 0), phone=OTHER_PHONE)
        interpreter.script(Intent.CONFIRM_APPOINTMENT, **FULL_SLOTS)

        response = await orchestrator.process_message(PHONE, "sim")

        assert response.intent == Intent.SCHEDULE_APPOINTMENT
        assert response.appointment_created is False
        assert "não está disponível" in response.message
        assert "08:00, 09:00, 11:00, 12:00, 13:00" in response.message

        assert await scheduler.find_active_appointment_by_phone(PHONE) is None
        free = await scheduler.get_available_slots(date(2026, 10, 20), AppointmentType.IN_STORE)
        assert "10:00" not in free


class TestReschedule:
    """Scenario C: moving an appointment."""

    @pytest.mark.asyncio
    async def test_reschedule_flow(self, orchestrator, interpreter, scheduler, store):
        original = await book(scheduler, datetime(2026, 10, 20, 10, 0))

        interpreter.script(Intent.RESCHEDULE_APPOINTMENT, "Claro!")
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT, "Confirma?",
            appointmentDate="quarta-feira", appointmentTime="14h",
        )
        interpreter.script(Intent.RESCHEDULE_APPOINTMENT, "Feito!", confirmation="yes")

        ask = await orchestrator.process_message(PHONE, "quero remarcar")
        assert ask.intent == Intent.RESCHEDULE_APPOINTMENT
        assert "Encontrei seu agendamento" in ask.message
        assert "Para qual data e horário" in ask.message

        confirm = await orchestrator.process_message(PHONE, "quarta às 14h")
        assert "Confirma o reagendamento" in confirm.message
        assert "quarta-feira, 21 de outubro de 2026" in confirm.message
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.context[PENDING_RESCHEDULE_KEY] == {"start": "2026-10-21T14:00:00"}

        done = await orchestrator.process_message(PHONE, "sim")
        assert "remarcado com sucesso" in done.message
        assert "14:00" in done.message

        moved = await scheduler.get_appointment(original.id)
        assert moved.start == datetime(2026, 10, 21, 14, 0)
        assert moved.status == AppointmentStatus.SCHEDULED

        tuesday = await scheduler.get_available_slots(date(2026, 10, 20), AppointmentType.IN_STORE)
        wednesday = await scheduler.get_available_slots(date(2026, 10, 21), AppointmentType.IN_STORE)
        assert "10:00" in tuesday
        assert "14:00" not in wednesday

        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.INTRO
        assert conversation.scheduled_appointment_id == original.id
        assert PENDING_RESCHEDULE_KEY not in conversation.context

    @pytest.mark.asyncio
    async def test_confirmation_after_midnight_keeps_recapped_day(
        self, orchestrator, interpreter, scheduler, clock
    ):
        clock.current = datetime(2026, 10, 19, 23, 50)
        original = await book(scheduler, datetime(2026, 10, 22, 10, 0))
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT,
            appointmentDate="amanhã", appointmentTime="10h",
        )
        # The model repeats the relative date on the confirming turn
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT,
            appointmentDate="amanhã", appointmentTime="10h", confirmation="yes",
        )

        confirm = await orchestrator.process_message(PHONE, "amanhã às 10h")
        assert "terça-feira, 20 de outubro de 2026" in confirm.message

        clock.advance(minutes=20)
        done = await orchestrator.process_message(PHONE, "sim")

        assert "remarcado com sucesso" in done.message
        moved = await scheduler.get_appointment(original.id)
        assert moved.start == datetime(2026, 10, 20, 10, 0)

    @pytest.mark.asyncio
    async def test_new_time_keeps_pending_day(self, orchestrator, interpreter, scheduler, store):
        await book(scheduler, datetime(2026, 10, 20, 10, 0))
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT,
            appointmentDate="quarta", appointmentTime="14h",
        )
        interpreter.script(Intent.RESCHEDULE_APPOINTMENT, appointmentTime="15h")

        await orchestrator.process_message(PHONE, "quarta às 14h")
        confirm = await orchestrator.process_message(PHONE, "melhor às 15h")

        assert "quarta-feira, 21 de outubro de 2026" in confirm.message
        assert "15:00" in confirm.message
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.context[PENDING_RESCHEDULE_KEY] == {"start": "2026-10-21T15:00:00"}

    @pytest.mark.asyncio
    async def test_reschedule_into_taken_slot(self, orchestrator, interpreter, scheduler, store):
        await book(scheduler, datetime(2026, 10, 20, 10, 0))
        await book(scheduler, datetime(2026, 10, 21, 14, 0), phone=OTHER_PHONE)
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT,
            appointmentDate="quarta", appointmentTime="14h",
        )

        response = await orchestrator.process_message(PHONE, "quarta às 14h")

        assert "não está disponível" in response.message
        conversation = await store.find_or_create_by_phone(PHONE)
        assert PENDING_RESCHEDULE_KEY not in conversation.context

    @pytest.mark.asyncio
    async def test_reschedule_without_appointment(self, orchestrator, interpreter):
        interpreter.script(Intent.RESCHEDULE_APPOINTMENT)

        response = await orchestrator.process_message(PHONE, "quero remarcar")

        assert "Não encontrei nenhum agendamento ativo" in response.message

    @pytest.mark.asyncio
    async def test_abort_drops_pending_reschedule(self, orchestrator, interpreter, scheduler, store):
        await book(scheduler, datetime(2026, 10, 20, 10, 0))
        interpreter.script(
            Intent.RESCHEDULE_APPOINTMENT,
            appointmentDate="quarta", appointmentTime="14h",
        )
        interpreter.script(Intent.CANCEL, "Tudo bem, mantive seu horário.")

        await orchestrator.process_message(PHONE, "quarta às 14h")
        response = await orchestrator.process_message(PHONE, "deixa pra lá")

        assert response.intent == Intent.CANCEL
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.INTRO
        assert PENDING_RESCHEDULE_KEY not in conversation.context


class TestCancelAppointment:
    """Test cancellation through the chat."""

    @pytest.mark.asyncio
    async def test_cancel_needs_confirmation(self, orchestrator, interpreter, scheduler, store):
        appointment = await book(scheduler, datetime(2026, 10, 20, 10, 0))
        conversation = await store.find_or_create_by_phone(PHONE)
        await store.update_session(conversation.id, {"scheduled_appointment_id": appointment.id})

        interpreter.script(Intent.CANCEL_APPOINTMENT)
        interpreter.script(Intent.CANCEL_APPOINTMENT, confirmation="yes")

        recap = await orchestrator.process_message(PHONE, "quero cancelar")
        assert "Confirma o cancelamento?" in recap.message
        assert (await scheduler.get_appointment(appointment.id)).status == AppointmentStatus.SCHEDULED

        done = await orchestrator.process_message(PHONE, "sim")
        assert "cancelado com sucesso" in done.message
        assert (await scheduler.get_appointment(appointment.id)).status == AppointmentStatus.CANCELLED

        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.state == ConversationState.INTRO
        assert conversation.scheduled_appointment_id is None

    @pytest.mark.asyncio
    async def test_cancel_without_appointment(self, orchestrator, interpreter):
        interpreter.script(Intent.CANCEL_APPOINTMENT, confirmation="yes")

        response = await orchestrator.process_message(PHONE, "cancela")

        assert "Não encontrei nenhum agendamento ativo" in response.message


class TestPauseAndFailures:
    """Test pause short-circuit and failure handling."""

    @pytest.mark.asyncio
    async def test_paused_conversation_is_silent(self, orchestrator, interpreter, store):
        await orchestrator.pause_conversation(PHONE, hours=2)
        interpreter.script(Intent.SMALL_TALK, "Olá!")

        response = await orchestrator.process_message(PHONE, "oi")

        assert response is None
        assert interpreter.calls == []
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.messages == []

    @pytest.mark.asyncio
    async def test_pause_expires(self, orchestrator, interpreter, clock):
        await orchestrator.pause_conversation(PHONE, hours=2)
        clock.advance(hours=2)
        interpreter.script(Intent.SMALL_TALK, "Olá!")

        response = await orchestrator.process_message(PHONE, "oi")

        assert response.message == "Olá!"

    @pytest.mark.asyncio
    async def test_operator_message_pauses_default_window(self, orchestrator):
        await orchestrator.handle_operator_message(PHONE)

        assert await orchestrator.is_conversation_paused(PHONE) is True
        assert await orchestrator.get_pause_time_remaining(PHONE) == 120

    @pytest.mark.asyncio
    async def test_unpause(self, orchestrator):
        await orchestrator.pause_conversation(PHONE)
        await orchestrator.unpause_conversation(PHONE)

        assert await orchestrator.is_conversation_paused(PHONE) is False
        assert await orchestrator.get_pause_time_remaining(PHONE) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_apology(self, orchestrator, interpreter):
        interpreter.interpret = AsyncMock(side_effect=RuntimeError("boom"))

        response = await orchestrator.process_message(PHONE, "oi")

        assert response.intent == Intent.SMALL_TALK
        assert response.message == (
            "Desculpe, ocorreu um erro ao processar sua mensagem. Tente novamente."
        )

    @pytest.mark.asyncio
    async def test_clear_history(self, orchestrator, interpreter, store):
        interpreter.script(Intent.SMALL_TALK, "Olá!")
        await orchestrator.process_message(PHONE, "oi")

        assert await orchestrator.clear_history(PHONE) is True

        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.messages == []


class SlowInterpreter(ScriptedInterpreter):
    """Scripted interpreter that takes a while to answer."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def interpret(self, conversation, message):
        await asyncio.sleep(self.delay)
        return await super().interpret(conversation, message)


class TestConversationSerialization:
    """Test that turns for one phone never interleave."""

    def build(self, store, scheduler, clock, interpreter, locks):
        return DialogueOrchestrator(
            store=store,
            interpreter=interpreter,
            scheduler=scheduler,
            parser=DateTimeParser(now=clock),
            responses=ResponseGenerator(business_address=ADDRESS),
            locks=locks,
        )

    @pytest.mark.asyncio
    async def test_slow_concurrent_turns_keep_both_slots(self, store, scheduler, clock):
        interpreter = SlowInterpreter(delay=0.05)
        interpreter.script(Intent.SCHEDULE_APPOINTMENT, clientName="João")
        interpreter.script(Intent.SCHEDULE_APPOINTMENT, appointmentDate="amanhã")
        orchestrator = self.build(
            store, scheduler, clock, interpreter, ConversationLocks(use_redis=False, wait=5.0)
        )

        await asyncio.gather(
            orchestrator.process_message(PHONE, "João"),
            orchestrator.process_message(PHONE, "amanhã"),
        )

        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.context == {"clientName": "João", "appointmentDate": "amanhã"}
        assert len(conversation.messages) == 4

    @pytest.mark.asyncio
    async def test_busy_conversation_is_rejected_not_processed(
        self, store, scheduler, clock, interpreter
    ):
        locks = ConversationLocks(use_redis=False, wait=0.05)
        orchestrator = self.build(store, scheduler, clock, interpreter, locks)
        interpreter.script(Intent.SMALL_TALK, "Olá!")

        async with locks.hold(PHONE):
            response = await orchestrator.process_message(PHONE, "oi")

        assert response.intent == Intent.SMALL_TALK
        assert response.message == (
            "Desculpe, ocorreu um erro ao processar sua mensagem. Tente novamente."
        )
        assert interpreter.calls == []
        conversation = await store.find_or_create_by_phone(PHONE)
        assert conversation.messages == []
