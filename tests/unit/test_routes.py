"""Tests for the HTTP routes."""

import uuid
from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from appointment_bot.core.intelligence.types import Intent
from appointment_bot.core.scheduling.errors import (
    AppointmentAlreadyCancelledError,
    AppointmentNotFoundError,
    AppointmentNotReschedulableError,
    SlotUnavailableError,
    SlotValidationError,
)
from appointment_bot.core.scheduling.orchestrator import ChatbotResponse, get_dialogue_orchestrator
from appointment_bot.core.scheduling.scheduler import get_appointment_scheduler
from appointment_bot.main import app
from appointment_bot.models.database import Appointment, AppointmentStatus, AppointmentType

PHONE = "5583999990000"
APPOINTMENT_ID = uuid.UUID("6f1c2b9e-3a4d-4e5f-8a7b-1c2d3e4f5a6b")


def make_appointment(**overrides) -> Appointment:
    values = dict(
        id=APPOINTMENT_ID,
        client_name="João",
        client_phone=PHONE,
        type=AppointmentType.IN_STORE,
        start=datetime(2026, 10, 20, 14, 0),
        end=datetime(2026, 10, 20, 15, 0),
        slot_start=datetime(2026, 10, 20, 14, 0),
        status=AppointmentStatus.SCHEDULED,
        created_by="api",
    )
    values.update(overrides)
    return Appointment(**values)


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.process_message = AsyncMock(return_value=ChatbotResponse(
        message="Olá! Qual é o seu nome?",
        intent=Intent.SMALL_TALK,
    ))
    orchestrator.clear_history = AsyncMock(return_value=True)
    orchestrator.pause_conversation = AsyncMock()
    orchestrator.unpause_conversation = AsyncMock()
    orchestrator.handle_operator_message = AsyncMock()
    orchestrator.get_pause_time_remaining = AsyncMock(return_value=None)
    return orchestrator


@pytest.fixture
def mock_scheduler():
    scheduler = MagicMock()
    scheduler.get_available_slots = AsyncMock(return_value=["08:00", "09:00", "11:00"])
    scheduler.list_appointments = AsyncMock(return_value=[make_appointment()])
    scheduler.get_appointment = AsyncMock(return_value=make_appointment())
    scheduler.create_appointment = AsyncMock(return_value=make_appointment())
    scheduler.validate_appointment = AsyncMock()
    scheduler.default_end = lambda start: start + timedelta(hours=1)
    scheduler.reschedule_appointment = AsyncMock(
        return_value=make_appointment(start=datetime(2026, 10, 21, 9, 0))
    )
    scheduler.cancel_appointment = AsyncMock(
        return_value=make_appointment(status=AppointmentStatus.CANCELLED)
    )
    scheduler.sync_calendar = AsyncMock(return_value=(
        make_appointment(calendar_event_id="evt-1", calendar_sync_status="synced"),
        True,
    ))
    return scheduler


@pytest.fixture
def client(mock_orchestrator, mock_scheduler):
    app.dependency_overrides[get_dialogue_orchestrator] = lambda: mock_orchestrator
    app.dependency_overrides[get_appointment_scheduler] = lambda: mock_scheduler
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestChatbotRoutes:
    """Test /chatbot endpoints."""

    def test_send_message(self, client, mock_orchestrator):
        response = client.post("/chatbot/message", json={"phoneNumber": PHONE, "message": "oi"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Olá! Qual é o seu nome?"
        assert body["intent"] == "SMALL_TALK"
        assert body["appointmentCreated"] is False
        assert body["appointmentId"] is None
        assert body["phoneNumber"] == PHONE
        assert body["paused"] is False
        mock_orchestrator.process_message.assert_awaited_once_with(PHONE, "oi")

    def test_send_message_booking(self, client, mock_orchestrator):
        mock_orchestrator.process_message.return_value = ChatbotResponse(
            message="✅ Agendamento confirmado!",
            intent=Intent.CONFIRM_APPOINTMENT,
            appointment_created=True,
            appointment_id="abc-123",
        )

        body = client.post("/chatbot/message", json={"phoneNumber": PHONE, "message": "sim"}).json()

        assert body["appointmentCreated"] is True
        assert body["appointmentId"] == "abc-123"

    def test_send_message_paused(self, client, mock_orchestrator):
        mock_orchestrator.process_message.return_value = None

        body = client.post("/chatbot/message", json={"phoneNumber": PHONE, "message": "oi"}).json()

        assert body["paused"] is True
        assert body["message"] is None

    def test_send_message_validation(self, client):
        response = client.post("/chatbot/message", json={"phoneNumber": PHONE, "message": ""})

        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"

    def test_clear_history(self, client, mock_orchestrator):
        response = client.delete(f"/chatbot/history/{PHONE}")

        assert response.status_code == 200
        mock_orchestrator.clear_history.assert_awaited_once_with(PHONE)

    def test_clear_history_unknown(self, client, mock_orchestrator):
        mock_orchestrator.clear_history.return_value = False

        assert client.delete(f"/chatbot/history/{PHONE}").status_code == 404

    def test_pause(self, client, mock_orchestrator):
        mock_orchestrator.get_pause_time_remaining.return_value = 180

        response = client.post(f"/chatbot/conversations/{PHONE}/pause", json={"hours": 3})

        assert response.status_code == 200
        mock_orchestrator.pause_conversation.assert_awaited_once_with(PHONE, hours=3)
        body = response.json()
        assert body["isPaused"] is True
        assert body["remainingMinutes"] == 180
        assert body["remainingHours"] == 3.0

    def test_pause_default_hours(self, client, mock_orchestrator):
        client.post(f"/chatbot/conversations/{PHONE}/pause")

        mock_orchestrator.pause_conversation.assert_awaited_once_with(PHONE, hours=None)

    def test_unpause(self, client, mock_orchestrator):
        body = client.post(f"/chatbot/conversations/{PHONE}/unpause").json()

        mock_orchestrator.unpause_conversation.assert_awaited_once_with(PHONE)
        assert body["isPaused"] is False
        assert body["remainingMinutes"] is None

    def test_pause_status(self, client, mock_orchestrator):
        mock_orchestrator.get_pause_time_remaining.return_value = 45

        body = client.get(f"/chatbot/conversations/{PHONE}/pause-status").json()

        assert body == {
            "phoneNumber": PHONE,
            "isPaused": True,
            "remainingMinutes": 45,
            "remainingHours": 0.75,
        }


class TestWhatsAppRoutes:
    """Test the transport webhook."""

    def test_client_message(self, client, mock_orchestrator):
        body = client.post("/whatsapp/events", json={"from": PHONE, "body": "oi"}).json()

        assert body == {"reply": "Olá! Qual é o seu nome?"}
        mock_orchestrator.process_message.assert_awaited_once_with(PHONE, "oi")

    def test_group_ignored(self, client, mock_orchestrator):
        body = client.post(
            "/whatsapp/events", json={"from": PHONE, "body": "oi", "isGroup": True}
        ).json()

        assert body == {"reply": None}
        mock_orchestrator.process_message.assert_not_awaited()

    def test_operator_message_pauses(self, client, mock_orchestrator):
        body = client.post(
            "/whatsapp/events", json={"from": PHONE, "body": "Oi, aqui é o Carlos", "fromMe": True}
        ).json()

        assert body == {"reply": None}
        mock_orchestrator.handle_operator_message.assert_awaited_once_with(PHONE)
        mock_orchestrator.process_message.assert_not_awaited()

    def test_media_marker(self, client, mock_orchestrator):
        client.post("/whatsapp/events", json={"from": PHONE, "body": "meu sofá", "hasMedia": True})

        mock_orchestrator.process_message.assert_awaited_once_with(PHONE, "meu sofá [IMAGEM ENVIADA]")

    def test_media_without_caption(self, client, mock_orchestrator):
        client.post("/whatsapp/events", json={"from": PHONE, "body": "", "hasMedia": True})

        mock_orchestrator.process_message.assert_awaited_once_with(PHONE, "[IMAGEM ENVIADA]")

    def test_blank_body_ignored(self, client, mock_orchestrator):
        body = client.post("/whatsapp/events", json={"from": PHONE, "body": "   "}).json()

        assert body == {"reply": None}
        mock_orchestrator.process_message.assert_not_awaited()

    def test_paused_conversation_no_reply(self, client, mock_orchestrator):
        mock_orchestrator.process_message.return_value = None

        body = client.post("/whatsapp/events", json={"from": PHONE, "body": "oi"}).json()

        assert body == {"reply": None}


class TestAppointmentRoutes:
    """Test /appointments endpoints."""

    def test_available_slots(self, client, mock_scheduler):
        response = client.get("/appointments/available-slots?date=2026-10-20&type=ONLINE")

        assert response.status_code == 200
        assert response.json() == {
            "date": "2026-10-20",
            "type": "ONLINE",
            "slots": ["08:00", "09:00", "11:00"],
        }
        day, appointment_type = mock_scheduler.get_available_slots.call_args.args
        assert str(day) == "2026-10-20"
        assert appointment_type.value == "ONLINE"

    def test_invalid_type(self, client):
        response = client.get("/appointments/available-slots?date=2026-10-20&type=PHONE")

        assert response.status_code == 422

    def test_list(self, client, mock_scheduler):
        response = client.get("/appointments?type=IN_STORE&start=2026-10-20T00:00:00")

        assert response.status_code == 200
        body = response.json()
        assert len(body) == 1
        assert body[0]["id"] == str(APPOINTMENT_ID)
        assert body[0]["clientName"] == "João"
        assert body[0]["status"] == "SCHEDULED"
        start, end, appointment_type = mock_scheduler.list_appointments.call_args.args
        assert start == datetime(2026, 10, 20)
        assert end is None
        assert appointment_type == AppointmentType.IN_STORE

    def test_get(self, client, mock_scheduler):
        body = client.get(f"/appointments/{APPOINTMENT_ID}").json()

        assert body["clientPhone"] == PHONE
        assert body["start"] == "2026-10-20T14:00:00"
        mock_scheduler.get_appointment.assert_awaited_once_with(APPOINTMENT_ID)

    def test_get_unknown(self, client, mock_scheduler):
        mock_scheduler.get_appointment.return_value = None

        response = client.get(f"/appointments/{APPOINTMENT_ID}")

        assert response.status_code == 404
        assert response.json()["detail"] == "Agendamento não encontrado."

    def test_get_malformed_id(self, client):
        assert client.get("/appointments/not-a-uuid").status_code == 422

    def test_create(self, client, mock_scheduler):
        response = client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "IN_STORE",
            "date": "20/10/2026",
            "time": "14:00",
        })

        assert response.status_code == 201
        assert response.json()["id"] == str(APPOINTMENT_ID)
        data = mock_scheduler.create_appointment.call_args.args[0]
        assert data.start == datetime(2026, 10, 20, 14, 0)
        assert data.type == AppointmentType.IN_STORE
        assert data.created_by == "api"

    def test_create_with_editor(self, client, mock_scheduler):
        client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "ONLINE",
            "date": "20/10/2026",
            "time": "14:00",
            "editor": "ana",
        })

        assert mock_scheduler.create_appointment.call_args.args[0].created_by == "ana"

    def test_create_wrong_date_format(self, client, mock_scheduler):
        response = client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "IN_STORE",
            "date": "2026-10-20",
            "time": "14:00",
        })

        assert response.status_code == 422
        mock_scheduler.create_appointment.assert_not_awaited()

    def test_create_impossible_date(self, client, mock_scheduler):
        response = client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "IN_STORE",
            "date": "31/02/2026",
            "time": "14:00",
        })

        assert response.status_code == 400
        assert response.json()["detail"] == "Data ou horário inválido"
        mock_scheduler.create_appointment.assert_not_awaited()

    def test_create_rule_violation(self, client, mock_scheduler):
        mock_scheduler.create_appointment.side_effect = SlotValidationError(
            "Atendimentos disponíveis apenas de segunda a sexta-feira."
        )

        response = client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "IN_STORE",
            "date": "24/10/2026",
            "time": "10:00",
        })

        assert response.status_code == 400
        assert response.json()["detail"] == (
            "Atendimentos disponíveis apenas de segunda a sexta-feira."
        )

    def test_create_slot_taken(self, client, mock_scheduler):
        mock_scheduler.create_appointment.side_effect = SlotUnavailableError()

        response = client.post("/appointments", json={
            "clientName": "João",
            "clientPhone": PHONE,
            "type": "IN_STORE",
            "date": "20/10/2026",
            "time": "14:00",
        })

        assert response.status_code == 409

    def test_validate_free_slot(self, client, mock_scheduler):
        body = client.post("/appointments/validate", json={
            "date": "20/10/2026", "time": "14:00", "type": "ONLINE",
        }).json()

        assert body["isValid"] is True
        assert body["message"] is None
        assert body["formattedDateTime"] == "terça-feira, 20 de outubro de 2026 às 14:00"
        start, end, appointment_type = mock_scheduler.validate_appointment.call_args.args
        assert end - start == timedelta(hours=1)
        assert appointment_type == AppointmentType.ONLINE

    def test_validate_taken_slot(self, client, mock_scheduler):
        mock_scheduler.validate_appointment.side_effect = SlotUnavailableError()

        body = client.post("/appointments/validate", json={
            "date": "20/10/2026", "time": "14:00", "type": "ONLINE",
        }).json()

        assert body["isValid"] is False
        assert body["message"] == "Horário não disponível. Por favor, escolha outro horário."
        assert body["formattedDateTime"] is None

    def test_reschedule(self, client, mock_scheduler):
        response = client.put(
            f"/appointments/{APPOINTMENT_ID}/reschedule",
            json={"date": "21/10/2026", "time": "09:00"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["appointment"]["start"] == "2026-10-21T09:00:00"
        mock_scheduler.reschedule_appointment.assert_awaited_once_with(
            APPOINTMENT_ID, datetime(2026, 10, 21, 9, 0), editor="api"
        )

    def test_reschedule_cancelled(self, client, mock_scheduler):
        mock_scheduler.reschedule_appointment.side_effect = AppointmentNotReschedulableError()

        response = client.put(
            f"/appointments/{APPOINTMENT_ID}/reschedule",
            json={"date": "21/10/2026", "time": "09:00"},
        )

        assert response.status_code == 409

    def test_cancel(self, client, mock_scheduler):
        response = client.post(f"/appointments/{APPOINTMENT_ID}/cancel")

        assert response.status_code == 200
        assert response.json()["appointment"]["status"] == "CANCELLED"
        mock_scheduler.cancel_appointment.assert_awaited_once_with(APPOINTMENT_ID, "api")

    def test_cancel_with_editor(self, client, mock_scheduler):
        client.post(f"/appointments/{APPOINTMENT_ID}/cancel", json={"editor": "ana"})

        mock_scheduler.cancel_appointment.assert_awaited_once_with(APPOINTMENT_ID, "ana")

    def test_cancel_twice(self, client, mock_scheduler):
        mock_scheduler.cancel_appointment.side_effect = AppointmentAlreadyCancelledError()

        response = client.post(f"/appointments/{APPOINTMENT_ID}/cancel")

        assert response.status_code == 409
        assert response.json()["detail"] == "Este agendamento já foi cancelado."

    def test_cancel_unknown(self, client, mock_scheduler):
        mock_scheduler.cancel_appointment.side_effect = AppointmentNotFoundError()

        assert client.post(f"/appointments/{APPOINTMENT_ID}/cancel").status_code == 404

    def test_sync_calendar(self, client, mock_scheduler):
        response = client.post(f"/appointments/{APPOINTMENT_ID}/sync-calendar")

        assert response.status_code == 200
        assert response.json()["appointment"]["calendarEventId"] == "evt-1"
        mock_scheduler.sync_calendar.assert_awaited_once_with(APPOINTMENT_ID, "api")

    def test_sync_calendar_failure(self, client, mock_scheduler):
        mock_scheduler.sync_calendar.return_value = (make_appointment(), False)

        response = client.post(f"/appointments/{APPOINTMENT_ID}/sync-calendar")

        assert response.status_code == 502

    def test_sync_cancelled(self, client, mock_scheduler):
        mock_scheduler.sync_calendar.side_effect = AppointmentNotReschedulableError(
            "Não é possível sincronizar um agendamento cancelado."
        )

        assert client.post(f"/appointments/{APPOINTMENT_ID}/sync-calendar").status_code == 409


class TestHealthRoutes:
    """Test health endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client):
        with patch("appointment_bot.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
             patch("appointment_bot.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "redis": "ok"}

    def test_ready_without_redis(self, client):
        with patch("appointment_bot.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
             patch("appointment_bot.api.routes.health.check_redis_health", AsyncMock(return_value=False)):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["redis"] == "degraded"

    def test_not_ready_without_database(self, client):
        with patch("appointment_bot.api.routes.health.check_db_health", AsyncMock(return_value=False)), \
             patch("appointment_bot.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_root(self, client):
        body = client.get("/").json()

        assert body["name"] == "appointment-bot"
        assert body["status"] == "running"
