"""
Reply templates for the dialogue.

Fixed Portuguese messages for the outcomes the orchestrator decides
itself (bookings, cancellations, reschedules, failures). Everything
else is the language model's own reply.
"""

from datetime import datetime
from typing import Optional

from appointment_bot.config import get_settings
from appointment_bot.core.scheduling.datetime_parser import format_long_date, format_time
from appointment_bot.models.database import Appointment, AppointmentType


def type_label(appointment_type: AppointmentType) -> str:
    return "online" if appointment_type == AppointmentType.ONLINE else "na loja"


class ResponseGenerator:
    """Template replies. Stateless apart from business settings."""

    def __init__(self, business_address: Optional[str] = None):
        self.business_address = business_address or get_settings().business_address

    def _when_lines(self, start: datetime, new: bool = False) -> list[str]:
        date_label = "Nova data" if new else "Data"
        time_label = "Novo horário" if new else "Horário"
        return [
            f"📅 {date_label}: {format_long_date(start)}",
            f"🕐 {time_label}: {format_time(start)}",
        ]

    def _location_line(self, appointment: Appointment, rescheduled: bool = False) -> str:
        if appointment.type == AppointmentType.ONLINE:
            if appointment.meeting_link:
                return f"🔗 Link da reunião: {appointment.meeting_link}"
            if rescheduled:
                return "🔗 Você receberá o novo link da reunião em breve."
            return "🔗 Você receberá o link da reunião em breve."
        return f"📍 Endereço: {self.business_address}"

    # === Booking ===

    def booking_confirmed(self, appointment: Appointment) -> str:
        """Canned confirmation sent after a booking succeeds."""
        lines = ["✅ Agendamento confirmado!", ""]
        lines.extend(self._when_lines(appointment.start))
        lines.append(f"📍 Tipo: {type_label(appointment.type)}")
        lines.append("")
        lines.append(self._location_line(appointment))
        lines.append("")
        lines.append("Até breve! 😊")
        return "\n".join(lines)

    def slot_unavailable(self, free_slots: Optional[list[str]] = None) -> str:
        """Re-prompt after a conflict, offering free times on the same day."""
        message = "Desculpe, este horário não está disponível."
        if free_slots:
            return f"{message} Horários livres nesse dia: {', '.join(free_slots)}. Qual prefere?"
        return f"{message} Pode escolher outro?"

    def parse_failure(self) -> str:
        return "Desculpe, não consegui entender a data ou horário. Pode informar novamente?"

    # === Existing appointments ===

    def no_active_appointment(self) -> str:
        return "Não encontrei nenhum agendamento ativo em seu nome. Posso ajudar com algo mais?"

    def appointment_recap(self, appointment: Appointment, question: str) -> str:
        """Summary of an appointment followed by a question."""
        lines = ["Encontrei seu agendamento:", ""]
        lines.extend(self._when_lines(appointment.start))
        lines.append(f"📍 Tipo: {type_label(appointment.type)}")
        lines.append("")
        lines.append(question)
        return "\n".join(lines)

    def confirm_cancellation(self, appointment: Appointment) -> str:
        return self.appointment_recap(appointment, "Confirma o cancelamento? (Sim/Não)")

    def ask_new_slot(self, appointment: Appointment) -> str:
        return self.appointment_recap(
            appointment, "Para qual data e horário gostaria de remarcar?"
        )

    def cancelled(self) -> str:
        return (
            "✅ Agendamento cancelado com sucesso!\n\n"
            "Se precisar agendar novamente, é só me avisar. 😊"
        )

    def already_cancelled(self) -> str:
        return "Esse agendamento já estava cancelado. Posso ajudar com algo mais?"

    def confirm_reschedule(self, new_start: datetime) -> str:
        lines = ["Perfeito! Confirma o reagendamento para:", ""]
        lines.extend(self._when_lines(new_start))
        lines.append("")
        lines.append("Confirma? (Sim/Não)")
        return "\n".join(lines)

    def rescheduled(self, appointment: Appointment) -> str:
        lines = ["✅ Agendamento remarcado com sucesso!", ""]
        lines.extend(self._when_lines(appointment.start, new=True))
        lines.append(f"📍 Tipo: {type_label(appointment.type)}")
        lines.append("")
        lines.append(self._location_line(appointment, rescheduled=True))
        lines.append("")
        lines.append("Até breve! 😊")
        return "\n".join(lines)

    # === Generic ===

    def apology(self) -> str:
        """Reply used when processing a message fails unexpectedly."""
        return "Desculpe, ocorreu um erro ao processar sua mensagem. Tente novamente."


# Singleton
_generator: Optional[ResponseGenerator] = None


def get_response_generator() -> ResponseGenerator:
    """Get singleton ResponseGenerator."""
    global _generator
    if _generator is None:
        _generator = ResponseGenerator()
    return _generator
