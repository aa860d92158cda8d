"""
Language-understanding adapter.

Sends the dialogue state, recent history and the current message to
Claude and turns the JSON answer into an Interpretation. Any failure
(no API key, API error, timeout, malformed JSON) becomes the default
small-talk apology, so callers always get a usable result.
"""

import json
import logging
from typing import Optional

from appointment_bot.config import settings
from appointment_bot.core.conversation.store import Conversation
from appointment_bot.core.intelligence.types import Intent, Interpretation, SlotData
from appointment_bot.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client
from appointment_bot.models.database import MessageRole

logger = logging.getLogger(__name__)


DEFAULT_REPLY = "Desculpe, não entendi. Pode reformular?"

SYSTEM_PROMPT = """Você é {assistant}, consultora virtual da {business}, e consegue agendar atendimentos diretamente pelo chat.

## O que você pode fazer

- Agendar reuniões ONLINE
- Agendar visitas presenciais à loja (IN_STORE)
- Confirmar, cancelar e remarcar agendamentos
- Nunca diga que não pode agendar ou que vai transferir para outra pessoa.

## Fluxo de atendimento (siga nesta ordem)

1. Cumprimente, apresente-se e pergunte o nome do cliente.
2. Pergunte se ele quer FABRICAR ou REFORMAR um estofado.
3. REFORMAR: peça fotos do estofado, diga que a equipe entrará em contato e encerre.
4. FABRICAR: pergunte qual estofado ele quer fabricar.
5. Pergunte se já tem projeto ou inspiração (projectReference).
6. Pergunte se prefere reunião ONLINE ou visita à loja (IN_STORE).
7. Colete data e horário. Se vierem juntos ("amanhã 14h"), preencha os DOIS slots.
8. Recapitule tudo e peça confirmação (SIM/NÃO).

Atendimentos: segunda a sexta, das {open_hour:02d}:00 às {close_hour:02d}:00, duração de uma hora.

## Cancelamento e remarcação

- "cancelar", "desmarcar", "não posso mais ir" -> CANCEL_APPOINTMENT
- "remarcar", "reagendar", "mudar o horário", "outro horário" -> RESCHEDULE_APPOINTMENT
- Em RESCHEDULE_APPOINTMENT colete a nova data e horário como num agendamento novo.
- Quando o cliente confirmar ("sim") um cancelamento ou remarcação, mantenha a mesma intent e envie confirmation="yes".

## Intents

- SMALL_TALK: conversa geral, cumprimentos
- ASK_INFORMATION: dúvidas sobre a loja, serviços, endereço
- COLLECT_DATA: o cliente está respondendo uma pergunta sua
- SCHEDULE_APPOINTMENT: quer agendar ou está informando dados do agendamento
- CONFIRM_APPOINTMENT: confirmou o agendamento recapitulado (envie todos os slots de novo)
- CANCEL_APPOINTMENT: quer cancelar um agendamento existente
- RESCHEDULE_APPOINTMENT: quer mudar a data ou horário de um agendamento existente
- CANCEL: desistiu do assunto atual da conversa
- GOODBYE: despedida

Estado atual da conversa: {state}
Dados já coletados: {context}

## Resposta

Responda SOMENTE com JSON válido, sem texto fora dele:
{{
  "reply": "mensagem amigável em português",
  "intent": "SMALL_TALK|ASK_INFORMATION|COLLECT_DATA|SCHEDULE_APPOINTMENT|CONFIRM_APPOINTMENT|CANCEL_APPOINTMENT|RESCHEDULE_APPOINTMENT|CANCEL|GOODBYE",
  "slots": {{
    "clientName": "nome ou null",
    "serviceIntent": "FABRICAR|REFORMAR ou null",
    "appointmentType": "ONLINE|IN_STORE ou null",
    "appointmentDate": "texto da data: DD/MM/AAAA, hoje, amanhã, segunda... ou null",
    "appointmentTime": "texto do horário: 14:00, 14h, 2 da tarde... ou null",
    "confirmation": "yes|no ou null",
    "projectReference": "descrição do projeto ou inspiração, ou null",
    "cancelReason": "motivo do cancelamento ou null",
    "rescheduleReason": "motivo da remarcação ou null"
  }}
}}

Mantenha um tom humano e acolhedor e confirme cada informação com naturalidade."""

USER_PROMPT = """Histórico recente:
{history}

Mensagem atual: "{message}\""""


class LanguageInterpreter:
    """Claude-backed interpreter for client messages."""

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize interpreter.

        Args:
            claude_client: Optional Claude client (for testing)
        """
        self._client = claude_client

    def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = get_claude_client()
        return self._client

    async def interpret(self, conversation: Conversation, message: str) -> Interpretation:
        """
        Interpret one client message.

        Args:
            conversation: Session snapshot with recent history
            message: The new client message

        Returns:
            Interpretation; the default small-talk apology on any failure
        """
        try:
            client = self._get_client()
            response = await client.generate(
                prompt=USER_PROMPT.format(
                    history=self.serialize_history(conversation),
                    message=message,
                ),
                system_prompt=self.build_system_prompt(conversation),
                temperature=settings.llm_temperature,
            )
        except ClaudeClientError as e:
            logger.error(f"Claude API error: {e}")
            return self.default()

        return self.parse_response(response.content)

    def build_system_prompt(self, conversation: Conversation) -> str:
        """System instruction with the protocol, state and collected slots."""
        context = conversation.context or {}
        return SYSTEM_PROMPT.format(
            assistant=settings.assistant_name,
            business=settings.business_name,
            open_hour=settings.business_start_hour,
            close_hour=settings.business_end_hour,
            state=conversation.state.value,
            context=json.dumps(context, ensure_ascii=False) if context else "nenhum",
        )

    def serialize_history(self, conversation: Conversation) -> str:
        """Render the last messages as "Cliente:" / "Atendente:" lines."""
        recent = conversation.messages[-settings.llm_history_window:]
        if not recent:
            return "Histórico vazio."

        lines = []
        for msg in recent:
            speaker = "Cliente" if msg.role == MessageRole.USER else settings.assistant_name
            lines.append(f"{speaker}: {msg.content}")
        return "\n".join(lines)

    def parse_response(self, response: str) -> Interpretation:
        """Parse the model's JSON, falling back to the default on bad output."""
        # Clean markdown if present
        cleaned = response.strip()
        if cleaned.startswith("```"):
            lines = cleaned.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            cleaned = "\n".join(lines).strip()

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable model output: {e}")
            return self.default(raw_response=response)

        if not isinstance(data, dict):
            logger.warning(f"Model output is not an object: {type(data).__name__}")
            return self.default(raw_response=response)

        reply = data.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            reply = DEFAULT_REPLY

        intent_str = data.get("intent")
        try:
            intent = Intent(str(intent_str).strip().upper())
        except ValueError:
            intent = Intent.SMALL_TALK

        return Interpretation(
            reply=reply.strip(),
            intent=intent,
            slots=SlotData.from_dict(data.get("slots")),
            raw_response=response,
        )

    @staticmethod
    def default(raw_response: Optional[str] = None) -> Interpretation:
        """The safe small-talk apology."""
        return Interpretation(
            reply=DEFAULT_REPLY,
            intent=Intent.SMALL_TALK,
            slots=SlotData(),
            raw_response=raw_response,
            fallback_used=True,
        )


# Singleton
_interpreter: Optional[LanguageInterpreter] = None


def get_language_interpreter() -> LanguageInterpreter:
    """Get singleton LanguageInterpreter."""
    global _interpreter
    if _interpreter is None:
        _interpreter = LanguageInterpreter()
    return _interpreter
