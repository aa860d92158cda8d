"""
WhatsApp transport webhook.

The WhatsApp bridge posts every message it sees on the business number,
including the ones a human operator sends from the phone. An operator
message pauses the bot for that client.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from appointment_bot.core.scheduling.orchestrator import (
    DialogueOrchestrator,
    get_dialogue_orchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])

MEDIA_MARKER = " [IMAGEM ENVIADA]"


class InboundEvent(BaseModel):
    """Message event from the WhatsApp bridge."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(
        ...,
        alias="from",
        min_length=1,
        description="Client phone number (for fromMe events, the conversation partner)",
    )
    body: str = Field(default="", description="Message text")
    has_media: bool = Field(default=False, alias="hasMedia")
    from_me: bool = Field(default=False, alias="fromMe", description="Sent from the business phone")
    is_group: bool = Field(default=False, alias="isGroup")


class EventReply(BaseModel):
    reply: Optional[str] = Field(
        default=None,
        description="Text to send back, or null when nothing should be sent",
    )


@router.post(
    "/events",
    response_model=EventReply,
    status_code=status.HTTP_200_OK,
    summary="Inbound WhatsApp event",
)
async def inbound_event(
    event: InboundEvent,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> EventReply:
    """Route one transport event to the orchestrator."""
    if event.is_group:
        return EventReply()

    if event.from_me:
        logger.info(f"Operator replied to {event.sender}, pausing bot")
        await orchestrator.handle_operator_message(event.sender)
        return EventReply()

    text = event.body.strip()
    if event.has_media:
        text = f"{text}{MEDIA_MARKER}".strip()

    if not text:
        return EventReply()

    response = await orchestrator.process_message(event.sender, text)
    if response is None:
        return EventReply()

    return EventReply(reply=response.message)
