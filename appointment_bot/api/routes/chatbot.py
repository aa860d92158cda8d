"""
Chatbot API Endpoints.

Direct access to the dialogue orchestrator: send a message, clear a
conversation and manage the human-intervention pause.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from appointment_bot.core.scheduling.orchestrator import (
    DialogueOrchestrator,
    get_dialogue_orchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chatbot", tags=["Chatbot"])


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)


class MessageRequest(CamelModel):
    """Inbound chat message."""

    phone_number: str = Field(
        ...,
        alias="phoneNumber",
        min_length=1,
        max_length=32,
        description="Client phone number",
        examples=["5583999990000"],
    )
    message: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="Client message text",
        examples=["Quero agendar uma visita amanhã às 14h"],
    )


class MessageResponse(CamelModel):
    """Reply to a chat message."""

    success: bool = True
    message: Optional[str] = Field(
        default=None,
        description="Reply to send, or null when the conversation is paused",
    )
    intent: Optional[str] = Field(default=None, description="Interpreted intent")
    appointment_created: bool = Field(default=False, alias="appointmentCreated")
    appointment_id: Optional[str] = Field(default=None, alias="appointmentId")
    phone_number: str = Field(..., alias="phoneNumber")
    paused: bool = Field(default=False, description="True when the bot stayed silent")


class PauseRequest(BaseModel):
    """Pause duration."""

    hours: float = Field(
        default=2,
        gt=0,
        le=24 * 7,
        description="Hours the bot stays silent for this phone number",
    )


class PauseStatusResponse(CamelModel):
    """Pause state of a conversation."""

    phone_number: str = Field(..., alias="phoneNumber")
    is_paused: bool = Field(..., alias="isPaused")
    remaining_minutes: Optional[int] = Field(default=None, alias="remainingMinutes")
    remaining_hours: Optional[float] = Field(default=None, alias="remainingHours")


class StatusResponse(CamelModel):
    success: bool = True
    message: str


@router.post(
    "/message",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Send a chat message",
    description="Process a client message and return the reply.",
)
async def send_message(
    request: MessageRequest,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> MessageResponse:
    """
    Process a chat message.

    Processing failures already come back as an apology reply, so this
    endpoint answers 200 for every well-formed request.
    """
    response = await orchestrator.process_message(request.phone_number, request.message)

    if response is None:
        return MessageResponse(phone_number=request.phone_number, paused=True)

    return MessageResponse(
        message=response.message,
        intent=response.intent.value,
        appointment_created=response.appointment_created,
        appointment_id=response.appointment_id,
        phone_number=request.phone_number,
    )


@router.delete(
    "/history/{phone_number}",
    response_model=StatusResponse,
    summary="Clear conversation history",
)
async def clear_history(
    phone_number: str,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> StatusResponse:
    """Delete the conversation and all its messages."""
    deleted = await orchestrator.clear_history(phone_number)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    logger.info(f"History cleared for {phone_number}")
    return StatusResponse(message="Histórico removido")


@router.post(
    "/conversations/{phone_number}/pause",
    response_model=PauseStatusResponse,
    summary="Pause the bot for a conversation",
)
async def pause_conversation(
    phone_number: str,
    request: Optional[PauseRequest] = None,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> PauseStatusResponse:
    hours = request.hours if request else None
    await orchestrator.pause_conversation(phone_number, hours=hours)
    return await _pause_status(phone_number, orchestrator)


@router.post(
    "/conversations/{phone_number}/unpause",
    response_model=PauseStatusResponse,
    summary="Resume the bot for a conversation",
)
async def unpause_conversation(
    phone_number: str,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> PauseStatusResponse:
    await orchestrator.unpause_conversation(phone_number)
    return await _pause_status(phone_number, orchestrator)


@router.get(
    "/conversations/{phone_number}/pause-status",
    response_model=PauseStatusResponse,
    summary="Get pause status",
)
async def pause_status(
    phone_number: str,
    orchestrator: DialogueOrchestrator = Depends(get_dialogue_orchestrator),
) -> PauseStatusResponse:
    return await _pause_status(phone_number, orchestrator)


async def _pause_status(
    phone_number: str,
    orchestrator: DialogueOrchestrator,
) -> PauseStatusResponse:
    remaining = await orchestrator.get_pause_time_remaining(phone_number)
    return PauseStatusResponse(
        phone_number=phone_number,
        is_paused=remaining is not None,
        remaining_minutes=remaining,
        remaining_hours=round(remaining / 60, 2) if remaining is not None else None,
    )
