"""
Appointment API Endpoints.

Back-office access to the scheduler, for channels other than the chat:
list, read, book, validate, reschedule and cancel appointments, list free
slots, and push an appointment to the calendar again after a failed sync.

Rule violations answer 400, slot conflicts and state conflicts 409.
"""

import datetime
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from appointment_bot.config import get_settings
from appointment_bot.core.scheduling.datetime_parser import (
    DateTimeParser,
    format_long_date,
    format_time,
    get_datetime_parser,
)
from appointment_bot.core.scheduling.errors import (
    AppointmentAlreadyCancelledError,
    AppointmentNotFoundError,
    AppointmentNotReschedulableError,
    SchedulingError,
    SlotUnavailableError,
    SlotValidationError,
)
from appointment_bot.core.scheduling.scheduler import (
    AppointmentCreate,
    AppointmentScheduler,
    get_appointment_scheduler,
)
from appointment_bot.models.database import AppointmentStatus, AppointmentType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

DATE_PATTERN = r"^\d{2}/\d{2}/\d{4}$"
TIME_PATTERN = r"^\d{2}:\d{2}$"

ERROR_STATUS = {
    SlotValidationError: status.HTTP_400_BAD_REQUEST,
    SlotUnavailableError: status.HTTP_409_CONFLICT,
    AppointmentNotFoundError: status.HTTP_404_NOT_FOUND,
    AppointmentAlreadyCancelledError: status.HTTP_409_CONFLICT,
    AppointmentNotReschedulableError: status.HTTP_409_CONFLICT,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class AppointmentResponse(CamelModel):
    id: uuid.UUID
    client_name: str = Field(..., alias="clientName")
    client_phone: str = Field(..., alias="clientPhone")
    type: AppointmentType
    start: datetime.datetime
    end: datetime.datetime
    status: AppointmentStatus
    meeting_link: Optional[str] = Field(default=None, alias="meetingLink")
    calendar_event_id: Optional[str] = Field(default=None, alias="calendarEventId")
    calendar_sync_status: Optional[str] = Field(default=None, alias="calendarSyncStatus")
    calendar_synced_at: Optional[datetime.datetime] = Field(default=None, alias="calendarSyncedAt")
    created_by: str = Field(..., alias="createdBy")
    last_edited_by: Optional[str] = Field(default=None, alias="lastEditedBy")


class SlotRequest(CamelModel):
    """A date and time as typed in the back office."""

    date: str = Field(..., pattern=DATE_PATTERN, description="DD/MM/AAAA", examples=["20/10/2026"])
    time: str = Field(..., pattern=TIME_PATTERN, description="HH:mm", examples=["14:00"])


class AppointmentCreateRequest(SlotRequest):
    client_name: str = Field(..., alias="clientName", min_length=1, max_length=255)
    client_phone: str = Field(..., alias="clientPhone", min_length=1, max_length=50)
    type: AppointmentType
    editor: Optional[str] = Field(default=None, max_length=100)


class RescheduleRequest(SlotRequest):
    editor: Optional[str] = Field(default=None, max_length=100)


class EditorRequest(BaseModel):
    editor: Optional[str] = Field(default=None, max_length=100)


class ValidateRequest(SlotRequest):
    type: AppointmentType


class ValidateResponse(CamelModel):
    is_valid: bool = Field(..., alias="isValid")
    message: Optional[str] = None
    formatted_date_time: Optional[str] = Field(default=None, alias="formattedDateTime")


class AppointmentActionResponse(CamelModel):
    success: bool = True
    appointment: AppointmentResponse
    message: str


class AvailableSlotsResponse(BaseModel):
    date: datetime.date
    type: AppointmentType
    slots: list[str]


def _http_error(e: SchedulingError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST),
        detail=e.message,
    )


def _parse_start(parser: DateTimeParser, slot: SlotRequest) -> datetime.datetime:
    start = parser.parse_date_time(slot.date, slot.time)
    if start is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Data ou horário inválido",
        )
    return start


def _editor(editor: Optional[str]) -> str:
    return editor or get_settings().api_editor


@router.get(
    "/available-slots",
    response_model=AvailableSlotsResponse,
    summary="List free slots",
    description="Free one-hour start times (HH:MM) for a day and appointment type.",
)
async def available_slots(
    day: datetime.date = Query(..., alias="date", description="Day to check (YYYY-MM-DD)"),
    appointment_type: AppointmentType = Query(..., alias="type"),
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
) -> AvailableSlotsResponse:
    slots = await scheduler.get_available_slots(day, appointment_type)
    return AvailableSlotsResponse(date=day, type=appointment_type, slots=slots)


@router.get(
    "",
    response_model=list[AppointmentResponse],
    summary="List appointments",
    description="Appointments overlapping the optional [start, end) window, earliest first.",
)
async def list_appointments(
    start: Optional[datetime.datetime] = Query(default=None),
    end: Optional[datetime.datetime] = Query(default=None),
    appointment_type: Optional[AppointmentType] = Query(default=None, alias="type"),
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
) -> list[AppointmentResponse]:
    appointments = await scheduler.list_appointments(start, end, appointment_type)
    return [AppointmentResponse.model_validate(a) for a in appointments]


@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    request: AppointmentCreateRequest,
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
    parser: DateTimeParser = Depends(get_datetime_parser),
) -> AppointmentResponse:
    """Book under the same rules as the chat. Calendar sync stays best-effort."""
    start = _parse_start(parser, request)

    try:
        appointment = await scheduler.create_appointment(AppointmentCreate(
            client_name=request.client_name,
            client_phone=request.client_phone,
            type=request.type,
            start=start,
            created_by=_editor(request.editor),
        ))
    except SchedulingError as e:
        logger.info(f"API booking rejected: {e.message}")
        raise _http_error(e) from e

    return AppointmentResponse.model_validate(appointment)


@router.post(
    "/validate",
    response_model=ValidateResponse,
    summary="Check a slot",
    description="Apply every booking rule to a slot without booking it.",
)
async def validate_slot(
    request: ValidateRequest,
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
    parser: DateTimeParser = Depends(get_datetime_parser),
) -> ValidateResponse:
    start = _parse_start(parser, request)

    try:
        await scheduler.validate_appointment(start, scheduler.default_end(start), request.type)
    except SchedulingError as e:
        return ValidateResponse(is_valid=False, message=e.message)

    return ValidateResponse(
        is_valid=True,
        formatted_date_time=f"{format_long_date(start)} às {format_time(start)}",
    )


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get an appointment",
)
async def get_appointment(
    appointment_id: uuid.UUID,
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
) -> AppointmentResponse:
    appointment = await scheduler.get_appointment(appointment_id)
    if appointment is None:
        raise _http_error(AppointmentNotFoundError())
    return AppointmentResponse.model_validate(appointment)


@router.put(
    "/{appointment_id}/reschedule",
    response_model=AppointmentActionResponse,
    summary="Reschedule an appointment",
    description="Move an appointment to a new slot. The id is kept.",
)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    request: RescheduleRequest,
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
    parser: DateTimeParser = Depends(get_datetime_parser),
) -> AppointmentActionResponse:
    start = _parse_start(parser, request)

    try:
        appointment = await scheduler.reschedule_appointment(
            appointment_id, start, editor=_editor(request.editor)
        )
    except SchedulingError as e:
        logger.info(f"API reschedule of {appointment_id} rejected: {e.message}")
        raise _http_error(e) from e

    return AppointmentActionResponse(
        appointment=AppointmentResponse.model_validate(appointment),
        message="Agendamento remarcado com sucesso",
    )


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentActionResponse,
    summary="Cancel an appointment",
)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    request: Optional[EditorRequest] = Body(default=None),
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
) -> AppointmentActionResponse:
    editor = request.editor if request else None

    try:
        appointment = await scheduler.cancel_appointment(appointment_id, _editor(editor))
    except SchedulingError as e:
        raise _http_error(e) from e

    return AppointmentActionResponse(
        appointment=AppointmentResponse.model_validate(appointment),
        message="Agendamento cancelado com sucesso",
    )


@router.post(
    "/{appointment_id}/sync-calendar",
    response_model=AppointmentActionResponse,
    summary="Sync an appointment with the calendar",
    description="Retry the calendar sync, creating the event when it is missing.",
)
async def sync_calendar(
    appointment_id: uuid.UUID,
    request: Optional[EditorRequest] = Body(default=None),
    scheduler: AppointmentScheduler = Depends(get_appointment_scheduler),
) -> AppointmentActionResponse:
    editor = request.editor if request else None

    try:
        appointment, synced = await scheduler.sync_calendar(appointment_id, _editor(editor))
    except SchedulingError as e:
        raise _http_error(e) from e

    if not synced:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Falha ao sincronizar com o Google Calendar",
        )

    return AppointmentActionResponse(
        appointment=AppointmentResponse.model_validate(appointment),
        message="Agendamento sincronizado com o Google Calendar",
    )
