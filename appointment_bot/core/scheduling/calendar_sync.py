"""
Google Calendar synchronizer.

Mirrors appointments into Google Calendar over the v3 REST API:
- POST   /calendars/{calendarId}/events           - Create event (+ Meet link for ONLINE)
- PATCH  /calendars/{calendarId}/events/{eventId} - Update event
- DELETE /calendars/{calendarId}/events/{eventId} - Delete event
- POST   /freeBusy                                 - Busy intervals

Sync is best-effort. Every call is bounded by a timeout, is never
retried, and returns a safe default (None, False, or True for
availability) when the calendar is unconfigured or the request fails.
The local appointment table stays the source of truth.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import httpx

from appointment_bot.config import get_settings
from appointment_bot.core.clock import to_business_aware
from appointment_bot.models.database import AppointmentType

if TYPE_CHECKING:
    from appointment_bot.models.database import Appointment

logger = logging.getLogger(__name__)


TYPE_LABELS = {
    AppointmentType.ONLINE: "Reunião Online",
    AppointmentType.IN_STORE: "Visita à Loja",
}


@dataclass
class CalendarEvent:
    """Event as returned by Google Calendar."""

    event_id: str
    meeting_link: Optional[str] = None
    html_link: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CalendarEvent":
        """Create from API response dict."""
        meeting_link = data.get("hangoutLink")
        if not meeting_link:
            entry_points = (data.get("conferenceData") or {}).get("entryPoints", [])
            for entry in entry_points:
                if entry.get("entryPointType") == "video":
                    meeting_link = entry.get("uri")
                    break

        return cls(
            event_id=data.get("id", ""),
            meeting_link=meeting_link,
            html_link=data.get("htmlLink"),
            status=data.get("status"),
        )


def event_time(value: datetime) -> dict:
    """Google Calendar time object for a naive business-timezone datetime."""
    settings = get_settings()
    return {
        "dateTime": to_business_aware(value).isoformat(),
        "timeZone": settings.business_timezone,
    }


class CalendarSynchronizer:
    """
    HTTP client for the Google Calendar API.

    Authenticates with a bearer token. Without a token every method
    short-circuits to its safe default.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        calendar_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize synchronizer.

        Args:
            access_token: OAuth bearer token (defaults to settings)
            calendar_id: Target calendar (defaults to settings)
            base_url: API base URL (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
        """
        settings = get_settings()
        self.access_token = access_token or settings.google_calendar_access_token
        self.calendar_id = calendar_id or settings.google_calendar_id
        self.base_url = base_url or settings.google_calendar_base_url
        self.timeout = timeout or settings.calendar_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.access_token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{self.calendar_id}/events"
        if event_id:
            path = f"{path}/{event_id}"
        return path

    def build_event(self, appointment: "Appointment") -> dict:
        """Build the event body for an appointment."""
        label = TYPE_LABELS[AppointmentType(appointment.type)]
        body: dict = {
            "summary": f"Atendimento - {label} | {appointment.client_name}",
            "description": (
                f"Cliente: {appointment.client_name}\n"
                f"Telefone: {appointment.client_phone}\n"
                f"Tipo: {label}\n"
                f"Agendado via WhatsApp"
            ),
            "start": event_time(appointment.start),
            "end": event_time(appointment.end),
            "extendedProperties": {
                "private": {
                    "appointmentId": str(appointment.id),
                    "appointmentType": AppointmentType(appointment.type).value,
                    "clientName": appointment.client_name,
                    "clientPhone": appointment.client_phone,
                    "source": "whatsapp_bot",
                }
            },
        }

        if appointment.type == AppointmentType.ONLINE:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": f"appointment-{appointment.id}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }

        return body

    # === Events ===

    async def create(self, appointment: "Appointment") -> Optional[CalendarEvent]:
        """Create the calendar event for an appointment.

        Returns:
            CalendarEvent, or None if unconfigured or the request failed
        """
        if not self.enabled:
            logger.debug("Calendar sync disabled, skipping create")
            return None

        client = await self._get_client()

        try:
            response = await client.post(
                self._events_path(),
                json=self.build_event(appointment),
                params={"conferenceDataVersion": 1},
            )
            response.raise_for_status()

            event = CalendarEvent.from_dict(response.json())
            logger.info(f"Calendar event {event.event_id} created for appointment {appointment.id}")
            return event

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to create calendar event for {appointment.id}: {e}")
            return None

    async def update(self, event_id: str, partial: dict) -> Optional[CalendarEvent]:
        """Patch an existing event.

        Args:
            event_id: Google event id
            partial: Event fields to change

        Returns:
            Updated CalendarEvent, or None if unconfigured or failed
        """
        if not self.enabled:
            logger.debug("Calendar sync disabled, skipping update")
            return None

        client = await self._get_client()

        try:
            response = await client.patch(
                self._events_path(event_id),
                json=partial,
                params={"conferenceDataVersion": 1},
            )
            response.raise_for_status()
            return CalendarEvent.from_dict(response.json())

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to update calendar event {event_id}: {e}")
            return None

    async def delete(self, event_id: str) -> bool:
        """Delete an event. An event that is already gone counts as deleted.

        Returns:
            True on success, False if unconfigured or failed
        """
        if not self.enabled:
            logger.debug("Calendar sync disabled, skipping delete")
            return False

        client = await self._get_client()

        try:
            response = await client.delete(self._events_path(event_id))

            if response.status_code in (200, 204, 404, 410):
                return True

            logger.error(
                f"Failed to delete calendar event {event_id}: "
                f"HTTP {response.status_code}"
            )
            return False

        except httpx.HTTPError as e:
            logger.error(f"Failed to delete calendar event {event_id}: {e}")
            return False

    # === Availability ===

    async def check_free_busy(self, start: datetime, end: datetime) -> bool:
        """Check whether the calendar is free over [start, end).

        Returns:
            True when free, and also when the answer is unknown
        """
        if not self.enabled:
            return True

        client = await self._get_client()
        settings = get_settings()

        payload = {
            "timeMin": to_business_aware(start).isoformat(),
            "timeMax": to_business_aware(end).isoformat(),
            "timeZone": settings.business_timezone,
            "items": [{"id": self.calendar_id}],
        }

        try:
            response = await client.post("/freeBusy", json=payload)
            response.raise_for_status()

            calendars = response.json().get("calendars", {})
            busy = calendars.get(self.calendar_id, {}).get("busy", [])
            return len(busy) == 0

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Free/busy query failed: {e}")
            return True


# Singleton
_synchronizer: Optional[CalendarSynchronizer] = None


def get_calendar_synchronizer() -> CalendarSynchronizer:
    """Get singleton CalendarSynchronizer."""
    global _synchronizer
    if _synchronizer is None:
        _synchronizer = CalendarSynchronizer()
    return _synchronizer
