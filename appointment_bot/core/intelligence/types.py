"""Typed interpretation of a client message."""

import unicodedata
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional

from appointment_bot.models.database import AppointmentType


class Intent(str, Enum):
    """What the client is trying to do this turn."""

    SMALL_TALK = "SMALL_TALK"
    ASK_INFORMATION = "ASK_INFORMATION"
    COLLECT_DATA = "COLLECT_DATA"
    SCHEDULE_APPOINTMENT = "SCHEDULE_APPOINTMENT"
    CONFIRM_APPOINTMENT = "CONFIRM_APPOINTMENT"
    CANCEL_APPOINTMENT = "CANCEL_APPOINTMENT"
    RESCHEDULE_APPOINTMENT = "RESCHEDULE_APPOINTMENT"
    CANCEL = "CANCEL"                  # Abort the current sub-flow, not an appointment
    GOODBYE = "GOODBYE"


class ServiceIntent(str, Enum):
    """Kind of upholstery job the client wants."""

    FABRICAR = "FABRICAR"
    REFORMAR = "REFORMAR"


class Confirmation(str, Enum):
    YES = "yes"
    NO = "no"


_APPOINTMENT_TYPE_ALIASES = {
    "ONLINE": AppointmentType.ONLINE,
    "REMOTO": AppointmentType.ONLINE,
    "IN_STORE": AppointmentType.IN_STORE,
    "IN-STORE": AppointmentType.IN_STORE,
    "PRESENCIAL": AppointmentType.IN_STORE,
    "LOJA": AppointmentType.IN_STORE,
}

_CONFIRMATION_ALIASES = {
    "yes": Confirmation.YES,
    "sim": Confirmation.YES,
    "s": Confirmation.YES,
    "true": Confirmation.YES,
    "no": Confirmation.NO,
    "nao": Confirmation.NO,
    "n": Confirmation.NO,
    "false": Confirmation.NO,
}

_EMPTY_MARKERS = {"", "null", "none", "undefined", "?"}

# Wire name -> attribute name
SLOT_KEYS = {
    "clientName": "client_name",
    "serviceIntent": "service_intent",
    "appointmentType": "appointment_type",
    "appointmentDate": "appointment_date",
    "appointmentTime": "appointment_time",
    "confirmation": "confirmation",
    "projectReference": "project_reference",
    "cancelReason": "cancel_reason",
    "rescheduleReason": "reschedule_reason",
}


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _clean_text(value: Any, allow_numbers: bool = False) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if allow_numbers and isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    if value.lower() in _EMPTY_MARKERS:
        return None
    return value


@dataclass
class SlotData:
    """
    Slots extracted by the language model. Every field is optional.

    from_dict is the only way external output becomes a SlotData, and it
    drops anything malformed instead of passing it on.
    """

    client_name: Optional[str] = None
    service_intent: Optional[ServiceIntent] = None
    appointment_type: Optional[AppointmentType] = None
    appointment_date: Optional[str] = None   # Raw text, e.g. "amanhã"
    appointment_time: Optional[str] = None   # Raw text, e.g. "14h"
    confirmation: Optional[Confirmation] = None
    project_reference: Optional[str] = None
    cancel_reason: Optional[str] = None
    reschedule_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "SlotData":
        """Build from the model's camelCase slot map, clamping bad values."""
        if not isinstance(data, dict):
            return cls()

        slots = cls(
            client_name=_clean_text(data.get("clientName")),
            appointment_date=_clean_text(data.get("appointmentDate"), allow_numbers=True),
            appointment_time=_clean_text(data.get("appointmentTime"), allow_numbers=True),
            project_reference=_clean_text(data.get("projectReference")),
            cancel_reason=_clean_text(data.get("cancelReason")),
            reschedule_reason=_clean_text(data.get("rescheduleReason")),
        )

        service = _clean_text(data.get("serviceIntent"))
        if service:
            try:
                slots.service_intent = ServiceIntent(_fold(service).upper())
            except ValueError:
                pass

        appointment_type = _clean_text(data.get("appointmentType"))
        if appointment_type:
            key = _fold(appointment_type).upper().replace(" ", "_")
            slots.appointment_type = _APPOINTMENT_TYPE_ALIASES.get(key)

        confirmation = data.get("confirmation")
        if isinstance(confirmation, bool):
            slots.confirmation = Confirmation.YES if confirmation else Confirmation.NO
        else:
            confirmation = _clean_text(confirmation)
            if confirmation:
                slots.confirmation = _CONFIRMATION_ALIASES.get(_fold(confirmation).lower())

        return slots

    def to_dict(self) -> dict:
        """camelCase map of the fields that are set."""
        result = {}
        for wire_name, attr in SLOT_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            result[wire_name] = value.value if isinstance(value, Enum) else value
        return result

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation == Confirmation.YES

    @property
    def has_date_time(self) -> bool:
        return bool(self.appointment_date and self.appointment_time)

    def has_any(self) -> bool:
        """Check if any slot is set."""
        return any(getattr(self, f.name) is not None for f in fields(self))


@dataclass
class Interpretation:
    """Structured reading of one client message."""

    reply: str
    intent: Intent = Intent.SMALL_TALK
    slots: SlotData = field(default_factory=SlotData)

    # Raw LLM output for debugging
    raw_response: Optional[str] = None

    # True when the default reply replaced a failed or unusable model call
    fallback_used: bool = False
