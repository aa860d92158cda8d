"""
Intelligence Layer Module

Turns a client message plus the conversation so far into an intent,
structured slots and a suggested reply, using Claude.

Usage:
    from appointment_bot.core.intelligence import get_language_interpreter

    interpreter = get_language_interpreter()
    result = await interpreter.interpret(conversation, "amanhã às 14h")
    print(result.intent)  # Intent.SCHEDULE_APPOINTMENT
    print(result.slots.appointment_time)  # "14h"
"""

from appointment_bot.core.intelligence.types import (
    Intent,
    ServiceIntent,
    Confirmation,
    SlotData,
    Interpretation,
)
from appointment_bot.core.intelligence.interpreter import (
    LanguageInterpreter,
    DEFAULT_REPLY,
    get_language_interpreter,
)

__all__ = [
    "Intent",
    "ServiceIntent",
    "Confirmation",
    "SlotData",
    "Interpretation",
    "LanguageInterpreter",
    "DEFAULT_REPLY",
    "get_language_interpreter",
]
