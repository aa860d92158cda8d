"""
Scheduling Module

Provides date/time parsing, appointment persistence with business rules,
calendar synchronization, reply templates and the dialogue orchestrator.

Usage:
    from appointment_bot.core.scheduling import (
        get_dialogue_orchestrator,
        get_appointment_scheduler,
        get_datetime_parser,
    )

    # Answer a chat message
    orchestrator = get_dialogue_orchestrator()
    response = await orchestrator.process_message("5583999990000", "quero agendar")
    if response:
        print(response.message)

    # Free slots for a day
    scheduler = get_appointment_scheduler()
    slots = await scheduler.get_available_slots(day, AppointmentType.ONLINE)
"""

# Date/Time Parsing
from appointment_bot.core.scheduling.datetime_parser import (
    DateTimeParser,
    DateConfidence,
    ParsedDate,
    get_datetime_parser,
)

# Errors
from appointment_bot.core.scheduling.errors import (
    SchedulingError,
    SlotValidationError,
    SlotUnavailableError,
    AppointmentNotFoundError,
    AppointmentAlreadyCancelledError,
    AppointmentNotReschedulableError,
)

# Calendar Synchronizer
from appointment_bot.core.scheduling.calendar_sync import (
    CalendarSynchronizer,
    CalendarEvent,
    get_calendar_synchronizer,
)

# Appointment Scheduler
from appointment_bot.core.scheduling.scheduler import (
    AppointmentScheduler,
    AppointmentCreate,
    get_appointment_scheduler,
)

# Reply Templates
from appointment_bot.core.scheduling.responses import (
    ResponseGenerator,
    get_response_generator,
)

# Dialogue Orchestrator
from appointment_bot.core.scheduling.orchestrator import (
    DialogueOrchestrator,
    ChatbotResponse,
    get_dialogue_orchestrator,
)

__all__ = [
    # Parsing
    "DateTimeParser",
    "DateConfidence",
    "ParsedDate",
    "get_datetime_parser",
    # Errors
    "SchedulingError",
    "SlotValidationError",
    "SlotUnavailableError",
    "AppointmentNotFoundError",
    "AppointmentAlreadyCancelledError",
    "AppointmentNotReschedulableError",
    # Calendar
    "CalendarSynchronizer",
    "CalendarEvent",
    "get_calendar_synchronizer",
    # Scheduler
    "AppointmentScheduler",
    "AppointmentCreate",
    "get_appointment_scheduler",
    # Replies
    "ResponseGenerator",
    "get_response_generator",
    # Orchestrator
    "DialogueOrchestrator",
    "ChatbotResponse",
    "get_dialogue_orchestrator",
]
