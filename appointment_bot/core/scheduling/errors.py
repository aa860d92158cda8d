"""
Scheduling errors.

Every message here is Portuguese because the dialogue shows it to the
client verbatim.
"""


class SchedulingError(Exception):
    """Base class for scheduling failures attributable to the request."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SlotValidationError(SchedulingError):
    """The requested slot breaks a business rule (weekday, hours, past, ordering)."""
    pass


class SlotUnavailableError(SchedulingError):
    """Another active appointment of the same type already holds the slot."""

    def __init__(
        self,
        message: str = "Horário não disponível. Por favor, escolha outro horário.",
    ):
        super().__init__(message)


class AppointmentNotFoundError(SchedulingError):
    """No appointment with the given id."""

    def __init__(self, message: str = "Agendamento não encontrado."):
        super().__init__(message)


class AppointmentAlreadyCancelledError(SchedulingError):
    """Cancel requested for an appointment that is already cancelled."""

    def __init__(self, message: str = "Este agendamento já foi cancelado."):
        super().__init__(message)


class AppointmentNotReschedulableError(SchedulingError):
    """Reschedule requested for a cancelled or no-show appointment."""

    def __init__(
        self,
        message: str = "Não é possível reagendar um agendamento cancelado.",
    ):
        super().__init__(message)
