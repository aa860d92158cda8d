"""
Appointment Scheduler.

Validates business rules, detects slot conflicts, lists free slots and
creates, cancels and reschedules appointments.

Business rules, checked in order on every create and reschedule:
1. the day is Monday to Friday
2. the appointment sits inside business hours on that day
3. it starts strictly after now
4. it ends strictly after it starts
5. no active appointment of the same type overlaps [start, end)

Rules 1-4 raise SlotValidationError. Rule 5 raises SlotUnavailableError,
both from the overlap query and from the partial unique index that
backs it up at the storage layer.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appointment_bot.config import get_settings
from appointment_bot.core.clock import Clock, local_now
from appointment_bot.core.scheduling.calendar_sync import (
    CalendarSynchronizer,
    event_time,
    get_calendar_synchronizer,
)
from appointment_bot.core.scheduling.datetime_parser import format_time
from appointment_bot.core.scheduling.errors import (
    AppointmentAlreadyCancelledError,
    AppointmentNotFoundError,
    AppointmentNotReschedulableError,
    SlotUnavailableError,
    SlotValidationError,
)
from appointment_bot.models.database import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentType,
)

logger = logging.getLogger(__name__)


@dataclass
class AppointmentCreate:
    """Data needed to book an appointment."""

    client_name: str
    client_phone: str
    type: AppointmentType
    start: datetime
    end: Optional[datetime] = None
    created_by: Optional[str] = None


class AppointmentScheduler:
    """
    Service over the appointment table.

    Holds no per-conversation state. Calendar sync runs after the
    database commit and never fails the operation.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        calendar: Optional[CalendarSynchronizer] = None,
        now: Optional[Clock] = None,
    ):
        """Initialize scheduler with optional dependencies.

        Args:
            session_factory: Async session factory (defaults to the app database)
            calendar: Calendar synchronizer
            now: Clock returning naive business-timezone datetimes
        """
        self._session_factory = session_factory
        self._calendar = calendar
        self._now = now or local_now

        settings = get_settings()
        self.open_hour = settings.business_start_hour
        self.close_hour = settings.business_end_hour
        self.duration = timedelta(minutes=settings.appointment_duration_minutes)
        self.default_editor = settings.chatbot_editor

    def _get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from appointment_bot.infra.database import async_session_factory
            self._session_factory = async_session_factory
        return self._session_factory

    def _get_calendar(self) -> CalendarSynchronizer:
        if self._calendar is None:
            self._calendar = get_calendar_synchronizer()
        return self._calendar

    # === Rules ===

    def business_hours_message(self) -> str:
        return (
            f"Nosso horário de atendimento é de segunda a sexta-feira, "
            f"das {self.open_hour:02d}:00 às {self.close_hour:02d}:00."
        )

    def default_end(self, start: datetime) -> datetime:
        return start + self.duration

    def slot_key(self, start: datetime) -> datetime:
        """Floor a start time to the slot grid."""
        step = int(self.duration.total_seconds() // 60)
        minutes = start.hour * 60 + start.minute
        floored = minutes - (minutes - self.open_hour * 60) % step
        return datetime.combine(start.date(), time()) + timedelta(minutes=floored)

    def check_business_rules(self, start: datetime, end: datetime) -> None:
        """Apply rules 1-4.

        Raises:
            SlotValidationError: With the reason to show the client
        """
        if start.weekday() >= 5:
            raise SlotValidationError(
                "Atendimentos disponíveis apenas de segunda a sexta-feira."
            )

        opening = datetime.combine(start.date(), time(self.open_hour))
        closing = datetime.combine(start.date(), time(self.close_hour))
        if start < opening or start >= closing or end > closing:
            raise SlotValidationError(self.business_hours_message())

        if start <= self._now():
            raise SlotValidationError(
                "Não é possível agendar para uma data/hora passada."
            )

        if end <= start:
            raise SlotValidationError(
                "Horário final deve ser maior que o horário inicial."
            )

    async def _has_conflict(
        self,
        db: AsyncSession,
        appointment_type: AppointmentType,
        start: datetime,
        end: datetime,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Half-open overlap test: back-to-back appointments do not conflict."""
        query = select(func.count(Appointment.id)).where(
            Appointment.type == appointment_type,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.start < end,
            Appointment.end > start,
        )
        if exclude_id is not None:
            query = query.where(Appointment.id != exclude_id)

        result = await db.execute(query)
        return result.scalar_one() > 0

    async def validate_appointment(
        self,
        start: datetime,
        end: datetime,
        appointment_type: AppointmentType,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Apply all five rules without writing anything.

        Raises:
            SlotValidationError: Rules 1-4
            SlotUnavailableError: Rule 5
        """
        self.check_business_rules(start, end)

        async with self._get_session_factory()() as db:
            if await self._has_conflict(
                db, AppointmentType(appointment_type), start, end, exclude_id
            ):
                raise SlotUnavailableError()

    # === Operations ===

    async def create_appointment(self, data: AppointmentCreate) -> Appointment:
        """Book an appointment.

        The overlap check and the insert share one transaction.

        Raises:
            SlotValidationError: Rules 1-4
            SlotUnavailableError: Rule 5 or unique slot violation
        """
        appointment_type = AppointmentType(data.type)
        end = data.end or self.default_end(data.start)
        self.check_business_rules(data.start, end)

        editor = data.created_by or self.default_editor
        appointment = Appointment(
            id=uuid.uuid4(),
            client_name=data.client_name,
            client_phone=data.client_phone,
            type=appointment_type,
            start=data.start,
            end=end,
            slot_start=self.slot_key(data.start),
            status=AppointmentStatus.SCHEDULED,
            created_by=editor,
            last_edited_by=editor,
        )

        async with self._get_session_factory()() as db:
            try:
                async with db.begin():
                    if await self._has_conflict(db, appointment_type, data.start, end):
                        raise SlotUnavailableError()
                    db.add(appointment)
            except IntegrityError as e:
                logger.info(f"Slot {appointment_type.value} {data.start} taken concurrently: {e.orig}")
                raise SlotUnavailableError() from e

        logger.info(
            f"Appointment {appointment.id} created: {appointment_type.value} "
            f"{data.start.isoformat()} for {data.client_phone}"
        )

        await self._sync_created(appointment)
        return appointment

    async def cancel_appointment(
        self,
        appointment_id: uuid.UUID,
        editor: Optional[str] = None,
    ) -> Appointment:
        """Cancel an appointment and remove its calendar event.

        Raises:
            AppointmentNotFoundError: Unknown id
            AppointmentAlreadyCancelledError: Already cancelled, nothing changed
        """
        async with self._get_session_factory()() as db:
            async with db.begin():
                appointment = await db.get(Appointment, appointment_id)
                if appointment is None:
                    raise AppointmentNotFoundError()
                if appointment.status == AppointmentStatus.CANCELLED:
                    raise AppointmentAlreadyCancelledError()

                appointment.status = AppointmentStatus.CANCELLED
                appointment.last_edited_by = editor or self.default_editor

        logger.info(f"Appointment {appointment_id} cancelled")

        if appointment.calendar_event_id:
            try:
                deleted = await self._get_calendar().delete(appointment.calendar_event_id)
                if deleted:
                    await self._record_sync(appointment, calendar_sync_status="cancelled")
            except Exception as e:
                logger.error(
                    f"Calendar cleanup failed for {appointment_id}: {e}", exc_info=True
                )

        return appointment

    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        new_start: datetime,
        new_end: Optional[datetime] = None,
        editor: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to a new slot, keeping its id.

        The new slot is checked against every other appointment. The
        calendar event is moved with one update call, or created if the
        appointment was never synced.

        Raises:
            SlotValidationError: Rules 1-4
            SlotUnavailableError: Rule 5 or unique slot violation
            AppointmentNotFoundError: Unknown id
            AppointmentNotReschedulableError: Cancelled or no-show
        """
        new_end = new_end or self.default_end(new_start)
        self.check_business_rules(new_start, new_end)

        async with self._get_session_factory()() as db:
            try:
                async with db.begin():
                    appointment = await db.get(Appointment, appointment_id)
                    if appointment is None:
                        raise AppointmentNotFoundError()
                    if not appointment.is_active:
                        raise AppointmentNotReschedulableError()
                    if await self._has_conflict(
                        db, appointment.type, new_start, new_end, exclude_id=appointment.id
                    ):
                        raise SlotUnavailableError()

                    old_start = appointment.start
                    appointment.start = new_start
                    appointment.end = new_end
                    appointment.slot_start = self.slot_key(new_start)
                    appointment.last_edited_by = editor or self.default_editor
            except IntegrityError as e:
                logger.info(f"Reschedule target {new_start} taken concurrently: {e.orig}")
                raise SlotUnavailableError() from e

        logger.info(
            f"Appointment {appointment_id} moved from {old_start.isoformat()} "
            f"to {new_start.isoformat()}"
        )

        if appointment.calendar_event_id:
            await self._sync_moved(appointment)
        else:
            await self._sync_created(appointment)

        return appointment

    async def get_available_slots(
        self,
        day: date,
        appointment_type: AppointmentType,
    ) -> list[str]:
        """List free start times ("HH:MM") for one day and type.

        Empty on weekends. Slots that already started are skipped.
        """
        if day.weekday() >= 5:
            return []

        appointment_type = AppointmentType(appointment_type)
        day_open = datetime.combine(day, time(self.open_hour))
        day_close = datetime.combine(day, time(self.close_hour))

        async with self._get_session_factory()() as db:
            result = await db.execute(
                select(Appointment.start, Appointment.end).where(
                    Appointment.type == appointment_type,
                    Appointment.status.in_(ACTIVE_STATUSES),
                    Appointment.start < day_close,
                    Appointment.end > day_open,
                )
            )
            booked = result.all()

        now = self._now()
        slots = []
        slot_start = day_open
        while slot_start + self.duration <= day_close:
            slot_end = slot_start + self.duration
            taken = any(start < slot_end and end > slot_start for start, end in booked)
            if slot_start > now and not taken:
                slots.append(format_time(slot_start))
            slot_start = slot_end

        return slots

    async def find_active_appointment_by_phone(
        self,
        phone_number: str,
    ) -> Optional[Appointment]:
        """Earliest scheduled or confirmed appointment that has not started yet."""
        async with self._get_session_factory()() as db:
            result = await db.execute(
                select(Appointment)
                .where(
                    Appointment.client_phone == phone_number,
                    Appointment.status.in_(ACTIVE_STATUSES),
                    Appointment.start >= self._now(),
                )
                .order_by(Appointment.start.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        async with self._get_session_factory()() as db:
            return await db.get(Appointment, appointment_id)

    async def list_appointments(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        appointment_type: Optional[AppointmentType] = None,
    ) -> list[Appointment]:
        """Appointments of any status overlapping [start, end), earliest first.

        Either bound may be omitted.
        """
        query = select(Appointment)
        if start is not None:
            query = query.where(Appointment.end > start)
        if end is not None:
            query = query.where(Appointment.start < end)
        if appointment_type is not None:
            query = query.where(Appointment.type == AppointmentType(appointment_type))

        async with self._get_session_factory()() as db:
            result = await db.execute(query.order_by(Appointment.start.asc()))
            return list(result.scalars().all())

    async def sync_calendar(
        self,
        appointment_id: uuid.UUID,
        editor: Optional[str] = None,
    ) -> tuple[Appointment, bool]:
        """Push an appointment to the calendar again.

        Repairs rows whose best-effort sync failed: moves the existing
        event, or creates one when the appointment was never synced.

        Returns:
            The appointment and whether the calendar accepted the change

        Raises:
            AppointmentNotFoundError: Unknown id
            AppointmentNotReschedulableError: Cancelled or no-show
        """
        appointment = await self.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError()
        if not appointment.is_active:
            raise AppointmentNotReschedulableError(
                "Não é possível sincronizar um agendamento cancelado."
            )

        if appointment.calendar_event_id:
            synced = await self._sync_moved(appointment)
        else:
            synced = await self._sync_created(appointment)

        if synced and editor:
            async with self._get_session_factory()() as db:
                async with db.begin():
                    await db.execute(
                        update(Appointment)
                        .where(Appointment.id == appointment.id)
                        .values(last_edited_by=editor)
                    )
            appointment.last_edited_by = editor

        logger.info(f"Manual calendar sync for {appointment_id}: synced={synced}")
        return appointment, synced

    # === Calendar sync ===

    async def _sync_created(self, appointment: Appointment) -> bool:
        """Create the calendar event. Failures leave the sync fields unset."""
        try:
            event = await self._get_calendar().create(appointment)
            if event is None:
                return False
            await self._record_sync(
                appointment,
                calendar_event_id=event.event_id,
                calendar_sync_status="synced",
                meeting_link=event.meeting_link,
            )
            return True
        except Exception as e:
            logger.error(f"Calendar sync failed for {appointment.id}: {e}", exc_info=True)
            return False

    async def _sync_moved(self, appointment: Appointment) -> bool:
        try:
            event = await self._get_calendar().update(
                appointment.calendar_event_id,
                {"start": event_time(appointment.start), "end": event_time(appointment.end)},
            )
            if event is None:
                logger.warning(f"Calendar event for {appointment.id} not moved")
                return False
            await self._record_sync(
                appointment,
                calendar_sync_status="synced",
                meeting_link=event.meeting_link or appointment.meeting_link,
            )
            return True
        except Exception as e:
            logger.error(f"Calendar update failed for {appointment.id}: {e}", exc_info=True)
            return False

    async def _record_sync(self, appointment: Appointment, **values) -> None:
        values["calendar_synced_at"] = self._now()
        async with self._get_session_factory()() as db:
            async with db.begin():
                await db.execute(
                    update(Appointment)
                    .where(Appointment.id == appointment.id)
                    .values(**values)
                )
        for key, value in values.items():
            setattr(appointment, key, value)


# Singleton
_scheduler: Optional[AppointmentScheduler] = None


def get_appointment_scheduler() -> AppointmentScheduler:
    """Get singleton AppointmentScheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AppointmentScheduler()
    return _scheduler
