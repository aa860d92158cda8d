"""Business-timezone clock."""

from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from appointment_bot.config import settings

Clock = Callable[[], datetime]


def business_tz() -> ZoneInfo:
    """Get the single business timezone."""
    return ZoneInfo(settings.business_timezone)


def local_now() -> datetime:
    """Current wall-clock time in the business timezone, as a naive datetime.

    Every stored datetime uses this representation.
    """
    return datetime.now(business_tz()).replace(tzinfo=None, microsecond=0)


def to_business_aware(value: datetime) -> datetime:
    """Attach the business timezone to a naive wall-clock datetime."""
    return value.replace(tzinfo=business_tz())
