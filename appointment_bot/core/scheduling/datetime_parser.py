"""
Portuguese date/time expression parser.

Turns fragments such as "amanhã", "sexta-feira", "20/10/2026",
"15 de janeiro de 2027", "14h", "14:30", "2 da tarde" or the combined
"amanhã às 10h" into calendar values. Unrecognized input returns None;
nothing here raises on bad user text.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from appointment_bot.core.clock import Clock, local_now

logger = logging.getLogger(__name__)


class DateConfidence(str, Enum):
    """How certain the parser is about a date. Reported, never used to reject."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class ParsedDate:
    """Result of parsing a date expression."""

    date: date
    confidence: DateConfidence


MONTHS = {
    "janeiro": 1,
    "fevereiro": 2,
    "marco": 3,
    "abril": 4,
    "maio": 5,
    "junho": 6,
    "julho": 7,
    "agosto": 8,
    "setembro": 9,
    "outubro": 10,
    "novembro": 11,
    "dezembro": 12,
}

# Python weekday numbering (Monday == 0)
WEEKDAYS = {
    "segunda": 0,
    "terca": 1,
    "quarta": 2,
    "quinta": 3,
    "sexta": 4,
    "sabado": 5,
    "domingo": 6,
}

# Hours added to the stated hour
PERIOD_OFFSETS = {
    "manha": 0,
    "tarde": 12,
    "noite": 18,
}

WEEKDAY_LABELS = [
    "segunda-feira",
    "terça-feira",
    "quarta-feira",
    "quinta-feira",
    "sexta-feira",
    "sábado",
    "domingo",
]

MONTH_LABELS = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]

_MONTH_ALTERNATION = "|".join(MONTHS)
_WEEKDAY_ALTERNATION = "|".join(WEEKDAYS)

FULL_DATE_PATTERN = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
SHORT_DATE_PATTERN = re.compile(r"\b(\d{1,2})/(\d{1,2})\b(?!/)")
LONG_DATE_PATTERN = re.compile(
    rf"\b(\d{{1,2}})\s+de\s+({_MONTH_ALTERNATION})(?:\s+de\s+(\d{{4}}))?\b"
)
WEEKDAY_PATTERN = re.compile(rf"\b({_WEEKDAY_ALTERNATION})(?:-feira|\s+feira)?\b")

PERIOD_TIME_PATTERN = re.compile(
    r"\b(\d{1,2})(?:[:h](\d{2}))?\s*(?:h|horas?)?\s+da\s+(manha|tarde|noite)\b"
)
CLOCK_TIME_PATTERN = re.compile(r"\b(\d{1,2}):(\d{2})\b")
HOUR_SUFFIX_PATTERN = re.compile(r"\b(\d{1,2})h(\d{2})?\b")
HOURS_WORD_PATTERN = re.compile(r"\b(\d{1,2})\s*horas?\b")
BARE_HOUR_PATTERN = re.compile(r"^(\d{1,2})$")
NOON_PATTERN = re.compile(r"\bmeio[\s-]dia\b")

_DATE_TOKEN = (
    rf"(depois de amanha|amanha|hoje"
    rf"|(?:{_WEEKDAY_ALTERNATION})(?:-feira)?"
    rf"|\d{{1,2}}/\d{{1,2}}(?:/\d{{4}})?)"
)
_TIME_TOKEN = (
    r"(\d{1,2}(?::\d{2}|h(?:\d{2})?|\s*horas?)?"
    r"(?:\s+da\s+(?:manha|tarde|noite))?)(?![\d/])"
)
COMBINED_PATTERN = re.compile(
    rf"{_DATE_TOKEN}\s*,?\s+(?:(?:as|a partir das|pelas)\s+)?{_TIME_TOKEN}"
)
REVERSED_COMBINED_PATTERN = re.compile(
    rf"(?<![\d/])\b{_TIME_TOKEN}\s+(?:de\s+)?{_DATE_TOKEN}\b"
)


def normalize(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.split())


def format_long_date(value: date) -> str:
    """Format like "segunda-feira, 20 de outubro de 2026"."""
    return (
        f"{WEEKDAY_LABELS[value.weekday()]}, {value.day} de "
        f"{MONTH_LABELS[value.month - 1]} de {value.year}"
    )


def format_date(value: date) -> str:
    """Format as DD/MM/YYYY."""
    return value.strftime("%d/%m/%Y")


def format_time(value: datetime | time) -> str:
    """Format as HH:MM."""
    return value.strftime("%H:%M")


class DateTimeParser:
    """
    Parses Portuguese date and time expressions relative to a clock.

    Relative words resolve against the business-timezone "today".
    Weekday names resolve to the next future occurrence, so asking for
    "segunda" on a Monday means next week's Monday.
    """

    def __init__(self, now: Optional[Clock] = None):
        self._now = now or local_now

    def today(self) -> date:
        return self._now().date()

    # === Dates ===

    def parse_date(self, text: Optional[str]) -> Optional[ParsedDate]:
        """Parse a date expression.

        Args:
            text: Raw fragment, e.g. "amanhã" or "20/10/2026"

        Returns:
            ParsedDate, or None when nothing is recognized
        """
        if not text:
            return None
        normalized = normalize(text)
        if not normalized:
            return None

        explicit = self._parse_explicit_date(normalized)
        if explicit is not None:
            return explicit

        today = self.today()

        # "depois de amanha" contains "amanha", check it first
        if "depois de amanha" in normalized:
            return ParsedDate(today + timedelta(days=2), DateConfidence.HIGH)
        if "amanha" in normalized:
            return ParsedDate(today + timedelta(days=1), DateConfidence.HIGH)
        if "hoje" in normalized:
            return ParsedDate(today, DateConfidence.HIGH)

        match = WEEKDAY_PATTERN.search(normalized)
        if match:
            target = WEEKDAYS[match.group(1)]
            days_ahead = target - today.weekday()
            if days_ahead <= 0:
                days_ahead += 7
            return ParsedDate(today + timedelta(days=days_ahead), DateConfidence.HIGH)

        return None

    def _parse_explicit_date(self, normalized: str) -> Optional[ParsedDate]:
        match = FULL_DATE_PATTERN.search(normalized)
        if match:
            day, month, year = (int(g) for g in match.groups())
            return self._build_date(year, month, day, DateConfidence.HIGH)

        match = LONG_DATE_PATTERN.search(normalized)
        if match:
            day = int(match.group(1))
            month = MONTHS[match.group(2)]
            if match.group(3):
                return self._build_date(int(match.group(3)), month, day, DateConfidence.HIGH)
            return self._build_yearless_date(month, day)

        match = SHORT_DATE_PATTERN.search(normalized)
        if match:
            day, month = int(match.group(1)), int(match.group(2))
            return self._build_yearless_date(month, day)

        return None

    def _build_yearless_date(self, month: int, day: int) -> Optional[ParsedDate]:
        """Use this year, or next year when the date already passed."""
        today = self.today()
        parsed = self._build_date(today.year, month, day, DateConfidence.MEDIUM)
        if parsed is not None and parsed.date < today:
            parsed = self._build_date(today.year + 1, month, day, DateConfidence.MEDIUM)
        return parsed

    @staticmethod
    def _build_date(
        year: int, month: int, day: int, confidence: DateConfidence
    ) -> Optional[ParsedDate]:
        try:
            return ParsedDate(date(year, month, day), confidence)
        except ValueError:
            logger.debug(f"Rejected impossible date {day:02d}/{month:02d}/{year}")
            return None

    # === Times ===

    def parse_time(self, text: Optional[str]) -> Optional[time]:
        """Parse a time-of-day expression.

        Accepts "14:30", "14h", "14h30", "14 horas", "2 da tarde" and a
        bare hour such as "14". Period words add a fixed offset to the
        stated hour (manhã +0, tarde +12, noite +18); results past 23h
        are rejected.

        Returns:
            time, or None when nothing valid is recognized
        """
        if not text:
            return None
        normalized = normalize(text)
        if not normalized:
            return None

        match = PERIOD_TIME_PATTERN.search(normalized)
        if match:
            hour = int(match.group(1)) + PERIOD_OFFSETS[match.group(3)]
            minute = int(match.group(2) or 0)
            return self._build_time(hour, minute)

        match = CLOCK_TIME_PATTERN.search(normalized)
        if match:
            return self._build_time(int(match.group(1)), int(match.group(2)))

        match = HOUR_SUFFIX_PATTERN.search(normalized)
        if match:
            return self._build_time(int(match.group(1)), int(match.group(2) or 0))

        match = HOURS_WORD_PATTERN.search(normalized)
        if match:
            return self._build_time(int(match.group(1)), 0)

        if NOON_PATTERN.search(normalized):
            return time(12, 0)

        match = BARE_HOUR_PATTERN.match(normalized)
        if match:
            return self._build_time(int(match.group(1)), 0)

        return None

    @staticmethod
    def _build_time(hour: int, minute: int) -> Optional[time]:
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return time(hour, minute)
        return None

    # === Combined ===

    def parse_combined(self, text: Optional[str]) -> Optional[tuple[date, time]]:
        """Detect a date and a time in one phrase.

        Handles both orders: "amanhã 14h", "segunda às 10:30",
        "14h amanhã", "10 horas de sexta".

        Returns:
            (date, time), or None when the phrase does not hold both
        """
        if not text:
            return None
        normalized = normalize(text)

        match = COMBINED_PATTERN.search(normalized)
        if match:
            result = self._resolve(match.group(1), match.group(2))
            if result is not None:
                return result

        match = REVERSED_COMBINED_PATTERN.search(normalized)
        if match:
            return self._resolve(match.group(2), match.group(1))

        return None

    def _resolve(self, date_part: str, time_part: str) -> Optional[tuple[date, time]]:
        parsed_date = self.parse_date(date_part)
        parsed_time = self.parse_time(time_part)
        if parsed_date is None or parsed_time is None:
            return None
        return parsed_date.date, parsed_time

    def parse_date_time(
        self,
        date_text: Optional[str],
        time_text: Optional[str],
    ) -> Optional[datetime]:
        """Build an instant from separate date and time fragments.

        The fragments are first read together as one phrase, because the
        language model often puts "amanhã 10h" in a single field. Falls
        back to parsing each fragment on its own.

        Returns:
            Naive business-timezone datetime, or None
        """
        date_text = (date_text or "").strip()
        time_text = (time_text or "").strip()

        combined = self.parse_combined(f"{date_text} {time_text}".strip())
        if combined is not None:
            return datetime.combine(*combined)

        parsed_date = self.parse_date(date_text) or self.parse_date(time_text)
        parsed_time = self.parse_time(time_text) or self.parse_time(date_text)
        if parsed_date is None or parsed_time is None:
            return None

        return datetime.combine(parsed_date.date, parsed_time)


# Singleton
_parser: Optional[DateTimeParser] = None


def get_datetime_parser() -> DateTimeParser:
    """Get singleton DateTimeParser bound to the business clock."""
    global _parser
    if _parser is None:
        _parser = DateTimeParser()
    return _parser
