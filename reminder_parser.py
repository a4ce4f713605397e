"""Natural-language reminder parser.

Turns free text such as "remind me tomorrow at 3pm to call mom" or
"याद दिलाओ कल सुबह 9 बजे दवाई लेनी है" into a ParsedReminderIntent: what to
remind about, the local date and time, and an optional location.

Relative expressions are anchored on the current date and time in the
caller's timezone. When AM/PM is not stated, a bare hour 1-6 is PM and 7-12 is
the morning side of noon, so a bare 12 is noon. Extraction is delegated to a backend:

- OpenAIBackend: an LLM constrained to a strict JSON schema
- RuleBasedBackend: deterministic English/Hindi patterns, used when no LLM is
  configured

ReminderParser.parse never raises; any backend failure yields the fallback
intent.
"""

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import openai
from openai import OpenAI
from pydantic import BaseModel, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'parser.log')

NOT_A_REMINDER_MESSAGE = (
    "This doesn't look like a reminder request. "
    "Try: 'remind me tomorrow at 3pm to call mom'"
)
FALLBACK_MESSAGE = "Failed to parse your message. Please try: 'remind me [when] to [task]'"


class ParsedReminderIntent(BaseModel):
    """Structured reminder extracted from free text. Not persisted.

    date is YYYY-MM-DD and time is HH:MM (24h), both in the user's timezone;
    either may be empty when it could not be resolved.
    """

    message: str
    date: str
    time: str
    location: Optional[str] = None
    is_reminder: bool
    error_message: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _validate_date(cls, v):
        if v:
            datetime.strptime(v, "%Y-%m-%d")
        return v

    @field_validator("time")
    @classmethod
    def _validate_time(cls, v):
        if v:
            datetime.strptime(v, "%H:%M")
        return v

    @field_validator("location", "error_message")
    @classmethod
    def _blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v


def fallback_intent(user_message: str) -> ParsedReminderIntent:
    return ParsedReminderIntent(
        message=user_message,
        date="",
        time="",
        is_reminder=False,
        error_message=FALLBACK_MESSAGE,
    )


@dataclass(frozen=True)
class ParsingContext:
    """Anchor for relative expressions: "now" in the user's timezone."""

    now: datetime
    timezone: str

    @classmethod
    def create(cls, tz_name: str, now: Optional[datetime] = None) -> "ParsingContext":
        tz = ZoneInfo(tz_name)
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return cls(now=now.astimezone(tz), timezone=tz_name)

    @property
    def current_date(self) -> str:
        return self.now.strftime("%Y-%m-%d")

    @property
    def current_time(self) -> str:
        return self.now.strftime("%H:%M")


def to_utc_datetime(date_str: Optional[str], time_str: Optional[str], tz_name: str) -> Optional[datetime]:
    """Combine a user-local date and time into an aware UTC datetime.

    Returns None when either part is missing or malformed.
    """
    if not date_str or not time_str:
        return None
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S"):
        try:
            local = datetime.strptime(f"{date_str.strip()} {time_str.strip()}", fmt)
        except ValueError:
            continue
        try:
            return local.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)
        except (ZoneInfoNotFoundError, ValueError):
            return None
    return None


class ParserBackend:
    """Extracts the raw intent fields for one message."""

    name = "base"

    def extract(self, user_message: str, context: ParsingContext) -> Dict[str, Any]:
        raise NotImplementedError


class ReminderParser:
    """Parses free text into a ParsedReminderIntent using a backend."""

    def __init__(self, backend: ParserBackend):
        self.backend = backend

    def parse(self, user_message: str, tz_name: Optional[str] = None,
              now: Optional[datetime] = None) -> ParsedReminderIntent:
        tz_name = tz_name or settings.DEFAULT_USER_TIMEZONE
        try:
            context = ParsingContext.create(tz_name, now)
            raw = self.backend.extract(user_message, context)
            if isinstance(raw, str):
                raw = json.loads(raw)
            intent = ParsedReminderIntent.model_validate(raw)
        except Exception as e:
            logger.error(f"Reminder parsing failed ({self.backend.name}): {e}")
            return fallback_intent(user_message)

        if not intent.is_reminder and not intent.error_message:
            intent.error_message = NOT_A_REMINDER_MESSAGE
        logger.info(
            f"Parsed ({self.backend.name}) is_reminder={intent.is_reminder} "
            f"date={intent.date or '-'} time={intent.time or '-'}"
        )
        return intent


# ---------------------------------------------------------------------------
# LLM backend
# ---------------------------------------------------------------------------

REMINDER_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string", "description": "The task to be reminded about"},
        "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
        "time": {"type": "string", "description": "Time in HH:MM format (24-hour)"},
        "location": {"type": ["string", "null"], "description": "Location if mentioned"},
        "is_reminder": {"type": "boolean", "description": "Whether this is a reminder request"},
        "error_message": {"type": ["string", "null"], "description": "Why the request is invalid or unclear"},
    },
    "required": ["message", "date", "time", "location", "is_reminder", "error_message"],
    "additionalProperties": False,
}

_SYSTEM_PROMPT = (
    "You turn chat messages into reminders. Reply ONLY with JSON matching the schema.\n"
    "- `message` is the task itself, without the scheduling words.\n"
    "- Resolve relative expressions (tomorrow, in 2 hours, next Monday, at 3pm) "
    "against the current date and time given by the user turn.\n"
    "- `date` is YYYY-MM-DD and `time` is HH:MM in 24-hour form, both in the user's timezone.\n"
    "- If AM/PM is not stated, an hour from 1 to 6 means PM and an hour from 7 to 11 means AM, and a bare 12 means 12:00 (noon).\n"
    "- Messages may be in English or Hindi (Devanagari or romanized); keep `message` in the user's language.\n"
    "- Fill `location` only when a place is mentioned.\n"
    "- If the message is not a reminder request (a greeting, a question), set `is_reminder` to false "
    "and explain in `error_message` how to phrase a reminder.\n\n"
    "Examples:\n"
    "\"remind me tomorrow at 3pm to call mom\" -> message \"call mom\", date tomorrow, time \"15:00\"\n"
    "\"याद दिलाओ कल सुबह 9 बजे दवाई लेनी है\" -> message \"दवाई लेनी है\", date tomorrow, time \"09:00\"\n"
    "\"set reminder for meeting in 2 hours\" -> message \"meeting\", date today, time now + 2 hours\n"
    "\"hello\" -> is_reminder false, error_message \"This doesn't look like a reminder request\""
)

_USER_TEMPLATE = (
    "Current date: {current_date}\n"
    "Current time: {current_time}\n"
    "User timezone: {timezone}\n\n"
    "User message: {message}"
)

# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def build_messages(user_message: str, context: ParsingContext) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": _USER_TEMPLATE.format(
            current_date=context.current_date,
            current_time=context.current_time,
            timezone=context.timezone,
            message=json.dumps(user_message, ensure_ascii=False),
        )},
    ]


class OpenAIBackend(ParserBackend):
    name = "openai"

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout or settings.OPENAI_TIMEOUT
        self._client = client or OpenAI(api_key=settings.OPENAI_API_KEY)

    @retry(
        wait=wait_random_exponential(multiplier=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRY_ERRORS),
        reraise=True,
    )
    def _complete(self, messages: List[Dict[str, str]]) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "parsed_reminder", "strict": True, "schema": REMINDER_SCHEMA},
            },
            temperature=0,
            timeout=self.timeout,
        )
        return response.choices[0].message.content or ""

    def extract(self, user_message: str, context: ParsingContext) -> Dict[str, Any]:
        raw = self._complete(build_messages(user_message, context))
        logger.debug(f"LLM raw JSON: {raw}")
        return json.loads(raw)


# ---------------------------------------------------------------------------
# Rule-based backend
# ---------------------------------------------------------------------------

_DEVANAGARI = "\u0900-\u097F"
# Token boundaries that also treat Devanagari (including vowel signs) as word characters
_B = rf"(?<![\w{_DEVANAGARI}])"
_E = rf"(?![\w{_DEVANAGARI}])"

_TRIGGER = re.compile(
    _B + r"(?:"
    r"(?:please\s+)?remind\s+me"
    r"|(?:please\s+)?(?:set|create|add)\s+(?:a\s+|an\s+)?reminder(?:\s+for)?"
    r"|reminder(?:\s+for)?"
    r"|remind"
    r"|don'?t\s+let\s+me\s+forget"
    r"|(?:mujhe\s+)?ya+d\s+dila[a-z]*"
    rf"|(?:मुझे\s+)?याद\s+दिला[{_DEVANAGARI}]*"
    rf"|रिमाइंड[{_DEVANAGARI}]*"
    r")" + _E,
    re.IGNORECASE,
)

_UNIT_WORDS = {
    "minute": "minutes", "minutes": "minutes", "min": "minutes", "mins": "minutes", "मिनट": "minutes",
    "hour": "hours", "hours": "hours", "hr": "hours", "hrs": "hours",
    "घंटे": "hours", "घंटा": "hours", "घंटों": "hours", "ghante": "hours", "ghanta": "hours",
    "day": "days", "days": "days", "दिन": "days", "din": "days",
    "week": "weeks", "weeks": "weeks",
}

_RELATIVE_EN = re.compile(
    _B + r"(?:in|after)\s+(\d+|an?|one|half\s+an?)\s+(minutes?|mins?|hours?|hrs?|days?|weeks?)" + _E,
    re.IGNORECASE,
)
_RELATIVE_HI = re.compile(
    _B + r"(\d+)\s*(मिनट|घंटे|घंटा|घंटों|दिन|minutes?|mins?|ghante|ghanta|din)\s+(?:बाद|में|baad|bad|mein|me)" + _E,
    re.IGNORECASE,
)

_DAY_WORDS = [
    (re.compile(_B + r"(?:the\s+)?day\s+after\s+tomorrow" + _E, re.IGNORECASE), 2),
    (re.compile(_B + r"(?:परसों|parson|parso)" + _E, re.IGNORECASE), 2),
    (re.compile(_B + r"(?:tomorrow|tmrw|tmr|कल|kal)" + _E, re.IGNORECASE), 1),
    (re.compile(_B + r"(?:today|aaj|आज)" + _E, re.IGNORECASE), 0),
    (re.compile(_B + r"next\s+week" + _E, re.IGNORECASE), 7),
]

_WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
    "सोमवार": 0, "मंगलवार": 1, "बुधवार": 2, "गुरुवार": 3, "शुक्रवार": 4, "शनिवार": 5, "रविवार": 6,
    "somvar": 0, "mangalvar": 1, "budhvar": 2, "guruvar": 3, "shukravar": 4, "shanivar": 5, "ravivar": 6,
}
_WEEKDAY = re.compile(
    _B + r"(?:(next|this|on|coming)\s+)?(" + "|".join(_WEEKDAYS) + r")" + _E + r"(?:\s+(?:को|ko)" + _E + r")?",
    re.IGNORECASE,
)

_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6, "july": 7,
    "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))
_ISO_DATE = re.compile(_B + r"(?:on\s+)?(\d{4})-(\d{1,2})-(\d{1,2})" + _E)
_SLASH_DATE = re.compile(_B + r"(?:on\s+)?(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?" + _E)
_DAY_MONTH = re.compile(
    _B + r"(?:on\s+)?(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?(" + _MONTH_ALT + r")" + _E, re.IGNORECASE
)
_MONTH_DAY = re.compile(
    _B + r"(?:on\s+)?(" + _MONTH_ALT + r")\s+(\d{1,2})(?:st|nd|rd|th)?" + _E, re.IGNORECASE
)

_CLOCK_MERIDIEM = re.compile(
    _B + r"(?:at\s+|@\s*|by\s+)?(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?\s*m\.?" + _E, re.IGNORECASE
)
_CLOCK_24H = re.compile(_B + r"(?:at\s+|@\s*|by\s+)?(\d{1,2})[:.](\d{2})" + _E, re.IGNORECASE)
_CLOCK_BAJE = re.compile(_B + r"(\d{1,2})(?:[:.](\d{2}))?\s*(?:बजे|baje|bje)" + _E, re.IGNORECASE)
_CLOCK_OCLOCK = re.compile(_B + r"(?:at\s+)?(\d{1,2})\s*o'?\s*clock" + _E, re.IGNORECASE)
_CLOCK_AT = re.compile(
    _B + r"(?:at|@)\s*(\d{1,2})" + _E + r"(?!\s*(?:minutes?|mins?|hours?|hrs?|days?|weeks?|%))",
    re.IGNORECASE,
)

# (pattern, meridiem, default time, day offset)
_PERIODS = [
    (re.compile(_B + r"(?:at\s+)?(?:noon|midday)" + _E, re.IGNORECASE), None, (12, 0), None),
    (re.compile(_B + r"(?:at\s+)?midnight" + _E, re.IGNORECASE), None, (0, 0), None),
    (re.compile(_B + r"tonight" + _E, re.IGNORECASE), "pm", (21, 0), 0),
    (re.compile(_B + r"(?:in\s+the\s+|this\s+)?morning" + _E, re.IGNORECASE), "am", (9, 0), None),
    (re.compile(_B + r"(?:in\s+the\s+|this\s+)?afternoon" + _E, re.IGNORECASE), "pm", (14, 0), None),
    (re.compile(_B + r"(?:in\s+the\s+|this\s+)?evening" + _E, re.IGNORECASE), "pm", (18, 0), None),
    (re.compile(_B + r"(?:at\s+)?night" + _E, re.IGNORECASE), "pm", (21, 0), None),
    (re.compile(_B + r"(?:सुबह|subah|subha)" + _E, re.IGNORECASE), "am", (9, 0), None),
    (re.compile(_B + r"(?:दोपहर|dopahar|dopehar)" + _E, re.IGNORECASE), "pm", (14, 0), None),
    (re.compile(_B + r"(?:शाम|shaam)" + _E, re.IGNORECASE), "pm", (18, 0), None),
    (re.compile(_B + r"(?:रात|raat)" + _E, re.IGNORECASE), "pm", (21, 0), None),
]

_LOCATION = re.compile(
    _B + r"(?:at|in|near)\s+the\s+([^,.!?\d]+?)(?=\s+(?:to|and|for|on|by)\s|[,.!?]|$)",
    re.IGNORECASE,
)
_LEADING_CONNECTOR = re.compile(r"^(?:to|that|about|for|of|ki|कि|के\s+लिए)\s+", re.IGNORECASE)
_TRAILING_CONNECTOR = re.compile(r"\s+(?:at|on|by|in|to|for)$", re.IGNORECASE)


def _take(pattern: re.Pattern, text: str) -> Tuple[Optional[re.Match], str]:
    """Find the first match and cut it out of the text."""
    match = pattern.search(text)
    if not match:
        return None, text
    remaining = text[:match.start()] + " " + text[match.end():]
    return match, re.sub(r"\s+", " ", remaining).strip()


def _to_24h(hour: int, minute: int, meridiem: Optional[str]) -> Optional[Tuple[int, int]]:
    """Apply AM/PM; without one, 1-6 means PM, 7-11 means AM and 12 stays noon."""
    if meridiem == "am":
        hour = 0 if hour == 12 else hour
    elif meridiem == "pm":
        hour = hour if hour >= 12 else hour + 12
    elif meridiem is None and 1 <= hour <= 6:
        hour += 12
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _relative_delta(amount: str, unit: str) -> timedelta:
    amount = amount.lower()
    if amount.startswith("half"):
        value = 0.5
    elif amount in ("a", "an", "one"):
        value = 1
    else:
        value = int(amount)
    return timedelta(**{_UNIT_WORDS[unit.lower()]: value})


class RuleBasedBackend(ParserBackend):
    """Deterministic English/Hindi extraction for common reminder phrasings."""

    name = "rules"

    def extract(self, user_message: str, context: ParsingContext) -> Dict[str, Any]:
        now = context.now
        today = now.date()
        text = re.sub(r"\s+", " ", user_message or "").strip()

        trigger, text = _take(_TRIGGER, text)

        target_date: Optional[date] = None
        clock: Optional[Tuple[int, int]] = None
        explicit_day = False

        relative, text = _take(_RELATIVE_EN, text)
        if not relative:
            relative, text = _take(_RELATIVE_HI, text)
        if relative:
            moment = now + _relative_delta(relative.group(1), relative.group(2))
            target_date, clock = moment.date(), (moment.hour, moment.minute)
        else:
            target_date, text = self._take_date(text, today)
            explicit_day = target_date is not None

        hour_minute, meridiem, text = self._take_clock(text)

        period_meridiem = None
        period_default = None
        for pattern, p_meridiem, default, day_offset in _PERIODS:
            match, text = _take(pattern, text)
            if match:
                period_meridiem, period_default = p_meridiem, default
                if day_offset is not None and target_date is None:
                    target_date, explicit_day = today + timedelta(days=day_offset), True
                break

        if clock is None:
            if hour_minute is not None:
                if meridiem is None:
                    meridiem = period_meridiem
                clock = _to_24h(hour_minute[0], hour_minute[1], meridiem)
            elif period_default is not None:
                clock = period_default

        location_match, text = _take(_LOCATION, text)
        location = location_match.group(1).strip() if location_match else None

        message = self._clean_message(text)
        has_time = clock is not None or relative is not None
        if not trigger and not has_time:
            return {
                "message": user_message,
                "date": "",
                "time": "",
                "location": None,
                "is_reminder": False,
                "error_message": NOT_A_REMINDER_MESSAGE,
            }

        if clock is not None and target_date is None:
            target_date = today
            if datetime.combine(today, time(*clock), tzinfo=now.tzinfo) <= now:
                target_date = today + timedelta(days=1)

        return {
            "message": message,
            "date": target_date.isoformat() if target_date else "",
            "time": f"{clock[0]:02d}:{clock[1]:02d}" if clock else "",
            "location": location,
            "is_reminder": True,
            "error_message": None,
        }

    def _take_date(self, text: str, today: date) -> Tuple[Optional[date], str]:
        match, text = _take(_ISO_DATE, text)
        if match:
            return self._safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3))), text

        match, text = _take(_DAY_MONTH, text)
        if match:
            return self._upcoming(today, _MONTHS[match.group(2).lower()], int(match.group(1))), text
        match, text = _take(_MONTH_DAY, text)
        if match:
            return self._upcoming(today, _MONTHS[match.group(1).lower()], int(match.group(2))), text

        match, text = _take(_SLASH_DATE, text)
        if match:
            day, month, year = int(match.group(1)), int(match.group(2)), match.group(3)
            if year:
                year = int(year) + 2000 if len(year) == 2 else int(year)
                return self._safe_date(year, month, day), text
            return self._upcoming(today, month, day), text

        for pattern, offset in _DAY_WORDS:
            match, text = _take(pattern, text)
            if match:
                return today + timedelta(days=offset), text

        match, text = _take(_WEEKDAY, text)
        if match:
            ahead = (_WEEKDAYS[match.group(2).lower()] - today.weekday()) % 7
            return today + timedelta(days=ahead or 7), text
        return None, text

    def _take_clock(self, text: str) -> Tuple[Optional[Tuple[int, int]], Optional[str], str]:
        """Returns ((hour, minute), meridiem, text); meridiem is 'am', 'pm',
        'literal' for unambiguous 24h times, or None when ambiguous."""
        match, text = _take(_CLOCK_MERIDIEM, text)
        if match:
            meridiem = "am" if match.group(3).lower() == "a" else "pm"
            return (int(match.group(1)), int(match.group(2) or 0)), meridiem, text

        match, text = _take(_CLOCK_24H, text)
        if match:
            raw_hour = match.group(1)
            hour = int(raw_hour)
            literal = raw_hour.startswith("0") or hour == 0 or hour >= 13
            return (hour, int(match.group(2))), "literal" if literal else None, text

        for pattern in (_CLOCK_BAJE, _CLOCK_OCLOCK):
            match, text = _take(pattern, text)
            if match:
                minute = int(match.group(2) or 0) if pattern is _CLOCK_BAJE else 0
                return (int(match.group(1)), minute), None, text

        match, text = _take(_CLOCK_AT, text)
        if match:
            return (int(match.group(1)), 0), None, text
        return None, None, text

    @staticmethod
    def _clean_message(text: str) -> str:
        message = text.strip(" ,.:;-!")
        previous = None
        while previous != message:
            previous = message
            message = _LEADING_CONNECTOR.sub("", message).strip(" ,.:;-!")
            message = _TRAILING_CONNECTOR.sub("", message).strip(" ,.:;-!")
        return message

    @staticmethod
    def _safe_date(year: int, month: int, day: int) -> Optional[date]:
        try:
            return date(year, month, day)
        except ValueError:
            return None

    def _upcoming(self, today: date, month: int, day: int) -> Optional[date]:
        candidate = self._safe_date(today.year, month, day)
        if candidate is not None and candidate < today:
            candidate = self._safe_date(today.year + 1, month, day)
        return candidate


@lru_cache(maxsize=1)
def get_parser() -> ReminderParser:
    """Parser configured from settings; the LLM backend needs an API key."""
    backend_name = settings.PARSER_BACKEND.lower()
    if backend_name == "openai" or (backend_name == "auto" and settings.OPENAI_API_KEY):
        if settings.OPENAI_API_KEY:
            return ReminderParser(OpenAIBackend())
        logger.warning("PARSER_BACKEND=openai but OPENAI_API_KEY is not set; using rule-based parser")
    return ReminderParser(RuleBasedBackend())
