from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
import logging
import re
from typing import Sequence, Union
from zoneinfo import ZoneInfo

from actiondesk.domain import AmbiguousDateTime, ScheduleResolution
from actiondesk.errors import ActionError

from .intent_capability import DateTimeProposal, IntentCapability

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Meeting"
CLARIFICATION_QUESTION = (
    "What day and time should I schedule this for? "
    "For example: \"tomorrow at 3pm\" or \"Friday 10:30am\"."
)

_WEEKDAY_TO_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
_DAY_PATTERN = re.compile(
    r"\b(today|tonight|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
)
_MERIDIEM_TIME_PATTERN = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b")
_CLOCK_TIME_PATTERN = re.compile(r"\b(\d{1,2}):(\d{2})(?!\d)")
_NOON_PATTERN = re.compile(r"\bnoon\b")
_TOPIC_PATTERN = re.compile(
    r"(?:\babout|\bregarding|\bre:|\bto discuss)\s+([^.!?,;\n]{2,80})", re.IGNORECASE
)
_WITH_NAME_PATTERN = re.compile(
    r"\bwith\s+([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*)??)"
    r"(?=\s+(?:on|at|in|and|for|about|regarding|to|tomorrow|today|tonight|next|this|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b|[,.!?]|$)",
    re.IGNORECASE,
)
_SCHEDULING_WORDS = frozenset(
    {
        "a", "add", "an", "and", "at", "book", "calendar", "can", "could", "create",
        "event", "for", "i", "in", "is", "it", "let's", "lets", "me", "meet",
        "meeting", "my", "next", "on", "please", "put", "schedule", "set", "some",
        "sometime", "soon", "the", "this", "time", "to", "up", "us", "we", "you",
        "am", "pm", "noon", "today", "tonight", "tomorrow", "week",
        *_WEEKDAY_TO_INDEX.keys(),
    }
)

Resolution = Union[ScheduleResolution, AmbiguousDateTime]


class DateTimeResolver:
    def __init__(
        self,
        capability: IntentCapability | None = None,
        *,
        timezone_name: str = "UTC",
        duration_minutes: int = 30,
    ) -> None:
        self._capability = capability
        self._tz: tzinfo = ZoneInfo(timezone_name or "UTC")
        self._duration = timedelta(minutes=max(1, int(duration_minutes)))

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    def resolve(
        self,
        free_text: str,
        conversation_context: Sequence[str] = (),
        now: datetime | None = None,
    ) -> Resolution:
        current = self._localize(now)
        text = (free_text or "").strip()
        context = [str(item) for item in conversation_context if str(item).strip()]

        if self._capability is not None:
            proposal = self._ask_capability(text, context, current)
            if proposal is not None:
                if proposal.error == "missing_datetime":
                    return AmbiguousDateTime(
                        reason="capability_missing_datetime", question=CLARIFICATION_QUESTION
                    )
                resolution = self._from_proposal(proposal, text, context)
                if resolution is not None:
                    return resolution

        return self._fallback(text, context, current)

    def infer_title(self, free_text: str, recent_turns: Sequence[str] = ()) -> str:
        text = (free_text or "").strip()
        for candidate in [text, *reversed([str(turn) for turn in recent_turns])]:
            match = _TOPIC_PATTERN.search(candidate or "")
            if match:
                topic = _strip_scheduling_tail(match.group(1))
                if topic:
                    return _capitalize_first(topic)

        lowered = text.lower()
        person = ""
        name_match = _WITH_NAME_PATTERN.search(lowered)
        if name_match:
            person = " ".join(part.capitalize() for part in name_match.group(1).split())
            lowered = lowered[: name_match.start()] + " " + lowered[name_match.end() :]

        lowered = _MERIDIEM_TIME_PATTERN.sub(" ", lowered)
        lowered = _CLOCK_TIME_PATTERN.sub(" ", lowered)
        words = [
            word
            for word in re.findall(r"[a-z0-9'&-]+", lowered)
            if word not in _SCHEDULING_WORDS and not word.isdigit()
        ]
        base = _capitalize_first(" ".join(words)) if words else ""
        if base and person:
            return f"{base} with {person}"
        if person:
            return f"{DEFAULT_TITLE} with {person}"
        return base or DEFAULT_TITLE

    def _ask_capability(
        self, text: str, context: list[str], now: datetime
    ) -> DateTimeProposal | None:
        try:
            return self._capability.resolve_datetime(text, context, now)
        except ActionError as exc:
            logger.warning("Capability datetime resolution failed: %s", exc.code)
            return None

    def _from_proposal(
        self, proposal: DateTimeProposal, text: str, context: list[str]
    ) -> ScheduleResolution | None:
        if proposal.error:
            logger.info("Capability datetime error %s, using fallback parser", proposal.error)
            return None
        start = self._parse_instant(proposal.start)
        if start is None:
            return None
        end = self._parse_instant(proposal.end) if proposal.end else start + self._duration
        if end is None or end <= start:
            return None
        return ScheduleResolution(
            start=start,
            end=end,
            resolved_by="capability",
            title=proposal.title or self.infer_title(text, context),
        )

    def _fallback(self, text: str, context: list[str], now: datetime) -> Resolution:
        lowered = text.lower()
        day = _match_day(lowered, now.date())
        clock = _match_time(lowered)
        if day is None and clock is None:
            return AmbiguousDateTime(reason="no_day_or_time", question=CLARIFICATION_QUESTION)
        if day is None:
            return AmbiguousDateTime(reason="no_day", question=CLARIFICATION_QUESTION)
        if clock is None:
            return AmbiguousDateTime(reason="no_time", question=CLARIFICATION_QUESTION)
        start = datetime.combine(day, clock, tzinfo=self._tz)
        return ScheduleResolution(
            start=start,
            end=start + self._duration,
            resolved_by="fallback",
            title=self.infer_title(text, context),
        )

    def _localize(self, now: datetime | None) -> datetime:
        if now is None:
            return datetime.now(self._tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=self._tz)
        return now.astimezone(self._tz)

    def _parse_instant(self, raw: str | None) -> datetime | None:
        if not raw:
            return None
        value = raw.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._tz)
        return parsed


def _match_day(lowered: str, today: date) -> date | None:
    match = _DAY_PATTERN.search(lowered)
    if not match:
        return None
    token = match.group(1)
    if token in {"today", "tonight"}:
        return today
    if token == "tomorrow":
        return today + timedelta(days=1)
    days_ahead = (_WEEKDAY_TO_INDEX[token] - today.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return today + timedelta(days=days_ahead)


def _match_time(lowered: str) -> time | None:
    match = _MERIDIEM_TIME_PATTERN.search(lowered)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if 1 <= hour <= 12 and minute <= 59:
            if match.group(3) == "pm" and hour != 12:
                hour += 12
            elif match.group(3) == "am" and hour == 12:
                hour = 0
            return time(hour, minute)
        # "13:00pm" still reads as a 24-hour clock time.
    match = _CLOCK_TIME_PATTERN.search(lowered)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        return time(hour, minute)
    if _NOON_PATTERN.search(lowered):
        return time(12, 0)
    return None


def _strip_scheduling_tail(topic: str) -> str:
    words = topic.strip().split()
    while words and (
        words[-1].lower() in _SCHEDULING_WORDS
        or _MERIDIEM_TIME_PATTERN.fullmatch(words[-1].lower())
        or _CLOCK_TIME_PATTERN.fullmatch(words[-1])
        or words[-1].isdigit()
    ):
        words.pop()
    return " ".join(words).strip(" .")


def _capitalize_first(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        return ""
    return cleaned[0].upper() + cleaned[1:]
