"""
Parse market schedule strings and derive open/closed state.

Supported formats (one time window per string):
- "Daily 7am-9pm"
- "Wed 8am-3pm"
- "Sat-Sun 10am-6pm"
- "Fri-Mon 4pm-11pm"  (day ranges wrap around the week)
- "Tue, Thu 8am-2pm"

Anything else, including two windows on one day, parses to None and callers
treat the schedule as unknown. Days are indexed Sunday = 0.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

DAY_MAP = {
    "sun": 0,
    "sunday": 0,
    "mon": 1,
    "monday": 1,
    "tue": 2,
    "tues": 2,
    "tuesday": 2,
    "wed": 3,
    "wednesday": 3,
    "thu": 4,
    "thur": 4,
    "thurs": 4,
    "thursday": 4,
    "fri": 5,
    "friday": 5,
    "sat": 6,
    "saturday": 6,
}

DAY_ORDER = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")
_HOURS_RE = re.compile(
    r"^(.+?)\s+(\d{1,2}(?::\d{2})?\s*(?:am|pm)?)\s*-\s*(\d{1,2}(?::\d{2})?\s*(?:am|pm)?)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedHours:
    days: FrozenSet[int]
    open_minute: int
    close_minute: int

    @property
    def crosses_midnight(self) -> bool:
        return self.open_minute > self.close_minute


def parse_time(text: str) -> Optional[int]:
    """Convert "9am", "8:30PM" or "17:00" to minutes after midnight."""
    match = _TIME_RE.match(text.strip().lower())
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2)) if match.group(2) else 0
    meridiem = match.group(3)
    if minutes > 59:
        return None
    if meridiem:
        if not 1 <= hours <= 12:
            return None
        if meridiem == "pm" and hours != 12:
            hours += 12
        elif meridiem == "am" and hours == 12:
            hours = 0
    elif hours > 23:
        return None
    return hours * 60 + minutes


def parse_days(text: str) -> FrozenSet[int]:
    days = text.lower().strip()

    if days == "daily":
        return frozenset(range(7))

    if "-" in days:
        parts = [p.strip() for p in days.split("-")]
        if len(parts) != 2 or parts[0] not in DAY_MAP or parts[1] not in DAY_MAP:
            return frozenset()
        start, end = DAY_MAP[parts[0]], DAY_MAP[parts[1]]
        if start <= end:
            return frozenset(range(start, end + 1))
        # wraps past Saturday, e.g. Fri-Mon
        return frozenset(list(range(start, 7)) + list(range(0, end + 1)))

    if "," in days:
        names = [p.strip() for p in days.split(",")]
        if any(name not in DAY_MAP for name in names):
            return frozenset()
        return frozenset(DAY_MAP[name] for name in names)

    if days in DAY_MAP:
        return frozenset({DAY_MAP[days]})
    return frozenset()


def parse_hours(text: Optional[str]) -> Optional[ParsedHours]:
    if not text:
        return None
    match = _HOURS_RE.match(text.strip())
    if not match:
        return None
    day_part, open_str, close_str = match.groups()
    days = parse_days(day_part)
    open_minute = parse_time(open_str)
    close_minute = parse_time(close_str)
    if not days or open_minute is None or close_minute is None:
        return None
    return ParsedHours(days=days, open_minute=open_minute, close_minute=close_minute)


def sunday_index(moment: datetime) -> int:
    # datetime.weekday() is Monday = 0
    return (moment.weekday() + 1) % 7


def is_open_at(parsed: ParsedHours, day: int, minute: int) -> bool:
    if day not in parsed.days:
        return False
    if parsed.crosses_midnight:
        return minute >= parsed.open_minute or minute < parsed.close_minute
    return parsed.open_minute <= minute < parsed.close_minute


def is_market_open(text: Optional[str], now: Optional[datetime] = None) -> Optional[bool]:
    """Return True/False for a parseable schedule, None when unknown."""
    parsed = parse_hours(text)
    if parsed is None:
        return None
    now = now or datetime.now()
    return is_open_at(parsed, sunday_index(now), now.hour * 60 + now.minute)


def format_minute(minute: int) -> str:
    hours, mins = divmod(minute, 60)
    suffix = "pm" if hours >= 12 else "am"
    display = hours - 12 if hours > 12 else (12 if hours == 0 else hours)
    if mins:
        return f"{display}:{mins:02d}{suffix}"
    return f"{display}{suffix}"


def next_open_time(text: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """Human-readable "Opens at 9am" / "Opens Mon" for the next opening.

    Scans today and the seven days after it, so a weekly market that has
    already closed today reports the same weekday next week.
    """
    parsed = parse_hours(text)
    if parsed is None:
        return None
    now = now or datetime.now()
    today = sunday_index(now)
    minute = now.hour * 60 + now.minute

    for offset in range(8):
        day = (today + offset) % 7
        if day not in parsed.days:
            continue
        if offset == 0:
            if minute < parsed.open_minute:
                return f"Opens at {format_minute(parsed.open_minute)}"
            continue
        return f"Opens {DAY_ORDER[day].capitalize()}"
    return None


def resolve_open_state(
    text: Optional[str],
    fallback: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Optional[bool]:
    """Parsed schedule wins; otherwise use the provider-supplied flag."""
    state = is_market_open(text, now)
    if state is None:
        return fallback
    return state
