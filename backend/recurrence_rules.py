"""Recurrence rule model: pattern, weekday set and termination condition."""
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, Optional, Tuple

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule, rrulestr

from backend.errors import ValidationError

PATTERN_DAILY = "daily"
PATTERN_WEEKLY = "weekly"
PATTERN_MONTHLY = "monthly"
PATTERN_YEARLY = "yearly"
PATTERNS = (PATTERN_DAILY, PATTERN_WEEKLY, PATTERN_MONTHLY, PATTERN_YEARLY)

MODE_CLONE = "clone"
MODE_REFRESH = "refresh"
RECURRENCE_MODES = (MODE_CLONE, MODE_REFRESH)

TERMINATION_NONE = "none"
TERMINATION_END_DATE = "end_date"
TERMINATION_COUNT = "count"

# Index matches datetime.weekday()
WEEKDAY_TAGS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
RRULE_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)
_RRULE_FREQ = {
    PATTERN_DAILY: DAILY,
    PATTERN_WEEKLY: WEEKLY,
    PATTERN_MONTHLY: MONTHLY,
    PATTERN_YEARLY: YEARLY,
}
_PATTERN_BY_FREQ = {freq: pattern for pattern, freq in _RRULE_FREQ.items()}
def normalize_weekday(raw) -> str:
    """Return the canonical weekday tag for 'Monday', 'monday', 'mon' or 'MO'."""
    value = str(raw or "").strip().lower()
    if value in WEEKDAY_TAGS:
        return value
    for tag in WEEKDAY_TAGS:
        if len(value) >= 2 and tag.startswith(value):
            return tag
    raise ValidationError(f"Unknown weekday: {raw!r}")


def parse_recurrence_days(raw) -> Tuple[str, ...]:
    """Parse a comma-separated string or list of weekday tags into calendar order."""
    if raw is None or raw == "":
        return ()
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = list(raw)
    else:
        values = str(raw).split(",")
    tags = {normalize_weekday(v) for v in values if str(v).strip()}
    return tuple(tag for tag in WEEKDAY_TAGS if tag in tags)


def _coerce_end_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid recurrence end date: {value!r}")


def _coerce_count(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid recurrence count: {value!r}")
    if count <= 0:
        raise ValidationError("Recurrence count must be positive")
    return count


@dataclass(frozen=True)
class RecurrenceRule:
    pattern: str
    days: Tuple[str, ...] = ()
    end_date: Optional[date] = None
    count: Optional[int] = None

    @classmethod
    def build(cls, pattern, days=None, end_date=None, count=None, anchor=None):
        """
        Normalize and validate raw rule fields.

        A weekly rule without explicit days repeats on the anchor's weekday; days
        given for any other pattern are rejected.
        """
        pattern_value = str(pattern or "").strip().lower()
        if pattern_value not in PATTERNS:
            raise ValidationError(f"Unknown recurrence pattern: {pattern!r}")
        day_tags = parse_recurrence_days(days)
        if pattern_value == PATTERN_WEEKLY:
            if not day_tags:
                if anchor is None:
                    raise ValidationError("Weekly recurrence needs at least one weekday")
                day_tags = (WEEKDAY_TAGS[anchor.weekday()],)
        elif day_tags:
            raise ValidationError("Recurrence days only apply to the weekly pattern")
        end_value = _coerce_end_date(end_date)
        count_value = _coerce_count(count)
        if end_value is not None and count_value is not None:
            raise ValidationError("Set either a recurrence end date or a count, not both")
        return cls(pattern=pattern_value, days=day_tags, end_date=end_value, count=count_value)

    @property
    def termination(self) -> str:
        if self.end_date is not None:
            return TERMINATION_END_DATE
        if self.count is not None:
            return TERMINATION_COUNT
        return TERMINATION_NONE

    @property
    def weekday_indices(self) -> Tuple[int, ...]:
        return tuple(WEEKDAY_TAGS.index(tag) for tag in self.days)

    @property
    def days_csv(self) -> Optional[str]:
        return ",".join(self.days) if self.days else None

    def to_dict(self):
        return {
            "pattern": self.pattern,
            "days": list(self.days),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "count": self.count,
            "termination": self.termination,
        }

    def to_rrule(self) -> str:
        """Render as a single RFC 5545 ``RRULE:`` line (no DTSTART)."""
        until = datetime.combine(self.end_date, time(23, 59, 59)) if self.end_date is not None else None
        # RFC 5545 COUNT includes the first instance
        count = self.count + 1 if self.count is not None else None
        rendered = build_rrule(self.pattern, datetime(2000, 1, 1), self.weekday_indices, count=count, until=until)
        line = next(ln for ln in str(rendered).splitlines() if ln.startswith("RRULE:"))
        # events carry a TZID, so UNTIL goes out in UTC form
        return re.sub(r"(UNTIL=\d{8}T\d{6})\b", r"\1Z", line)


def build_rrule(pattern, dtstart, weekday_indices=(), count=None, until=None) -> rrule:
    """dateutil rule for `pattern` starting at `dtstart`."""
    return rrule(
        _RRULE_FREQ[pattern],
        dtstart=dtstart,
        byweekday=[RRULE_WEEKDAYS[i] for i in weekday_indices] or None,
        count=count,
        until=until,
    )


def from_rrule(lines: Iterable[str], anchor=None) -> Optional[RecurrenceRule]:
    """
    Parse the RRULE subset this app writes (FREQ, BYDAY, UNTIL, COUNT, INTERVAL=1).

    Returns None for rules outside that subset so callers can import the item as a
    plain, non-recurring entry instead of guessing.
    """
    line = next((ln for ln in (lines or []) if str(ln).upper().startswith("RRULE:")), None)
    if not line:
        return None
    # weekly rules fold ordinal days such as 1MO into plain ones when parsed
    if re.search(r"BYDAY=[^;]*\d", str(line).upper()):
        return None
    try:
        parsed = rrulestr(str(line), dtstart=anchor, ignoretz=True)
    except (ValueError, TypeError):
        return None

    # dateutil keeps the parsed fields on private attributes
    pattern = _PATTERN_BY_FREQ.get(parsed._freq)
    if pattern is None or parsed._interval != 1:
        return None
    original = parsed._original_rule
    if any(value for key, value in original.items() if key != "byweekday"):
        return None
    weekdays = original.get("byweekday") or ()
    days = [WEEKDAY_TAGS[day.weekday] for day in weekdays]

    count = None
    if parsed._count is not None:
        count = parsed._count - 1
        if count <= 0:
            return None
    end_date = parsed._until.date() if parsed._until is not None else None
    try:
        return RecurrenceRule.build(pattern, days=days, end_date=end_date, count=count, anchor=anchor)
    except ValidationError:
        return None
