import re
from datetime import date, datetime, time

import pytz

from backend.errors import ValidationError
from backend.recurrence_rules import MODE_CLONE, RECURRENCE_MODES, RecurrenceRule
from backend.schedule_records import KIND_EVENT, KINDS, STATUSES, ScheduleRecord


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ["1", "true", "yes", "on"]


def parse_time_str(val):
    """Parse 24h or am/pm strings into a time object; return None on failure."""
    if not val:
        return None
    if isinstance(val, time):
        return val
    s = str(val).strip().lower().replace(" ", "")

    pattern = r"^(?P<hour>\d{1,2})(:(?P<minute>\d{1,2}))?(:(?P<second>\d{1,2}))?(?P<ampm>a|p|am|pm)?$"
    m = re.match(pattern, s)
    if not m:
        return None
    try:
        hour = int(m.group("hour"))
        minute = int(m.group("minute") or 0)
        ampm = m.group("ampm")
        if m.group("second") is not None:
            sec_val = int(m.group("second"))
            if not (0 <= sec_val <= 59):
                return None
        if ampm:
            if ampm in ("p", "pm") and hour != 12:
                hour += 12
            if ampm in ("a", "am") and hour == 12:
                hour = 0
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            return None
        return time(hour=hour, minute=minute)
    except (TypeError, ValueError):
        return None


def parse_day_value(raw):
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def parse_datetime_value(raw, tz_name="UTC"):
    """ISO 8601 string -> naive wall-clock datetime in `tz_name`. Offsets are converted, not dropped."""
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            day = parse_day_value(text)
            if day is None:
                return None
            value = datetime.combine(day, time())
    if value.tzinfo is not None:
        value = value.astimezone(pytz.timezone(tz_name)).replace(tzinfo=None)
    return value


def _instant_from_payload(data, key, tz_name):
    """Read `key` as a full datetime, or as `day` + `<key>_time` the way the calendar form posts it."""
    if data.get(key) not in (None, ""):
        value = parse_datetime_value(data.get(key), tz_name)
        if value is None:
            raise ValidationError(f"Invalid {key}: {data.get(key)!r}")
        return value
    time_key = f"{key}_time"
    if data.get(time_key) and data.get("day"):
        day = parse_day_value(data.get("day"))
        at = parse_time_str(data.get(time_key))
        if day is None or at is None:
            raise ValidationError(f"Invalid day or {time_key}")
        return datetime.combine(day, at)
    return None


def parse_recurrence_payload(raw, anchor):
    """
    Accept either a nested ``{"pattern": ..., "days": ..., "end_date": ..., "count": ...}``
    object or ``None``/``False`` for a plain item.
    """
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("recurrence must be an object")
    return RecurrenceRule.build(
        raw.get("pattern"),
        days=raw.get("days"),
        end_date=raw.get("end_date"),
        count=raw.get("count"),
        anchor=anchor,
    )


def _normalize_choice(value, choices, label):
    normalized = str(value).strip().lower()
    if normalized not in choices:
        raise ValidationError(f"Invalid {label}: {value!r}")
    return normalized


def parse_item_changes(data, tz_name="UTC", current=None):
    """
    Turn a JSON body into ScheduleRecord field changes.

    Only keys present in the body are returned. `current` is the record being
    edited, used to anchor a weekly rule that omits its days.
    """
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    changes = {}
    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required")
        changes["title"] = title
    if "description" in data:
        changes["description"] = (str(data.get("description")).strip() or None) if data.get("description") is not None else None
    if "kind" in data:
        changes["kind"] = _normalize_choice(data.get("kind"), KINDS, "kind")
    if "status" in data:
        changes["status"] = _normalize_choice(data.get("status"), STATUSES, "status")

    start = _instant_from_payload(data, "start", tz_name)
    if start is not None or "start" in data:
        changes["start"] = start
    end = _instant_from_payload(data, "end", tz_name)
    if end is not None or "end" in data:
        changes["end"] = end

    if "recurrence_mode" in data and data.get("recurrence_mode"):
        changes["recurrence_mode"] = _normalize_choice(data.get("recurrence_mode"), RECURRENCE_MODES, "recurrence mode")
    if "recurrence" in data:
        anchor = changes.get("start") or (current.start if current else None)
        changes["rule"] = parse_recurrence_payload(data.get("recurrence"), anchor)
    return changes


def parse_new_item(data, owner_id, tz_name="UTC"):
    changes = parse_item_changes(data, tz_name)
    if "title" not in changes:
        raise ValidationError("Title is required")
    changes.setdefault("kind", KIND_EVENT)
    changes.setdefault("start", None)
    if changes.get("rule") is not None:
        changes.setdefault("recurrence_mode", MODE_CLONE)
    record = ScheduleRecord(owner_id=owner_id, **changes)
    return record.check_invariants()
