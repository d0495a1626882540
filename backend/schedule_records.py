"""Closed record shape for schedulable items (tasks and events)."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

import pytz

from backend.errors import ValidationError
from backend.recurrence_rules import MODE_CLONE, RECURRENCE_MODES, RecurrenceRule

KIND_TASK = "task"
KIND_EVENT = "event"
KINDS = (KIND_TASK, KIND_EVENT)

SOURCE_LOCAL = "local"
SOURCE_EXTERNAL = "external"
SOURCES = (SOURCE_LOCAL, SOURCE_EXTERNAL)

STATUS_TODO = "todo"
STATUSES = (STATUS_TODO, "in_progress", "done")


def utc_now() -> datetime:
    """Naive UTC timestamp, the format every edit/sync timestamp is stored in."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def local_now(tz_name="UTC") -> datetime:
    """Naive wall-clock time in the configured zone, the format schedule instants use."""
    return datetime.now(pytz.timezone(tz_name)).replace(tzinfo=None)


@dataclass
class ScheduleRecord:
    owner_id: int
    title: str
    start: Optional[datetime]
    kind: str = KIND_EVENT
    end: Optional[datetime] = None
    description: Optional[str] = None
    status: str = STATUS_TODO
    rule: Optional[RecurrenceRule] = None
    recurrence_mode: str = MODE_CLONE
    series_start: Optional[datetime] = None
    recurrence_exhausted: bool = False
    expanded_through: Optional[datetime] = None
    parent_id: Optional[int] = None
    source: str = SOURCE_LOCAL
    external_id: Optional[str] = None
    external_updated_at: Optional[datetime] = None
    last_updated_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None

    @property
    def is_recurring(self) -> bool:
        return self.rule is not None

    @property
    def is_definition(self) -> bool:
        return self.is_recurring and self.parent_id is None

    @property
    def is_occurrence(self) -> bool:
        return self.parent_id is not None

    @property
    def anchor(self) -> Optional[datetime]:
        return self.series_start or self.start

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start

    @property
    def edited_since_exchange(self) -> bool:
        """True when the user changed the item after it was last pushed or pulled."""
        if self.external_updated_at is None:
            return True
        return self.last_updated_at > self.external_updated_at

    def evolve(self, **changes) -> "ScheduleRecord":
        return replace(self, **changes)

    def check_invariants(self):
        """Raise ValidationError when the record breaks the item shape rules."""
        if self.kind not in KINDS:
            raise ValidationError(f"Unknown item kind: {self.kind!r}", item_ref=self.id)
        if self.source not in SOURCES:
            raise ValidationError(f"Unknown item source: {self.source!r}", item_ref=self.id)
        if self.status not in STATUSES:
            raise ValidationError(f"Unknown item status: {self.status!r}", item_ref=self.id)
        if not (self.title or "").strip():
            raise ValidationError("Title is required", item_ref=self.id)
        if self.start and self.end and self.end < self.start:
            raise ValidationError("End must not be before start", item_ref=self.id)
        if self.is_recurring:
            if self.parent_id is not None:
                raise ValidationError("A generated occurrence cannot carry its own rule", item_ref=self.id)
            if self.start is None:
                raise ValidationError("A recurring item needs a start", item_ref=self.id)
            if self.recurrence_mode not in RECURRENCE_MODES:
                raise ValidationError(f"Unknown recurrence mode: {self.recurrence_mode!r}", item_ref=self.id)
        return self

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "is_recurring": self.is_recurring,
            "recurrence": self.rule.to_dict() if self.rule else None,
            "recurrence_mode": self.recurrence_mode if self.is_recurring else None,
            "series_start": self.series_start.isoformat() if self.series_start else None,
            "recurrence_exhausted": self.recurrence_exhausted,
            "expanded_through": self.expanded_through.isoformat() if self.expanded_through else None,
            "parent_id": self.parent_id,
            "source": self.source,
            "external_id": self.external_id,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
        }
