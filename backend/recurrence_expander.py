"""
Recurrence expansion: turn a recurring definition into concrete occurrences.

Every function here is a pure computation over its arguments. Callers load the
definition and its already-materialized occurrence instants, call `expand`, and
persist whatever comes back; running it again with the same `as_of` and the
persisted result yields nothing new.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from backend.errors import ValidationError
from backend.recurrence_rules import (
    MODE_CLONE,
    MODE_REFRESH,
    PATTERN_DAILY,
    PATTERN_MONTHLY,
    PATTERN_WEEKLY,
    PATTERN_YEARLY,
    RecurrenceRule,
    build_rrule,
)
from backend.schedule_records import STATUS_TODO, ScheduleRecord

DEFAULT_HORIZON = timedelta(days=30)

# Fields a clone-mode definition hands down to its generated occurrences.
INHERITED_FIELDS = ("title", "description", "kind")


@dataclass
class ExpansionResult:
    occurrences_to_create: List[ScheduleRecord] = field(default_factory=list)
    occurrence_to_refresh: Optional[ScheduleRecord] = None
    exhausted: bool = False
    expanded_through: Optional[datetime] = None

    @property
    def is_noop(self) -> bool:
        return not self.occurrences_to_create and self.occurrence_to_refresh is None


def iter_series(rule: RecurrenceRule, anchor: datetime) -> Iterator[Tuple[int, datetime]]:
    """
    Yield (index, instant) pairs for the whole series, index 0 being the anchor.

    Daily and weekly instants come from a dateutil rrule. Monthly and yearly steps
    are offset from the anchor with relativedelta, so a series anchored on the 31st
    lands on Feb 28/29 and returns to the 31st in March. The generator is
    unbounded; termination is the caller's job.
    """
    yield 0, anchor
    if rule.pattern in (PATTERN_DAILY, PATTERN_WEEKLY):
        stepping = build_rrule(rule.pattern, anchor, rule.weekday_indices)
        later = (instant for instant in stepping if instant > anchor)
        for index, instant in enumerate(later, start=1):
            yield index, instant
        return
    if rule.pattern not in (PATTERN_MONTHLY, PATTERN_YEARLY):
        raise ValidationError(f"Unknown recurrence pattern: {rule.pattern!r}")
    index = 0
    while True:
        index += 1
        if rule.pattern == PATTERN_MONTHLY:
            yield index, anchor + relativedelta(months=index)
        else:
            yield index, anchor + relativedelta(years=index)


def within_termination(rule: RecurrenceRule, index: int, instant: datetime) -> bool:
    # count excludes the anchor itself
    if rule.count is not None and index > rule.count:
        return False
    if rule.end_date is not None and instant.date() > rule.end_date:
        return False
    return True


def next_occurrence(rule: RecurrenceRule, anchor: datetime, after: datetime) -> Optional[datetime]:
    """First series instant strictly after `after`, or None once the rule has terminated."""
    for index, instant in iter_series(rule, anchor):
        if not within_termination(rule, index, instant):
            return None
        if instant > after:
            return instant
    return None


def build_occurrence(definition: ScheduleRecord, instant: datetime) -> ScheduleRecord:
    duration = definition.duration
    return ScheduleRecord(
        owner_id=definition.owner_id,
        title=definition.title,
        description=definition.description,
        kind=definition.kind,
        start=instant,
        end=instant + duration if duration is not None else None,
        status=STATUS_TODO,
        parent_id=definition.id,
        source=definition.source,
        last_updated_at=definition.last_updated_at,
    )


def _expand_clone(definition, as_of, existing_starts, horizon):
    rule = definition.rule
    anchor = definition.anchor
    existing = set(existing_starts)
    known = existing | {anchor}
    if definition.expanded_through is not None:
        # instants up to the high-water mark were generated once; a missing one was removed
        known.add(definition.expanded_through)
    last_known = max(known)
    limit = as_of + horizon

    created = []
    exhausted = True
    for index, instant in iter_series(rule, anchor):
        if not within_termination(rule, index, instant):
            break
        if instant <= last_known:
            continue
        if instant > limit:
            exhausted = False
            break
        if instant in existing:
            continue
        created.append(build_occurrence(definition, instant))
    through = created[-1].start if created else None
    return ExpansionResult(occurrences_to_create=created, exhausted=exhausted, expanded_through=through)


def _expand_refresh(definition, as_of):
    rule = definition.rule
    current = definition.start
    target = None
    exhausted = True
    for index, instant in iter_series(rule, definition.anchor):
        if not within_termination(rule, index, instant):
            break
        if instant <= current:
            continue
        if instant > as_of:
            exhausted = False
            break
        target = instant

    if target is None:
        return ExpansionResult(exhausted=exhausted)
    duration = definition.duration
    refreshed = definition.evolve(
        start=target,
        end=target + duration if duration is not None else None,
        status=STATUS_TODO,
        series_start=definition.anchor,
    )
    return ExpansionResult(occurrence_to_refresh=refreshed, exhausted=exhausted)


def expand(
    definition: ScheduleRecord,
    as_of: datetime,
    existing_starts: Iterable[datetime] = (),
    horizon: timedelta = DEFAULT_HORIZON,
) -> ExpansionResult:
    """
    Compute what should exist for `definition` as of `as_of`.

    Clone mode returns new occurrence records for every series instant after the
    last materialized one, up to `as_of + horizon`. Refresh mode returns the
    definition itself moved to the latest series instant at or before `as_of`.
    `exhausted` is set once the termination condition leaves nothing further to
    generate.
    """
    if not definition.is_definition:
        raise ValidationError("Only recurring definitions can be expanded", item_ref=definition.id)
    if definition.start is None:
        raise ValidationError("A recurring definition needs a start", item_ref=definition.id)
    if definition.recurrence_exhausted:
        return ExpansionResult(exhausted=True)
    if definition.recurrence_mode == MODE_REFRESH:
        return _expand_refresh(definition, as_of)
    if definition.recurrence_mode == MODE_CLONE:
        return _expand_clone(definition, as_of, existing_starts, horizon)
    raise ValidationError(f"Unknown recurrence mode: {definition.recurrence_mode!r}", item_ref=definition.id)


def propagate_definition_edit(definition: ScheduleRecord, occurrences: Iterable[ScheduleRecord]) -> List[ScheduleRecord]:
    """
    Carry an edited clone-mode definition's shared fields down to its occurrences.

    Recurrence fields are never copied; only records that actually change are
    returned.
    """
    duration = definition.duration
    changed = []
    for occurrence in occurrences:
        updates = {
            name: getattr(definition, name)
            for name in INHERITED_FIELDS
            if getattr(occurrence, name) != getattr(definition, name)
        }
        if duration is not None and occurrence.start is not None:
            new_end = occurrence.start + duration
            if occurrence.end != new_end:
                updates["end"] = new_end
        if updates:
            changed.append(occurrence.evolve(**updates))
    return changed


def stale_occurrences(
    definition: ScheduleRecord,
    occurrences: Iterable[ScheduleRecord],
    as_of: datetime,
) -> List[ScheduleRecord]:
    """
    Not-yet-due occurrences that no longer land on `definition`'s series.

    Used after a series is re-timed or its rule changes. Occurrences at or before
    `as_of` are history and are never returned.
    """
    pending = [o for o in occurrences if o.start is not None and o.start > as_of]
    if not pending:
        return []
    if not definition.is_definition or definition.recurrence_mode != MODE_CLONE:
        return pending

    latest = max(o.start for o in pending)
    on_series = set()
    for index, instant in iter_series(definition.rule, definition.anchor):
        if instant > latest or not within_termination(definition.rule, index, instant):
            break
        on_series.add(instant)
    return [o for o in pending if o.start not in on_series]
