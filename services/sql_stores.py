"""
Flask-SQLAlchemy backed stores for items, calendar tokens and sync checkpoints.

This is the boundary where rows are validated and turned into ScheduleRecord
values; nothing past it sees ORM objects. All calls need an application context.
"""
import logging

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from backend.errors import PersistenceError, ValidationError
from backend.recurrence_rules import MODE_CLONE, RecurrenceRule
from backend.schedule_records import KIND_EVENT, SOURCE_LOCAL, ScheduleRecord, utc_now
from backend.sync_reconciler import SyncCheckpointState
from backend.token_manager import StoredToken
from models import CalendarToken, ScheduledItem, SyncCheckpoint, db

logger = logging.getLogger(__name__)


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"Database write failed: {exc}") from exc


def _query(fn):
    try:
        return fn()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"Database read failed: {exc}") from exc


def row_to_record(row) -> ScheduleRecord:
    rule = None
    if row.is_recurring and row.parent_id is None:
        rule = RecurrenceRule.build(
            row.recurrence_pattern,
            days=row.recurrence_days,
            end_date=row.recurrence_end_date,
            count=row.recurrence_count,
            anchor=row.series_start or row.start_at,
        )
    record = ScheduleRecord(
        id=row.id,
        owner_id=row.user_id,
        kind=row.kind or KIND_EVENT,
        title=row.title,
        description=row.description,
        status=row.status or 'todo',
        start=row.start_at,
        end=row.end_at,
        rule=rule,
        recurrence_mode=row.recurrence_mode or MODE_CLONE,
        series_start=row.series_start,
        recurrence_exhausted=bool(row.recurrence_exhausted),
        expanded_through=row.expanded_through,
        parent_id=row.parent_id,
        source=row.source or SOURCE_LOCAL,
        external_id=row.external_id,
        external_updated_at=row.external_updated_at,
        last_updated_at=row.last_updated_at or row.created_at or utc_now(),
    )
    return record.check_invariants()


def _apply_record(row, record: ScheduleRecord):
    row.user_id = record.owner_id
    row.kind = record.kind
    row.title = record.title
    row.description = record.description
    row.status = record.status
    row.start_at = record.start
    row.end_at = record.end
    row.parent_id = record.parent_id
    row.source = record.source
    row.external_id = record.external_id
    row.external_updated_at = record.external_updated_at
    rule = record.rule
    row.is_recurring = rule is not None
    row.recurrence_pattern = rule.pattern if rule else None
    row.recurrence_days = rule.days_csv if rule else None
    row.recurrence_end_date = rule.end_date if rule else None
    row.recurrence_count = rule.count if rule else None
    row.recurrence_mode = record.recurrence_mode if rule else None
    row.series_start = (record.series_start or record.start) if rule else None
    row.recurrence_exhausted = bool(record.recurrence_exhausted) if rule else False
    row.expanded_through = record.expanded_through if rule else None


class SqlItemStore:
    """Persistence capability over the scheduled_item table."""

    def _rows(self, query):
        records = []
        for row in _query(query.all):
            try:
                records.append(row_to_record(row))
            except ValidationError as exc:
                logger.warning("Skipping unreadable item row %s: %s", row.id, exc)
        return records

    def get(self, item_id):
        row = _query(lambda: db.session.get(ScheduledItem, item_id))
        return row_to_record(row) if row else None

    def find_by_owner(self, owner_id, kind=None, source=None):
        query = ScheduledItem.query.filter(ScheduledItem.user_id == owner_id)
        if kind:
            query = query.filter(ScheduledItem.kind == kind)
        if source:
            query = query.filter(ScheduledItem.source == source)
        return self._rows(query.order_by(ScheduledItem.start_at.asc(), ScheduledItem.id.asc()))

    def find_by_external_id(self, owner_id, external_id):
        row = _query(ScheduledItem.query.filter_by(user_id=owner_id, external_id=external_id).first)
        return row_to_record(row) if row else None

    def find_definitions(self, owner_id, active_only=True):
        query = ScheduledItem.query.filter(
            ScheduledItem.user_id == owner_id,
            ScheduledItem.is_recurring.is_(True),
            ScheduledItem.parent_id.is_(None),
        )
        if active_only:
            query = query.filter(or_(
                ScheduledItem.recurrence_exhausted.is_(False),
                ScheduledItem.recurrence_exhausted.is_(None),
            ))
        return self._rows(query.order_by(ScheduledItem.id.asc()))

    def find_occurrences(self, parent_id):
        query = ScheduledItem.query.filter(ScheduledItem.parent_id == parent_id)
        return self._rows(query.order_by(ScheduledItem.start_at.asc()))

    def find_push_candidates(self, owner_id, since=None):
        """Local top-level events never pushed, or edited after `since`."""
        query = ScheduledItem.query.filter(
            ScheduledItem.user_id == owner_id,
            ScheduledItem.source == SOURCE_LOCAL,
            ScheduledItem.kind == KIND_EVENT,
            ScheduledItem.parent_id.is_(None),
        )
        if since is not None:
            query = query.filter(or_(
                ScheduledItem.external_id.is_(None),
                ScheduledItem.last_updated_at > since,
            ))
        return self._rows(query.order_by(ScheduledItem.id.asc()))

    def owner_ids_with_definitions(self):
        rows = _query(db.session.query(ScheduledItem.user_id).filter(
            ScheduledItem.is_recurring.is_(True),
            ScheduledItem.parent_id.is_(None),
            or_(ScheduledItem.recurrence_exhausted.is_(False), ScheduledItem.recurrence_exhausted.is_(None)),
        ).distinct().all)
        return sorted(r[0] for r in rows)

    def insert(self, record: ScheduleRecord) -> ScheduleRecord:
        record.check_invariants()
        row = ScheduledItem()
        _apply_record(row, record)
        row.last_updated_at = record.last_updated_at or utc_now()
        db.session.add(row)
        _commit()
        return row_to_record(row)

    def update(self, record: ScheduleRecord, touch=True) -> ScheduleRecord:
        """
        Write `record` over its row. `touch` stamps last_updated_at with the current
        time; sync bookkeeping writes pass touch=False so they don't look like edits.
        """
        record.check_invariants()
        row = _query(lambda: db.session.get(ScheduledItem, record.id))
        if row is None:
            raise PersistenceError(f"Item {record.id} no longer exists")
        if row.external_id and record.external_id != row.external_id:
            raise ValidationError(f"external_id of item {record.id} cannot change once assigned", item_ref=record.id)
        _apply_record(row, record)
        row.last_updated_at = utc_now() if touch else record.last_updated_at
        _commit()
        return row_to_record(row)

    def delete(self, item_id) -> bool:
        row = _query(lambda: db.session.get(ScheduledItem, item_id))
        if row is None:
            return False
        db.session.delete(row)
        _commit()
        return True


class SqlTokenStore:
    """Calendar credentials, one row per user."""

    def get(self, user_id):
        row = _query(CalendarToken.query.filter_by(user_id=user_id).first)
        if not row:
            return None
        return StoredToken(
            user_id=row.user_id,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.expires_at,
            email=row.email,
        )

    def save(self, token: StoredToken):
        row = _query(CalendarToken.query.filter_by(user_id=token.user_id).first)
        if row is None:
            row = CalendarToken(user_id=token.user_id)
            db.session.add(row)
        row.access_token = token.access_token
        if token.refresh_token:
            row.refresh_token = token.refresh_token
        row.expires_at = token.expires_at
        if token.email:
            row.email = token.email
        _commit()
        return token

    def delete(self, user_id) -> bool:
        row = _query(CalendarToken.query.filter_by(user_id=user_id).first)
        if row is None:
            return False
        db.session.delete(row)
        _commit()
        return True


class SqlCheckpointStore:
    """Per-user pull/push watermarks."""

    def load(self, user_id) -> SyncCheckpointState:
        row = _query(SyncCheckpoint.query.filter_by(user_id=user_id).first)
        if not row:
            return SyncCheckpointState()
        return SyncCheckpointState(pulled_through=row.pulled_through, pushed_through=row.pushed_through)

    def _row(self, user_id):
        row = _query(SyncCheckpoint.query.filter_by(user_id=user_id).first)
        if row is None:
            row = SyncCheckpoint(user_id=user_id)
            db.session.add(row)
        return row

    def save_pull(self, user_id, pulled_through):
        self._row(user_id).pulled_through = pulled_through
        _commit()

    def save_push(self, user_id, pushed_through):
        self._row(user_id).pushed_through = pushed_through
        _commit()

    def clear(self, user_id):
        row = _query(SyncCheckpoint.query.filter_by(user_id=user_id).first)
        if row is not None:
            db.session.delete(row)
            _commit()
