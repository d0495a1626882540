"""
One bidirectional reconciliation pass between local events and the external calendar.

A pass pulls remote changes since the stored checkpoint, then pushes local edits.
Items are processed independently: a per-item failure is recorded in the result
and the batch carries on. Only fatal problems (no credential, revocation,
cancellation, a failed listing, an unreachable checkpoint store) abort the pass.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from backend.concurrency import CancelToken, UserLocks
from backend.errors import (
    NetworkError,
    PersistenceError,
    ScheduleEngineError,
    ValidationError,
)
from backend.expansion_scheduler import expand_definition
from backend.recurrence_rules import MODE_CLONE, from_rrule
from backend.schedule_records import KIND_EVENT, SOURCE_EXTERNAL, ScheduleRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_LOOKBACK = timedelta(days=30)
WINNER_REMOTE = "remote"
WINNER_LOCAL = "local"

_TICK = timedelta(microseconds=1)


@dataclass
class SyncCheckpointState:
    pulled_through: Optional[datetime] = None
    pushed_through: Optional[datetime] = None


@dataclass
class RemoteItem:
    """External calendar copy of an item, already converted to local conventions."""
    external_id: str
    title: str
    start: Optional[datetime]
    end: Optional[datetime]
    updated_at: datetime
    description: Optional[str] = None
    status: str = "confirmed"
    recurrence: Tuple[str, ...] = ()
    local_ref: Optional[int] = None
    # set on an exception to one instance of a remote series
    recurring_event_id: Optional[str] = None
    original_start: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass
class ConflictRecord:
    external_id: str
    local_id: Optional[int]
    local_updated_at: datetime
    remote_updated_at: datetime
    winner: str

    def to_dict(self):
        return {
            'external_id': self.external_id,
            'local_id': self.local_id,
            'local_updated_at': self.local_updated_at.isoformat(),
            'remote_updated_at': self.remote_updated_at.isoformat(),
            'winner': self.winner,
        }


@dataclass
class SyncFailure:
    phase: str
    kind: str
    message: str
    local_id: Optional[int] = None
    external_id: Optional[str] = None

    def to_dict(self):
        return {
            'phase': self.phase,
            'kind': self.kind,
            'message': self.message,
            'local_id': self.local_id,
            'external_id': self.external_id,
        }


@dataclass
class SyncResult:
    success: bool = False
    imported: int = 0
    pushed: int = 0
    removed: int = 0
    conflicts: List[ConflictRecord] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self):
        return {
            'success': self.success,
            'imported': self.imported,
            'pushed': self.pushed,
            'removed': self.removed,
            'conflicts': [c.to_dict() for c in self.conflicts],
            'failures': [f.to_dict() for f in self.failures],
            'error': self.error,
        }


class SyncReconciler:
    def __init__(
        self,
        item_store,
        checkpoint_store,
        token_manager,
        client_factory,
        user_locks=None,
        initial_lookback=DEFAULT_INITIAL_LOOKBACK,
        clock=utc_now,
        on_series_changed=None,
    ):
        self.item_store = item_store
        self.checkpoint_store = checkpoint_store
        self.token_manager = token_manager
        self.client_factory = client_factory
        self.user_locks = user_locks or UserLocks()
        self.initial_lookback = initial_lookback
        self.clock = clock
        # called with a definition whose start or rule a remote change moved
        self.on_series_changed = on_series_changed

    def sync(self, user_id, cancel: Optional[CancelToken] = None) -> SyncResult:
        cancel = cancel or CancelToken()
        result = SyncResult()
        try:
            cancel.raise_if_cancelled()
            token = self.token_manager.get_valid_token(user_id)
            with self.user_locks.hold(user_id):
                self._run(user_id, token, cancel, result)
            result.success = True
            logger.info(
                "Sync for user %s finished: imported=%s pushed=%s removed=%s conflicts=%s failures=%s",
                user_id, result.imported, result.pushed, result.removed,
                len(result.conflicts), len(result.failures),
            )
        except ScheduleEngineError as exc:
            result.success = False
            result.error = exc.message
            result.error_kind = exc.kind
            logger.warning("Sync for user %s aborted (%s): %s", user_id, exc.kind, exc)
        return result

    def _guard(self, token, cancel):
        cancel.raise_if_cancelled()
        self.token_manager.assert_active(token)

    def _run(self, user_id, token, cancel, result):
        checkpoint = self.checkpoint_store.load(user_id)
        client = self.client_factory(token.value)
        started_at = self.clock()

        pulled_through = self._pull(user_id, client, token, cancel, checkpoint, started_at, result)
        self.checkpoint_store.save_pull(user_id, pulled_through)

        pushed_through = self._push(user_id, client, token, cancel, checkpoint, started_at, result)
        self.checkpoint_store.save_push(user_id, pushed_through)

    # -- pull -----------------------------------------------------------------

    def _pull(self, user_id, client, token, cancel, checkpoint, started_at, result):
        since = checkpoint.pulled_through or (started_at - self.initial_lookback)
        self._guard(token, cancel)
        payloads = client.list_changed_since(since)

        remotes = []
        for payload in payloads:
            try:
                remotes.append(client.parse_item(payload))
            except ValidationError as exc:
                external_id = payload.get('id') if isinstance(payload, dict) else None
                result.failures.append(SyncFailure('pull', exc.kind, exc.message, external_id=external_id))
                logger.warning("Remote item %s could not be read: %s", external_id, exc)
        # a series has to be in place before changes to its single instances
        remotes.sort(key=lambda remote: remote.recurring_event_id is not None)

        mark = started_at
        for remote in remotes:
            self._guard(token, cancel)
            try:
                self._apply_remote(user_id, remote, result)
            except (ValidationError, PersistenceError) as exc:
                result.failures.append(SyncFailure('pull', exc.kind, exc.message, external_id=remote.external_id))
                logger.warning("Pull of remote item %s failed: %s", remote.external_id, exc)
                if isinstance(exc, PersistenceError):
                    # retry this item on the next pass
                    mark = min(mark, remote.updated_at - _TICK)
        return mark

    def _apply_remote(self, user_id, remote: RemoteItem, result: SyncResult):
        store = self.item_store
        local = store.find_by_external_id(user_id, remote.external_id)

        if local is None and remote.recurring_event_id is not None:
            definition = store.find_by_external_id(user_id, remote.recurring_event_id)
            if definition is not None and definition.is_definition:
                self._apply_instance(definition, remote, result)
                return

        if remote.cancelled:
            if local is not None and (local.source == SOURCE_EXTERNAL or local.is_occurrence):
                store.delete(local.id)
                result.removed += 1
            return

        if local is None and remote.local_ref is not None:
            if self._link_by_reference(user_id, remote):
                return

        if local is None:
            store.insert(self._record_from_remote(user_id, remote))
            result.imported += 1
            return

        if local.external_updated_at is not None and remote.updated_at <= local.external_updated_at:
            # our own write coming back, or nothing new
            return

        if local.edited_since_exchange:
            winner = WINNER_REMOTE if remote.updated_at >= local.last_updated_at else WINNER_LOCAL
            result.conflicts.append(ConflictRecord(
                external_id=remote.external_id,
                local_id=local.id,
                local_updated_at=local.last_updated_at,
                remote_updated_at=remote.updated_at,
                winner=winner,
            ))
            if winner == WINNER_LOCAL:
                return

        saved = store.update(self._merge_remote(local, remote), touch=False)
        result.imported += 1
        series_moved = saved.start != local.start or saved.rule != local.rule
        if series_moved and (local.is_definition or saved.is_definition) and self.on_series_changed:
            self.on_series_changed(saved)

    def _apply_instance(self, definition: ScheduleRecord, remote: RemoteItem, result: SyncResult):
        """
        Apply a remote exception to one instance of a series.

        The matching occurrence is found by the instance's original start. A moved
        instance moves the occurrence and links it to the remote copy; a cancelled
        one removes it. Clone-mode series not yet expanded that far are materialized
        up to the original start first.
        """
        store = self.item_store
        occurrence = self._occurrence_at(definition, remote.original_start)
        if occurrence is None and remote.original_start is not None and definition.recurrence_mode == MODE_CLONE:
            expand_definition(store, definition, remote.original_start, horizon=timedelta(0))
            occurrence = self._occurrence_at(definition, remote.original_start)

        if occurrence is None:
            logger.info(
                "No local occurrence of %s at %s for remote instance %s",
                definition.id, remote.original_start, remote.external_id,
            )
            return

        if remote.cancelled:
            store.delete(occurrence.id)
            result.removed += 1
            return

        store.update(occurrence.evolve(
            title=remote.title or occurrence.title,
            description=remote.description,
            start=remote.start,
            end=remote.end,
            external_id=remote.external_id,
            external_updated_at=remote.updated_at,
            last_updated_at=remote.updated_at,
        ), touch=False)
        result.imported += 1

    def _occurrence_at(self, definition: ScheduleRecord, instant: Optional[datetime]):
        if instant is None:
            return None
        return next((o for o in self.item_store.find_occurrences(definition.id) if o.start == instant), None)

    def _link_by_reference(self, user_id, remote: RemoteItem) -> bool:
        """Attach a remote copy created by an earlier push whose local write never landed."""
        local = self.item_store.get(remote.local_ref)
        if local is None or local.owner_id != user_id or local.external_id is not None:
            return False
        self.item_store.update(
            local.evolve(external_id=remote.external_id, external_updated_at=remote.updated_at),
            touch=False,
        )
        logger.info("Linked local item %s to remote item %s", local.id, remote.external_id)
        return True

    def _record_from_remote(self, user_id, remote: RemoteItem) -> ScheduleRecord:
        rule = from_rrule(remote.recurrence, anchor=remote.start) if remote.start else None
        return ScheduleRecord(
            owner_id=user_id,
            kind=KIND_EVENT,
            title=remote.title or "(untitled)",
            description=remote.description,
            start=remote.start,
            end=remote.end,
            rule=rule,
            series_start=remote.start if rule else None,
            source=SOURCE_EXTERNAL,
            external_id=remote.external_id,
            external_updated_at=remote.updated_at,
            last_updated_at=remote.updated_at,
        )

    def _merge_remote(self, local: ScheduleRecord, remote: RemoteItem) -> ScheduleRecord:
        changes = dict(
            title=remote.title or local.title,
            description=remote.description,
            start=remote.start,
            end=remote.end,
            external_updated_at=remote.updated_at,
            last_updated_at=remote.updated_at,
        )
        if local.is_occurrence:
            return local.evolve(**changes)

        if local.source == SOURCE_EXTERNAL:
            changes['rule'] = from_rrule(remote.recurrence, anchor=remote.start) if remote.start else None
        rule = changes.get('rule', local.rule)
        if rule is None:
            changes['series_start'] = None
        elif remote.start != local.start or rule != local.rule or local.series_start is None:
            # the series is re-anchored on the remote start
            changes.update(series_start=remote.start, recurrence_exhausted=False, expanded_through=None)
        return local.evolve(**changes)

    # -- push -----------------------------------------------------------------

    def _push(self, user_id, client, token, cancel, checkpoint, started_at, result):
        mark = started_at
        for record in self.item_store.find_push_candidates(user_id, checkpoint.pushed_through):
            if record.external_id and not record.edited_since_exchange:
                continue
            self._guard(token, cancel)
            try:
                if record.external_id:
                    remote = client.update_item(record.external_id, record)
                else:
                    remote = client.create_item(record)
                remote_updated = remote.updated_at or self.clock()
                self.item_store.update(
                    record.evolve(
                        external_id=record.external_id or remote.external_id,
                        external_updated_at=max(remote_updated, record.last_updated_at),
                    ),
                    touch=False,
                )
                result.pushed += 1
            except (NetworkError, ValidationError, PersistenceError) as exc:
                result.failures.append(SyncFailure(
                    'push', exc.kind, exc.message, local_id=record.id, external_id=record.external_id,
                ))
                logger.warning("Push of item %s failed: %s", record.id, exc)
                if record.external_id:
                    mark = min(mark, record.last_updated_at - _TICK)
        return mark
