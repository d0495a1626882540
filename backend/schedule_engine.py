"""
The engine surface the web app and background jobs talk to.

Wires the expander, sweep scheduler, token manager and sync reconciler to one
set of stores and the per-user locks they share.
"""
import logging
from datetime import timedelta

from backend.concurrency import SingleFlight, UserLocks
from backend.errors import ScheduleEngineError, SyncCancelled, ValidationError
from backend.expansion_scheduler import (
    DEFAULT_INTERVAL_MINUTES,
    ExpansionScheduler,
    SweepReport,
    expand_definition,
    run_expansion_sweep,
)
from backend.recurrence_expander import (
    DEFAULT_HORIZON,
    next_occurrence,
    propagate_definition_edit,
    stale_occurrences,
)
from backend.recurrence_rules import MODE_CLONE
from backend.schedule_records import SOURCE_LOCAL, local_now, utc_now
from backend.sync_reconciler import DEFAULT_INITIAL_LOOKBACK, SyncReconciler, SyncResult
from backend.token_manager import DEFAULT_REFRESH_MARGIN, TokenManager

logger = logging.getLogger(__name__)

# Editing any of these re-anchors a recurring series.
SERIES_FIELDS = ('start', 'rule', 'recurrence_mode')


class ScheduleEngine:
    def __init__(
        self,
        item_store,
        token_store,
        checkpoint_store,
        client_factory,
        oauth_client=None,
        horizon=DEFAULT_HORIZON,
        initial_lookback=DEFAULT_INITIAL_LOOKBACK,
        refresh_margin=DEFAULT_REFRESH_MARGIN,
        timezone='UTC',
        app=None,
        clock=utc_now,
        local_clock=None,
    ):
        self.item_store = item_store
        self.checkpoint_store = checkpoint_store
        self.client_factory = client_factory
        self.horizon = horizon
        self.timezone = timezone
        self.app = app
        self.local_clock = local_clock or (lambda: local_now(self.timezone))
        self.user_locks = UserLocks()
        self.token_manager = TokenManager(token_store, oauth_client, refresh_margin=refresh_margin, clock=clock)
        self.reconciler = SyncReconciler(
            item_store,
            checkpoint_store,
            self.token_manager,
            client_factory,
            user_locks=self.user_locks,
            initial_lookback=initial_lookback,
            clock=clock,
            on_series_changed=self._realign_series,
        )
        self._sync_flight = SingleFlight()
        self._scheduler = None

    # -- expansion ------------------------------------------------------------

    def run_expansion_sweep(self, as_of=None, owner_ids=None) -> SweepReport:
        as_of = as_of or self.local_clock()
        return run_expansion_sweep(
            self.item_store,
            as_of,
            horizon=self.horizon,
            user_locks=self.user_locks,
            owner_ids=owner_ids,
        )

    def trigger_expansion(self, interval_minutes=DEFAULT_INTERVAL_MINUTES) -> ExpansionScheduler:
        """Start (or return the already running) periodic expansion job."""
        if self._scheduler is not None and self._scheduler.running:
            return self._scheduler
        self._scheduler = ExpansionScheduler(self.run_expansion_sweep, interval_minutes, app=self.app)
        return self._scheduler.start()

    def stop_expansion(self):
        if self._scheduler is not None:
            self._scheduler.stop()

    # -- sync -----------------------------------------------------------------

    def request_sync(self, user_id, cancel=None) -> SyncResult:
        """
        Run a sync pass, or wait for the one already running for this user and share its result.

        A caller that joined a running pass and cancels its own token stops waiting
        and gets a cancelled result; the pass itself carries on for the others.
        """
        try:
            result, shared = self._sync_flight.do(
                user_id, lambda: self.reconciler.sync(user_id, cancel), cancel=cancel,
            )
        except SyncCancelled as exc:
            logger.info("Sync request for user %s stopped waiting: %s", user_id, exc)
            return SyncResult(success=False, error=exc.message, error_kind=exc.kind)
        if shared:
            logger.info("Sync request for user %s joined the pass already in flight", user_id)
        return result

    def sync_in_progress(self, user_id) -> bool:
        return self._sync_flight.in_flight(user_id)

    def disconnect(self, user_id) -> bool:
        revoked = self.token_manager.revoke(user_id)
        self.checkpoint_store.clear(user_id)
        return revoked

    # -- items ----------------------------------------------------------------

    def list_items(self, user_id, kind=None, source=None):
        return self.item_store.find_by_owner(user_id, kind=kind, source=source)

    def get_item(self, user_id, item_id):
        record = self.item_store.get(item_id)
        if record is None or record.owner_id != user_id:
            return None
        return record

    def create_item(self, record):
        if record.parent_id is not None:
            raise ValidationError("Occurrences are generated, not created directly")
        if record.is_recurring:
            record = record.evolve(series_start=record.start, recurrence_exhausted=False)
        with self.user_locks.hold(record.owner_id):
            saved = self.item_store.insert(record)
            if saved.is_definition:
                self._expand_now(saved)
        return saved

    def update_item(self, user_id, item_id, changes):
        """Apply field changes to an item. Clone-mode definitions pass shared fields to their occurrences."""
        with self.user_locks.hold(user_id):
            record = self.get_item(user_id, item_id)
            if record is None:
                return None
            if 'external_id' in changes and changes['external_id'] != record.external_id:
                raise ValidationError("external_id cannot be changed", item_ref=item_id)
            updated = record.evolve(**changes)
            series_changed = any(
                name in changes and changes[name] != getattr(record, name) for name in SERIES_FIELDS
            )
            if updated.is_recurring and series_changed:
                updated = updated.evolve(
                    series_start=updated.start, recurrence_exhausted=False, expanded_through=None,
                )
            saved = self.item_store.update(updated, touch=True)

            if saved.is_definition and saved.recurrence_mode == MODE_CLONE:
                for occurrence in propagate_definition_edit(saved, self.item_store.find_occurrences(saved.id)):
                    self.item_store.update(occurrence, touch=True)
            if series_changed and (record.is_definition or saved.is_definition):
                self._realign_series(saved)
            elif saved.is_definition and saved.recurrence_mode == MODE_CLONE:
                self._expand_now(saved)
            return saved

    def delete_item(self, user_id, item_id) -> bool:
        """
        Delete an item and, for a definition, every occurrence it generated.

        A synced local event is removed from the external calendar first; a remote
        failure is logged and does not block the local delete.
        """
        with self.user_locks.hold(user_id):
            record = self.get_item(user_id, item_id)
            if record is None:
                return False
            if record.external_id and record.source == SOURCE_LOCAL:
                self._delete_remote(user_id, record)
            for occurrence in self.item_store.find_occurrences(record.id):
                self.item_store.delete(occurrence.id)
            return self.item_store.delete(record.id)

    def next_due(self, record, after=None):
        if not record.is_definition or record.start is None:
            return None
        return next_occurrence(record.rule, record.anchor, after or self.local_clock())

    def _realign_series(self, definition):
        """Drop pending occurrences that no longer land on a re-timed series, then expand it again."""
        with self.user_locks.hold(definition.owner_id):
            occurrences = self.item_store.find_occurrences(definition.id)
            for occurrence in stale_occurrences(definition, occurrences, self.local_clock()):
                self.item_store.delete(occurrence.id)
            if definition.is_definition:
                self._expand_now(definition)

    def _expand_now(self, definition):
        try:
            expand_definition(self.item_store, definition, self.local_clock(), self.horizon)
        except ScheduleEngineError as exc:
            # the next sweep retries
            logger.warning("Immediate expansion of recurring item %s failed: %s", definition.id, exc)

    def _delete_remote(self, user_id, record):
        try:
            token = self.token_manager.get_valid_token(user_id)
            client = self.client_factory(token.value)
            client.delete_item(record.external_id)
        except ScheduleEngineError as exc:
            logger.warning("Could not delete remote copy %s of item %s: %s", record.external_id, record.id, exc)


def engine_from_config(config, item_store, token_store, checkpoint_store, client_factory, oauth_client=None, app=None):
    """Build an engine from a Flask-style config mapping."""
    return ScheduleEngine(
        item_store,
        token_store,
        checkpoint_store,
        client_factory,
        oauth_client=oauth_client,
        horizon=timedelta(days=int(config.get('RECURRENCE_HORIZON_DAYS') or DEFAULT_HORIZON.days)),
        initial_lookback=timedelta(days=int(config.get('SYNC_INITIAL_LOOKBACK_DAYS') or DEFAULT_INITIAL_LOOKBACK.days)),
        refresh_margin=timedelta(seconds=int(
            config.get('TOKEN_REFRESH_MARGIN_SECONDS') or DEFAULT_REFRESH_MARGIN.total_seconds()
        )),
        timezone=config.get('DEFAULT_TIMEZONE') or 'UTC',
        app=app,
    )
