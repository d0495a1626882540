"""
Periodic recurrence expansion.

`run_expansion_sweep` walks every owner with active definitions and persists what
the expander returns. `ExpansionScheduler` drives the sweep from an APScheduler
background job, at most one sweep at a time.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import pytz
from apscheduler.schedulers.background import BackgroundScheduler

from backend.concurrency import UserLocks
from backend.errors import ScheduleEngineError
from backend.recurrence_expander import DEFAULT_HORIZON, expand

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 60
JOB_ID = 'recurrence-expansion'


@dataclass
class SweepFailure:
    definition_id: Optional[int]
    kind: str
    message: str
    owner_id: Optional[int] = None

    def to_dict(self):
        return {
            'definition_id': self.definition_id,
            'owner_id': self.owner_id,
            'kind': self.kind,
            'message': self.message,
        }


@dataclass
class SweepReport:
    definitions: int = 0
    created: int = 0
    refreshed: int = 0
    exhausted: int = 0
    failures: List[SweepFailure] = field(default_factory=list)

    def to_dict(self):
        return {
            'definitions': self.definitions,
            'created': self.created,
            'refreshed': self.refreshed,
            'exhausted': self.exhausted,
            'failures': [f.to_dict() for f in self.failures],
        }


def expand_definition(item_store, definition, as_of, horizon=DEFAULT_HORIZON, report=None):
    """Expand one definition and persist the outcome. Returns the report it updated."""
    report = report or SweepReport()
    existing = [o.start for o in item_store.find_occurrences(definition.id)]
    result = expand(definition, as_of, existing_starts=existing, horizon=horizon)

    for occurrence in result.occurrences_to_create:
        item_store.insert(occurrence)
        report.created += 1

    current = definition
    if result.occurrence_to_refresh is not None:
        current = item_store.update(result.occurrence_to_refresh, touch=True)
        report.refreshed += 1

    bookkeeping = {}
    if result.expanded_through is not None and (
        current.expanded_through is None or result.expanded_through > current.expanded_through
    ):
        bookkeeping['expanded_through'] = result.expanded_through
    if result.exhausted and not definition.recurrence_exhausted:
        bookkeeping['recurrence_exhausted'] = True
    if bookkeeping:
        item_store.update(current.evolve(**bookkeeping), touch=False)
    if bookkeeping.get('recurrence_exhausted'):
        report.exhausted += 1
        logger.info("Recurring item %s has no further occurrences", definition.id)
    return report


def run_expansion_sweep(item_store, as_of, horizon=DEFAULT_HORIZON, user_locks=None, owner_ids=None) -> SweepReport:
    """Expand every active definition, one owner at a time, recording failures per definition or per owner."""
    user_locks = user_locks or UserLocks()
    report = SweepReport()
    if owner_ids is None:
        owner_ids = item_store.owner_ids_with_definitions()

    for owner_id in owner_ids:
        with user_locks.hold(owner_id):
            try:
                definitions = item_store.find_definitions(owner_id)
            except ScheduleEngineError as exc:
                report.failures.append(SweepFailure(None, exc.kind, exc.message, owner_id=owner_id))
                logger.warning("Could not load recurring items for user %s: %s", owner_id, exc)
                continue
            for definition in definitions:
                report.definitions += 1
                try:
                    expand_definition(item_store, definition, as_of, horizon, report)
                except ScheduleEngineError as exc:
                    report.failures.append(SweepFailure(definition.id, exc.kind, exc.message, owner_id=owner_id))
                    logger.warning("Expansion of recurring item %s failed: %s", definition.id, exc)

    logger.info(
        "Expansion sweep as of %s: definitions=%s created=%s refreshed=%s exhausted=%s failures=%s",
        as_of, report.definitions, report.created, report.refreshed, report.exhausted, len(report.failures),
    )
    return report


class ExpansionScheduler:
    """
    Runs `sweep` on a fixed interval in a background thread.

    The first tick fires as soon as the scheduler starts. A tick that arrives
    while the previous sweep is still running is skipped rather than queued.
    When `app` is given every tick runs inside its application context.
    """

    def __init__(self, sweep, interval_minutes=DEFAULT_INTERVAL_MINUTES, app=None):
        if interval_minutes is None or interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self.sweep = sweep
        self.interval_minutes = interval_minutes
        self.app = app
        self.last_report = None
        self._sweep_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._scheduler = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running and not self._stopped

    def start(self):
        with self._state_lock:
            if self._stopped:
                raise RuntimeError("A stopped expansion scheduler cannot be restarted")
            if self._scheduler is not None:
                return self
            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(
                self.run_once,
                'interval',
                minutes=self.interval_minutes,
                id=JOB_ID,
                next_run_time=datetime.now(pytz.UTC),
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()
        logger.info("Recurrence expansion scheduled every %s minutes", self.interval_minutes)
        return self

    def run_once(self):
        """Run one sweep now. Returns its report, or None when a sweep is already running."""
        if self._stopped:
            return None
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Skipping expansion tick: previous sweep still running")
            return None
        try:
            if self.app is not None:
                with self.app.app_context():
                    report = self.sweep()
            else:
                report = self.sweep()
            self.last_report = report
            return report
        except Exception:
            # a crashed tick must not kill the job
            logger.exception("Recurrence expansion sweep failed")
            return None
        finally:
            self._sweep_lock.release()

    def stop(self):
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
            scheduler = self._scheduler
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        logger.info("Recurrence expansion stopped")

