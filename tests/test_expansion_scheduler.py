import threading
from datetime import datetime, timedelta

import pytest

from backend.errors import PersistenceError
from backend.expansion_scheduler import ExpansionScheduler, SweepReport, run_expansion_sweep
from backend.recurrence_rules import MODE_REFRESH, RecurrenceRule
from backend.schedule_records import ScheduleRecord


def _definition(item_store, owner_id=1, pattern="daily", start=datetime(2025, 1, 1, 9, 0), **fields):
    return item_store.insert(ScheduleRecord(
        owner_id=owner_id,
        title=fields.pop("title", "Recurring"),
        start=start,
        rule=RecurrenceRule.build(pattern, count=fields.pop("count", None), anchor=start),
        series_start=start,
        **fields,
    ))


def test_sweep_creates_occurrences_and_is_idempotent(item_store):
    definition = _definition(item_store)
    as_of = datetime(2025, 1, 1, 9, 0)

    first = run_expansion_sweep(item_store, as_of, horizon=timedelta(days=7))
    second = run_expansion_sweep(item_store, as_of, horizon=timedelta(days=7))

    assert (first.definitions, first.created) == (1, 7)
    assert second.created == 0
    assert len(item_store.find_occurrences(definition.id)) == 7


def test_sweep_marks_exhausted_definitions_and_skips_them(item_store):
    definition = _definition(item_store, count=3)

    report = run_expansion_sweep(item_store, datetime(2025, 1, 1, 9, 0))

    assert report.created == 3
    assert report.exhausted == 1
    assert item_store.get(definition.id).recurrence_exhausted is True
    assert run_expansion_sweep(item_store, datetime(2025, 3, 1)).definitions == 0


def test_sweep_refreshes_refresh_mode_definitions(item_store, clock):
    definition = _definition(item_store, recurrence_mode=MODE_REFRESH, status="done")

    report = run_expansion_sweep(item_store, datetime(2025, 1, 5, 12, 0))

    refreshed = item_store.get(definition.id)
    assert report.refreshed == 1
    assert refreshed.start == datetime(2025, 1, 5, 9, 0)
    assert refreshed.status == "todo"
    assert refreshed.last_updated_at == clock()
    assert item_store.find_occurrences(definition.id) == []


def test_one_failing_definition_does_not_stop_the_sweep(item_store):
    broken = _definition(item_store, owner_id=1, title="Broken")
    healthy = _definition(item_store, owner_id=2, title="Healthy")
    item_store.fail_inserts_for_parent.add(broken.id)

    report = run_expansion_sweep(item_store, datetime(2025, 1, 1, 9, 0), horizon=timedelta(days=2))

    assert report.definitions == 2
    assert [f.definition_id for f in report.failures] == [broken.id]
    assert report.failures[0].kind == "persistence"
    assert len(item_store.find_occurrences(healthy.id)) == 2


def test_owner_whose_items_cannot_be_loaded_is_reported(item_store, monkeypatch):
    _definition(item_store, owner_id=1, title="Unreadable")
    healthy = _definition(item_store, owner_id=2, title="Healthy")
    load = item_store.find_definitions

    def find_definitions(owner_id, active_only=True):
        if owner_id == 1:
            raise PersistenceError("Database read failed: malformed row")
        return load(owner_id, active_only)

    monkeypatch.setattr(item_store, "find_definitions", find_definitions)

    report = run_expansion_sweep(item_store, datetime(2025, 1, 1, 9, 0), horizon=timedelta(days=2))

    assert report.definitions == 1
    assert [(f.owner_id, f.definition_id, f.kind) for f in report.failures] == [(1, None, "persistence")]
    assert report.to_dict()["failures"][0]["owner_id"] == 1
    assert len(item_store.find_occurrences(healthy.id)) == 2


def test_removed_occurrence_is_not_regenerated(item_store):
    definition = _definition(item_store)
    run_expansion_sweep(item_store, datetime(2025, 1, 1, 9, 0), horizon=timedelta(days=3))
    latest = item_store.find_occurrences(definition.id)[-1]
    item_store.delete(latest.id)

    report = run_expansion_sweep(item_store, datetime(2025, 1, 2, 9, 0), horizon=timedelta(days=3))

    assert report.created == 1
    assert latest.start not in [o.start for o in item_store.find_occurrences(definition.id)]
    assert item_store.get(definition.id).expanded_through == datetime(2025, 1, 5, 9, 0)


def test_overlapping_tick_is_skipped():
    release = threading.Event()
    entered = threading.Event()

    def slow_sweep():
        entered.set()
        release.wait(timeout=5)
        return SweepReport(created=1)

    scheduler = ExpansionScheduler(slow_sweep, interval_minutes=60)
    worker = threading.Thread(target=scheduler.run_once)
    worker.start()
    assert entered.wait(timeout=5)

    assert scheduler.run_once() is None

    release.set()
    worker.join(timeout=5)
    assert scheduler.last_report.created == 1


def test_crashing_sweep_is_contained():
    def broken_sweep():
        raise RuntimeError("database on fire")

    assert ExpansionScheduler(broken_sweep).run_once() is None


def test_start_runs_immediately_and_stop_is_idempotent():
    ran = threading.Event()

    def sweep():
        ran.set()
        return SweepReport()

    scheduler = ExpansionScheduler(sweep, interval_minutes=60).start()
    try:
        assert ran.wait(timeout=5)
        assert scheduler.running
    finally:
        scheduler.stop()
        scheduler.stop()

    assert not scheduler.running
    assert scheduler.run_once() is None


def test_stopped_scheduler_cannot_restart():
    scheduler = ExpansionScheduler(lambda: SweepReport())
    scheduler.stop()
    with pytest.raises(RuntimeError):
        scheduler.start()


def test_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        ExpansionScheduler(lambda: SweepReport(), interval_minutes=0)


def test_tick_runs_inside_app_context():
    from flask import Flask, current_app

    app = Flask("tick-test")
    seen = []

    def sweep():
        seen.append(current_app.name)
        return SweepReport()

    ExpansionScheduler(sweep, app=app).run_once()
    assert seen == ["tick-test"]
