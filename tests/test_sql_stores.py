from datetime import datetime, timedelta

import pytest

from backend.errors import PersistenceError, ValidationError
from backend.recurrence_rules import RecurrenceRule
from backend.schedule_records import ScheduleRecord, utc_now
from backend.token_manager import StoredToken
from models import ScheduledItem, User, db
from services.sql_stores import SqlCheckpointStore, SqlItemStore, SqlTokenStore


@pytest.fixture
def user(flask_app):
    user = User(username="casey")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def store(flask_app):
    return SqlItemStore()


def _event(user, **fields):
    start = fields.pop("start", datetime(2025, 1, 6, 9, 0))
    return ScheduleRecord(owner_id=user.id, title=fields.pop("title", "Review"), start=start, **fields)


def test_insert_and_read_back_recurring_definition(store, user):
    start = datetime(2025, 1, 6, 9, 0)
    saved = store.insert(_event(
        user,
        rule=RecurrenceRule.build("weekly", days="mon,wed", end_date="2025-02-01"),
        series_start=start,
    ))

    loaded = store.get(saved.id)
    assert loaded.rule.days == ("monday", "wednesday")
    assert loaded.rule.end_date.isoformat() == "2025-02-01"
    assert loaded.recurrence_mode == "clone"
    assert loaded.series_start == start
    assert store.find_definitions(user.id) == [loaded]
    assert store.owner_ids_with_definitions() == [user.id]


def test_update_touch_controls_last_updated_at(store, user):
    stamp = datetime(2024, 12, 1, 8, 0)
    saved = store.insert(_event(user, last_updated_at=stamp))

    quiet = store.update(saved.evolve(external_id="remote-1", external_updated_at=stamp), touch=False)
    assert quiet.last_updated_at == stamp

    touched = store.update(quiet.evolve(title="Review v2"))
    assert touched.last_updated_at > stamp
    assert touched.last_updated_at <= utc_now()


def test_external_id_is_immutable(store, user):
    saved = store.insert(_event(user, external_id="remote-1"))

    with pytest.raises(ValidationError):
        store.update(saved.evolve(external_id="remote-2"))


def test_duplicate_occurrence_instant_is_rejected(store, user):
    definition = store.insert(_event(user, rule=RecurrenceRule.build("daily")))
    occurrence = _event(user, start=datetime(2025, 1, 7, 9, 0), parent_id=definition.id)
    store.insert(occurrence)

    with pytest.raises(PersistenceError):
        store.insert(occurrence)
    assert len(store.find_occurrences(definition.id)) == 1


def test_update_of_missing_row(store, user):
    with pytest.raises(PersistenceError):
        store.update(_event(user, id=999))


def test_push_candidates(store, user):
    since = datetime(2025, 1, 1)
    fresh = store.insert(_event(user, title="Never pushed"))
    store.insert(_event(user, title="Pushed, untouched", external_id="r-1", last_updated_at=since - timedelta(days=1)))
    edited = store.insert(_event(user, title="Pushed, edited", external_id="r-2", last_updated_at=since + timedelta(hours=1)))
    store.insert(_event(user, title="A task", kind="task"))
    store.insert(_event(user, title="Imported", source="external", external_id="r-3"))

    candidates = store.find_push_candidates(user.id, since)

    assert [c.id for c in candidates] == [fresh.id, edited.id]


def test_find_by_owner_filters(store, user):
    store.insert(_event(user, title="Event"))
    store.insert(_event(user, title="Task", kind="task"))

    assert [r.title for r in store.find_by_owner(user.id, kind="task")] == ["Task"]
    assert store.find_by_external_id(user.id, "nope") is None


def test_delete(store, user):
    saved = store.insert(_event(user))

    assert store.delete(saved.id) is True
    assert store.delete(saved.id) is False


def test_token_store_round_trip(flask_app, user):
    tokens = SqlTokenStore()
    expires = datetime(2025, 1, 1, 13, 0)
    tokens.save(StoredToken(user.id, "access", "refresh", expires, email="casey@example.com"))
    tokens.save(StoredToken(user.id, "access-2", None, expires + timedelta(hours=1)))

    stored = tokens.get(user.id)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh"
    assert stored.email == "casey@example.com"
    assert tokens.delete(user.id) is True
    assert tokens.get(user.id) is None


def test_checkpoint_store(flask_app, user):
    checkpoints = SqlCheckpointStore()
    assert checkpoints.load(user.id).pulled_through is None

    checkpoints.save_pull(user.id, datetime(2025, 1, 1, 12, 0))
    checkpoints.save_push(user.id, datetime(2025, 1, 1, 12, 5))

    state = checkpoints.load(user.id)
    assert state.pulled_through == datetime(2025, 1, 1, 12, 0)
    assert state.pushed_through == datetime(2025, 1, 1, 12, 5)

    checkpoints.clear(user.id)
    assert checkpoints.load(user.id).pushed_through is None


def test_unreadable_row_is_skipped_by_listings(store, user):
    good = store.insert(_event(
        user,
        title="Stand-up",
        rule=RecurrenceRule.build("daily"),
        series_start=datetime(2025, 1, 6, 9, 0),
    ))
    db.session.add(ScheduledItem(
        user_id=user.id,
        title="Legacy",
        start_at=datetime(2025, 1, 6, 10, 0),
        is_recurring=True,
        recurrence_pattern="fortnightly",
    ))
    db.session.commit()

    assert [d.id for d in store.find_definitions(user.id)] == [good.id]
    assert [i.title for i in store.find_by_owner(user.id)] == ["Stand-up"]


def test_expanded_through_round_trip(store, user):
    saved = store.insert(_event(user, rule=RecurrenceRule.build("daily"), series_start=datetime(2025, 1, 6, 9, 0)))

    store.update(saved.evolve(expanded_through=datetime(2025, 1, 9, 9, 0)), touch=False)

    assert store.get(saved.id).expanded_through == datetime(2025, 1, 9, 9, 0)
