import os
from datetime import timedelta

import pytest

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['ENABLE_RECURRENCE_JOBS'] = '0'
os.environ['DEFAULT_TIMEZONE'] = 'UTC'
os.environ.setdefault('SECRET_KEY', 'test-secret')

from backend.schedule_engine import ScheduleEngine  # noqa: E402
from backend.token_manager import StoredToken  # noqa: E402
from fakes import (  # noqa: E402
    FakeCalendar,
    FakeClock,
    FakeOAuthClient,
    InMemoryCheckpointStore,
    InMemoryItemStore,
    InMemoryTokenStore,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def item_store(clock):
    return InMemoryItemStore(clock)


@pytest.fixture
def token_store(clock):
    store = InMemoryTokenStore()
    store.save(StoredToken(
        user_id=1,
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=clock() + timedelta(days=1),
    ))
    return store


@pytest.fixture
def checkpoint_store():
    return InMemoryCheckpointStore()


@pytest.fixture
def calendar(clock):
    return FakeCalendar(clock)


@pytest.fixture
def oauth():
    return FakeOAuthClient()


@pytest.fixture
def engine(item_store, token_store, checkpoint_store, calendar, oauth, clock):
    return ScheduleEngine(
        item_store,
        token_store,
        checkpoint_store,
        calendar.client_factory,
        oauth_client=oauth,
        clock=clock,
        local_clock=clock,
    )


@pytest.fixture
def flask_app():
    from app import app
    from models import db

    app.config['TESTING'] = True
    with app.app_context():
        db.drop_all()
        db.create_all()
        yield app
        db.session.remove()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()
