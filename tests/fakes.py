"""In-memory stand-ins for the stores and the Google services, shared by the tests."""
import threading
from datetime import datetime, timedelta

from backend.errors import AuthError, NetworkError, PersistenceError, ValidationError
from backend.recurrence_rules import MODE_CLONE
from backend.schedule_records import KIND_EVENT, SOURCE_LOCAL
from backend.sync_reconciler import RemoteItem, SyncCheckpointState


class FakeClock:
    def __init__(self, now=datetime(2025, 1, 1, 12, 0, 0)):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **kwargs):
        with self._lock:
            self.now += timedelta(**kwargs)
            return self.now


class InMemoryItemStore:
    def __init__(self, clock=None):
        self.rows = {}
        self.clock = clock or FakeClock()
        self.fail_inserts_for_parent = set()
        self._next_id = 1

    def get(self, item_id):
        return self.rows.get(item_id)

    def find_by_owner(self, owner_id, kind=None, source=None):
        rows = [
            r for r in self.rows.values()
            if r.owner_id == owner_id and (kind is None or r.kind == kind) and (source is None or r.source == source)
        ]
        return sorted(rows, key=lambda r: (r.start or datetime.min, r.id))

    def find_by_external_id(self, owner_id, external_id):
        return next(
            (r for r in self.rows.values() if r.owner_id == owner_id and r.external_id == external_id),
            None,
        )

    def find_definitions(self, owner_id, active_only=True):
        return [
            r for r in sorted(self.rows.values(), key=lambda r: r.id)
            if r.owner_id == owner_id and r.is_definition and not (active_only and r.recurrence_exhausted)
        ]

    def find_occurrences(self, parent_id):
        return sorted((r for r in self.rows.values() if r.parent_id == parent_id), key=lambda r: r.start)

    def find_push_candidates(self, owner_id, since=None):
        return [
            r for r in sorted(self.rows.values(), key=lambda r: r.id)
            if r.owner_id == owner_id
            and r.source == SOURCE_LOCAL
            and r.kind == KIND_EVENT
            and r.parent_id is None
            and (since is None or r.external_id is None or r.last_updated_at > since)
        ]

    def owner_ids_with_definitions(self):
        return sorted({r.owner_id for r in self.rows.values() if r.is_definition and not r.recurrence_exhausted})

    def insert(self, record):
        record.check_invariants()
        if record.parent_id in self.fail_inserts_for_parent:
            raise PersistenceError(f"insert refused for parent {record.parent_id}")
        if record.parent_id is not None and any(
            r.parent_id == record.parent_id and r.start == record.start for r in self.rows.values()
        ):
            raise PersistenceError("duplicate occurrence")
        saved = record.evolve(id=self._next_id)
        self._next_id += 1
        self.rows[saved.id] = saved
        return saved

    def update(self, record, touch=True):
        record.check_invariants()
        current = self.rows.get(record.id)
        if current is None:
            raise PersistenceError(f"Item {record.id} no longer exists")
        if current.external_id and record.external_id != current.external_id:
            raise ValidationError("external_id cannot change once assigned")
        saved = record.evolve(last_updated_at=self.clock() if touch else record.last_updated_at)
        self.rows[saved.id] = saved
        return saved

    def delete(self, item_id):
        return self.rows.pop(item_id, None) is not None


class InMemoryTokenStore:
    def __init__(self):
        self.tokens = {}

    def get(self, user_id):
        return self.tokens.get(user_id)

    def save(self, token):
        self.tokens[token.user_id] = token
        return token

    def delete(self, user_id):
        return self.tokens.pop(user_id, None) is not None


class InMemoryCheckpointStore:
    def __init__(self):
        self.states = {}

    def load(self, user_id):
        state = self.states.get(user_id)
        if state is None:
            return SyncCheckpointState()
        return SyncCheckpointState(state.pulled_through, state.pushed_through)

    def save_pull(self, user_id, pulled_through):
        self.states.setdefault(user_id, SyncCheckpointState()).pulled_through = pulled_through

    def save_push(self, user_id, pushed_through):
        self.states.setdefault(user_id, SyncCheckpointState()).pushed_through = pushed_through

    def clear(self, user_id):
        self.states.pop(user_id, None)


class FakeCalendar:
    """Remote calendar state shared by every client the factory hands out."""

    def __init__(self, clock):
        self.clock = clock
        self.events = {}
        self.list_calls = 0
        self.created = []
        self.updated = []
        self.deleted = []
        self.fail_titles = set()
        self.on_list = None
        self.on_create = None
        self.tokens_seen = []
        self._next_id = 1

    def client_factory(self, access_token):
        self.tokens_seen.append(access_token)
        return FakeCalendarClient(self)

    def stamp(self):
        return self.clock.advance(seconds=1)

    def put_remote(self, title, start, end=None, updated_at=None, status="confirmed",
                   external_id=None, local_ref=None, recurrence=(), recurring_event_id=None, original_start=None):
        if external_id is None:
            external_id = f"remote-{self._next_id}"
            self._next_id += 1
        item = RemoteItem(
            external_id=external_id,
            title=title,
            start=start,
            end=end,
            updated_at=updated_at or self.stamp(),
            status=status,
            recurrence=tuple(recurrence),
            local_ref=local_ref,
            recurring_event_id=recurring_event_id,
            original_start=original_start,
        )
        self.events[external_id] = item
        return item


class FakeCalendarClient:
    def __init__(self, calendar):
        self.calendar = calendar

    def list_changed_since(self, checkpoint):
        self.calendar.list_calls += 1
        if self.calendar.on_list:
            self.calendar.on_list()
        return [
            item for item in self.calendar.events.values()
            if checkpoint is None or not isinstance(item, RemoteItem) or item.updated_at >= checkpoint
        ]

    def parse_item(self, payload):
        if not isinstance(payload, RemoteItem):
            raise ValidationError("unreadable payload")
        return payload

    def _write(self, external_id, record):
        if record.title in self.calendar.fail_titles:
            raise NetworkError(f"remote rejected {record.title}", status_code=503)
        item = RemoteItem(
            external_id=external_id,
            title=record.title,
            description=record.description,
            start=record.start,
            end=record.end,
            updated_at=self.calendar.stamp(),
            recurrence=(record.rule.to_rrule(),) if record.is_definition and record.recurrence_mode == MODE_CLONE else (),
            local_ref=record.id,
        )
        self.calendar.events[external_id] = item
        return item

    def create_item(self, record):
        external_id = f"remote-{self.calendar._next_id}"
        self.calendar._next_id += 1
        item = self._write(external_id, record)
        self.calendar.created.append(external_id)
        if self.calendar.on_create:
            self.calendar.on_create(record)
        return item

    def update_item(self, external_id, record):
        if external_id not in self.calendar.events:
            raise ValidationError(f"Remote event {external_id} no longer exists")
        item = self._write(external_id, record)
        self.calendar.updated.append(external_id)
        return item

    def delete_item(self, external_id):
        self.calendar.deleted.append(external_id)
        return self.calendar.events.pop(external_id, None) is not None


class FakeOAuthClient:
    def __init__(self, expires_in=3600):
        self.expires_in = expires_in
        self.refresh_calls = 0
        self.revoked = []
        self.fail_refresh = None
        self.fail_revoke = None
        self.refresh_gate = None
        self.configured = True

    def authorization_url(self, state, redirect_uri=None):
        return f"https://accounts.example.test/auth?state={state}"

    def exchange_code(self, code, redirect_uri=None):
        if code != "good-code":
            raise AuthError("bad code")
        return {
            "access_token": "access-from-code",
            "refresh_token": "refresh-from-code",
            "expires_in": self.expires_in,
            "email": "person@example.com",
        }

    def refresh(self, refresh_token):
        if self.refresh_gate is not None:
            self.refresh_gate.wait(timeout=5)
        self.refresh_calls += 1
        if self.fail_refresh:
            raise self.fail_refresh
        return {"access_token": f"refreshed-{self.refresh_calls}", "expires_in": self.expires_in}

    def revoke(self, token):
        if self.fail_revoke:
            raise self.fail_revoke
        self.revoked.append(token)
        return True
