"""Per-user locking, single-flight calls and cooperative cancellation."""
import threading
from contextlib import contextmanager

from backend.errors import SyncCancelled

FOLLOWER_POLL_SECONDS = 0.05


class CancelToken:
    """Cooperative cancellation flag checked between network calls."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what="Sync"):
        if self._event.is_set():
            raise SyncCancelled(f"{what} cancelled")


class UserLocks:
    """One re-entrant lock per user id, shared by expansion sweeps and sync passes."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def lock_for(self, user_id):
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id):
        lock = self.lock_for(user_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


class _Call:
    def __init__(self):
        self.done = threading.Event()
        self.result = None
        self.error = None


class SingleFlight:
    """
    Collapse concurrent calls for the same key into one execution.

    The first caller runs the function; callers arriving while it is in flight
    block until it finishes and receive the same result (or exception). A
    waiting caller whose own cancel token is set gives up with SyncCancelled;
    the running call is not affected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls = {}

    def in_flight(self, key) -> bool:
        with self._lock:
            return key in self._calls

    def do(self, key, fn, cancel=None):
        """Return (result, shared) where shared is True for callers that piggybacked."""
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call

        if not leader:
            if cancel is None:
                call.done.wait()
            while not call.done.wait(FOLLOWER_POLL_SECONDS):
                cancel.raise_if_cancelled("Waiting for sync")
            if call.error is not None:
                raise call.error
            return call.result, True

        try:
            call.result = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.result, False
