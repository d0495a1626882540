"""Error taxonomy shared by the recurrence and calendar sync engine."""


class ScheduleEngineError(Exception):
    """Base class for every error the engine raises or records."""

    kind = "error"

    def __init__(self, message, *, item_ref=None):
        super().__init__(message)
        self.message = message
        self.item_ref = item_ref

    def __str__(self):
        return self.message


class AuthError(ScheduleEngineError):
    """Missing, expired or revoked calendar credential."""

    kind = "auth"


class NetworkError(ScheduleEngineError):
    """Transport failure talking to the external calendar (including rejected requests)."""

    kind = "network"

    def __init__(self, message, *, status_code=None, item_ref=None):
        super().__init__(message, item_ref=item_ref)
        self.status_code = status_code


class ValidationError(ScheduleEngineError):
    """Malformed recurrence rule, item or remote payload."""

    kind = "validation"


class ConflictError(ScheduleEngineError):
    """Advisory: both copies of an item changed. Recorded, never raised by a sync pass."""

    kind = "conflict"


class PersistenceError(ScheduleEngineError):
    """Local store read/write failure."""

    kind = "persistence"


class SyncCancelled(ScheduleEngineError):
    """The caller cancelled an in-progress sync pass."""

    kind = "cancelled"
