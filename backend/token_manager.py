"""Lifecycle of the external calendar credential: store, refresh-before-expiry, revoke."""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.concurrency import UserLocks
from backend.errors import AuthError, NetworkError
from backend.schedule_records import utc_now

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass
class StoredToken:
    user_id: int
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    email: Optional[str] = None


@dataclass(frozen=True)
class AccessToken:
    """A usable credential plus the revocation epoch it was issued under."""
    user_id: int
    value: str
    expires_at: datetime
    epoch: int


class TokenManager:
    def __init__(self, token_store, oauth_client=None, refresh_margin=DEFAULT_REFRESH_MARGIN, clock=utc_now):
        self.token_store = token_store
        self.oauth_client = oauth_client
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._locks = UserLocks()
        self._epoch_guard = threading.Lock()
        self._epochs = {}

    def _epoch(self, user_id) -> int:
        with self._epoch_guard:
            return self._epochs.get(user_id, 0)

    def _bump_epoch(self, user_id):
        with self._epoch_guard:
            self._epochs[user_id] = self._epochs.get(user_id, 0) + 1

    def _expiry_from_grant(self, grant):
        try:
            seconds = int(grant.get('expires_in') or DEFAULT_TOKEN_LIFETIME.total_seconds())
        except (TypeError, ValueError):
            seconds = int(DEFAULT_TOKEN_LIFETIME.total_seconds())
        return self.clock() + timedelta(seconds=seconds)

    def store_token(self, user_id, access_token, expires_at, refresh_token=None, email=None) -> StoredToken:
        if not access_token:
            raise AuthError("Cannot store an empty access token")
        token = StoredToken(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            email=email,
        )
        with self._locks.hold(user_id):
            self.token_store.save(token)
        return token

    def connect(self, user_id, code, redirect_uri) -> StoredToken:
        """Finish the OAuth flow: exchange the authorization code and store the grant."""
        if self.oauth_client is None:
            raise AuthError("Google Calendar OAuth is not configured")
        grant = self.oauth_client.exchange_code(code, redirect_uri)
        token = self.store_token(
            user_id,
            grant.get('access_token'),
            self._expiry_from_grant(grant),
            refresh_token=grant.get('refresh_token'),
            email=grant.get('email'),
        )
        logger.info("Connected external calendar for user %s", user_id)
        return token

    def get_valid_token(self, user_id) -> AccessToken:
        """Return a token good for at least the refresh margin, refreshing it first if needed."""
        with self._locks.hold(user_id):
            epoch = self._epoch(user_id)
            stored = self.token_store.get(user_id)
            if stored is None:
                raise AuthError("Google Calendar is not connected to this account")
            if stored.expires_at - self.clock() > self.refresh_margin:
                return AccessToken(user_id, stored.access_token, stored.expires_at, epoch)

            if not stored.refresh_token or self.oauth_client is None:
                raise AuthError("Calendar access expired; please reconnect your account")
            try:
                grant = self.oauth_client.refresh(stored.refresh_token)
            except NetworkError as exc:
                raise AuthError(f"Could not refresh calendar access: {exc}") from exc
            if self._epoch(user_id) != epoch:
                raise AuthError("Calendar access was revoked")

            refreshed = StoredToken(
                user_id=user_id,
                access_token=grant.get('access_token'),
                refresh_token=grant.get('refresh_token') or stored.refresh_token,
                expires_at=self._expiry_from_grant(grant),
                email=stored.email,
            )
            if not refreshed.access_token:
                raise AuthError("Token refresh returned no access token")
            self.token_store.save(refreshed)
            logger.info("Refreshed calendar token for user %s", user_id)
            return AccessToken(user_id, refreshed.access_token, refreshed.expires_at, epoch)

    def assert_active(self, token: AccessToken):
        """Raise AuthError when `token` was issued before a revoke() for its user."""
        if self._epoch(token.user_id) != token.epoch:
            raise AuthError("Calendar access was revoked")

    def revoke(self, user_id) -> bool:
        # Bump first so in-flight syncs stop before the row disappears.
        self._bump_epoch(user_id)
        with self._locks.hold(user_id):
            stored = self.token_store.get(user_id)
            if stored is None:
                return False
            self.token_store.delete(user_id)

        if self.oauth_client is not None:
            try:
                self.oauth_client.revoke(stored.refresh_token or stored.access_token)
            except (AuthError, NetworkError) as exc:
                logger.warning("Remote revoke failed for user %s: %s", user_id, exc)
        logger.info("Disconnected external calendar for user %s", user_id)
        return True

    def is_connected(self, user_id) -> bool:
        return self.token_store.get(user_id) is not None

    def connection_info(self, user_id):
        stored = self.token_store.get(user_id)
        if stored is None:
            return {'connected': False}
        return {
            'connected': True,
            'email': stored.email,
            'expires_at': stored.expires_at.isoformat() if stored.expires_at else None,
        }
