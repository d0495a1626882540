"""Google OAuth 2.0 endpoints for connecting a calendar account."""
import logging
from urllib.parse import urlencode

import requests

from backend.errors import AuthError, NetworkError

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]
DEFAULT_TIMEOUT = (10, 30)


class GoogleOAuthClient:
    def __init__(self, client_id, client_secret, redirect_uri=None, session=None, timeout=DEFAULT_TIMEOUT):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, state, redirect_uri=None):
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    def _post(self, url, data):
        try:
            resp = self.session.post(url, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Google OAuth request failed: {exc}") from exc
        if resp.status_code in (400, 401):
            try:
                reason = resp.json().get("error_description") or resp.json().get("error")
            except ValueError:
                reason = resp.text[:200]
            raise AuthError(f"Google OAuth rejected the request: {reason}")
        if resp.status_code >= 400:
            raise NetworkError(f"Google OAuth returned {resp.status_code}", status_code=resp.status_code)
        return resp

    def exchange_code(self, code, redirect_uri=None):
        """Trade an authorization code for a grant dict (access_token, expires_in, refresh_token, email)."""
        if not code:
            raise AuthError("Missing authorization code")
        grant = self._post(TOKEN_URL, {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "grant_type": "authorization_code",
        }).json()
        grant["email"] = self._fetch_email(grant.get("access_token"))
        return grant

    def refresh(self, refresh_token):
        return self._post(TOKEN_URL, {
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
        }).json()

    def revoke(self, token):
        if not token:
            return False
        self._post(REVOKE_URL, {"token": token})
        return True

    def _fetch_email(self, access_token):
        if not access_token:
            return None
        try:
            resp = self.session.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Could not read Google account email: %s", exc)
            return None
        if resp.status_code != 200:
            return None
        return resp.json().get("email")
