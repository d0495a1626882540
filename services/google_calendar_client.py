"""Google Calendar v3 client used by the sync reconciler."""
from datetime import date, datetime, time, timedelta
from urllib.parse import quote

import pytz
import requests

from backend.errors import AuthError, NetworkError, ValidationError
from backend.recurrence_rules import MODE_CLONE
from backend.sync_reconciler import RemoteItem

API_BASE = "https://www.googleapis.com/calendar/v3"
# (connect, read) seconds
DEFAULT_TIMEOUT = (10, 30)
PAGE_SIZE = 250
DEFAULT_EVENT_LENGTH = timedelta(hours=1)
LOCAL_REF_KEY = "appItemId"


def _parse_rfc3339(value):
    """Parse an RFC 3339 timestamp into an aware datetime."""
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return parsed


def format_rfc3339_utc(value: datetime) -> str:
    """Render a naive UTC datetime as RFC 3339."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class GoogleCalendarClient:
    def __init__(self, access_token, calendar_id="primary", timezone="UTC", session=None, timeout=DEFAULT_TIMEOUT):
        self.access_token = access_token
        self.calendar_id = calendar_id or "primary"
        self.timezone = timezone or "UTC"
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def _events_url(self):
        return f"{API_BASE}/calendars/{quote(self.calendar_id, safe='')}/events"

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    def _request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        try:
            resp = self.session.request(method, url, headers=self._headers(), **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(f"Google Calendar request failed: {exc}") from exc
        if resp.status_code == 401:
            raise AuthError("Google Calendar rejected the access token")
        if resp.status_code in (400, 422):
            raise ValidationError(f"Google Calendar rejected the request: {_error_text(resp)}")
        if resp.status_code >= 400:
            raise NetworkError(
                f"Google Calendar returned {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        return resp

    # -- reads ----------------------------------------------------------------

    def list_changed_since(self, checkpoint):
        """Every event changed after `checkpoint` (naive UTC), deletions included, across all pages."""
        params = {
            "showDeleted": "true",
            "singleEvents": "false",
            "maxResults": PAGE_SIZE,
        }
        if checkpoint is not None:
            params["updatedMin"] = format_rfc3339_utc(checkpoint)

        items = []
        page_token = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", self._events_url, params=params).json()
            items.extend(payload.get("items") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    def parse_item(self, payload) -> RemoteItem:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValidationError("Remote event payload has no id")
        external_id = payload["id"]
        if not payload.get("updated"):
            raise ValidationError(f"Remote event {external_id} has no updated timestamp")
        try:
            updated = _parse_rfc3339(payload["updated"]).astimezone(pytz.UTC).replace(tzinfo=None)
        except ValueError as exc:
            raise ValidationError(f"Remote event {external_id} has a bad updated timestamp") from exc

        status = payload.get("status") or "confirmed"
        # exceptions to a single instance of a series point back at it
        instance_of = dict(
            recurring_event_id=payload.get("recurringEventId"),
            original_start=self._parse_event_time(payload.get("originalStartTime"), external_id),
        )
        if status == "cancelled":
            return RemoteItem(
                external_id=external_id, title="", start=None, end=None, updated_at=updated, status=status,
                **instance_of
            )

        start = self._parse_event_time(payload.get("start"), external_id)
        end = self._parse_event_time(payload.get("end"), external_id)
        if start is None:
            raise ValidationError(f"Remote event {external_id} has no start")
        if end is not None and end < start:
            raise ValidationError(f"Remote event {external_id} ends before it starts")

        local_ref = None
        private = (payload.get("extendedProperties") or {}).get("private") or {}
        if private.get(LOCAL_REF_KEY):
            try:
                local_ref = int(private[LOCAL_REF_KEY])
            except (TypeError, ValueError):
                local_ref = None

        return RemoteItem(
            external_id=external_id,
            title=(payload.get("summary") or "").strip(),
            description=payload.get("description"),
            start=start,
            end=end,
            updated_at=updated,
            status=status,
            recurrence=tuple(payload.get("recurrence") or ()),
            local_ref=local_ref,
            **instance_of
        )

    def _parse_event_time(self, value, external_id):
        """Convert a Google start/end object into a naive local wall-clock datetime."""
        if not value:
            return None
        try:
            if value.get("dateTime"):
                aware = _parse_rfc3339(value["dateTime"])
                return aware.astimezone(pytz.timezone(self.timezone)).replace(tzinfo=None)
            if value.get("date"):
                return datetime.combine(date.fromisoformat(value["date"]), time())
        except (ValueError, pytz.UnknownTimeZoneError) as exc:
            raise ValidationError(f"Remote event {external_id} has an unreadable time") from exc
        return None

    # -- writes ---------------------------------------------------------------

    def event_body(self, record):
        if record.start is None:
            raise ValidationError("Only items with a start can be sent to Google Calendar", item_ref=record.id)
        end = record.end or (record.start + DEFAULT_EVENT_LENGTH)
        body = {
            "summary": record.title,
            "description": record.description or "",
            "start": {"dateTime": record.start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone},
        }
        if record.is_definition and record.recurrence_mode == MODE_CLONE:
            body["recurrence"] = [record.rule.to_rrule()]
        if record.id is not None:
            body["extendedProperties"] = {"private": {LOCAL_REF_KEY: str(record.id)}}
        return body

    def create_item(self, record) -> RemoteItem:
        resp = self._request("POST", self._events_url, json=self.event_body(record))
        return self.parse_item(resp.json())

    def update_item(self, external_id, record) -> RemoteItem:
        url = f"{self._events_url}/{external_id}"
        try:
            resp = self._request("PUT", url, json=self.event_body(record))
        except NetworkError as exc:
            if exc.status_code in (404, 410):
                raise ValidationError(f"Remote event {external_id} no longer exists", item_ref=record.id) from exc
            raise
        return self.parse_item(resp.json())

    def delete_item(self, external_id) -> bool:
        try:
            self._request("DELETE", f"{self._events_url}/{external_id}")
        except NetworkError as exc:
            if exc.status_code in (404, 410):
                return False
            raise
        return True


def _error_text(resp):
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(error or payload)[:200]
