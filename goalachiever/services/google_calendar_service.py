"""
Google Calendar Service
Thin async client over the Google OAuth and Calendar v3 REST APIs
"""
import logging
from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx

from .. import config

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Prefix used when Google events are surfaced as local time blocks
GCAL_ID_PREFIX = "gcal_"


class CalendarSyncError(Exception):
    """Base class for calendar integration failures"""

    pass


class GoogleAPIError(CalendarSyncError):
    """A Google API call failed or could not be completed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def strip_gcal_prefix(event_id: str) -> str:
    return event_id[len(GCAL_ID_PREFIX):] if event_id.startswith(GCAL_ID_PREFIX) else event_id


class GoogleCalendarClient:
    """
    Every call opens its own short-lived httpx client and is attempted once.
    Pass ``transport`` to route traffic somewhere other than the network.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls) -> "GoogleCalendarClient":
        return cls(
            client_id=config.GOOGLE_CLIENT_ID,
            client_secret=config.GOOGLE_CLIENT_SECRET,
            redirect_uri=config.GOOGLE_REDIRECT_URI,
            timeout=config.GOOGLE_HTTP_TIMEOUT,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"❌ Google request failed: {method} {url}: {type(e).__name__}: {e}")
            raise GoogleAPIError(f"Network error calling Google: {e}") from e

    @staticmethod
    def _bearer(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for access and refresh tokens"""
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise GoogleAPIError("Failed to exchange authorization code", response.status_code)

        tokens = response.json()
        if not tokens.get("access_token"):
            raise GoogleAPIError("Invalid token response")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: {response.text}")
            raise GoogleAPIError("Token refresh failed", response.status_code)

        tokens = response.json()
        if not tokens.get("access_token"):
            raise GoogleAPIError("No access token in refresh response")
        return tokens

    async def fetch_user_email(self, access_token: str) -> Optional[str]:
        """Best effort: the account email is informational only"""
        try:
            response = await self._request("GET", GOOGLE_USERINFO_URL, headers=self._bearer(access_token))
        except GoogleAPIError:
            return None

        if response.status_code != 200:
            logger.warning(f"Failed to get user info: {response.status_code}")
            return None
        return response.json().get("email")

    async def revoke_token(self, token: str) -> None:
        response = await self._request(
            "POST",
            GOOGLE_REVOKE_URL,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code != 200:
            raise GoogleAPIError(f"Token revoke failed: {response.text}", response.status_code)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    async def get_event(
        self, access_token: str, event_id: str, calendar_id: str = "primary"
    ) -> Optional[dict[str, Any]]:
        """
        Fetch one event.
        Returns None when Google no longer has it (deleted); raises on any other failure.
        """
        google_event_id = strip_gcal_prefix(event_id)
        response = await self._request(
            "GET", self._events_url(calendar_id, google_event_id), headers=self._bearer(access_token)
        )

        if response.status_code in (404, 410):
            logger.info(f"Event {google_event_id} not found (deleted in Google)")
            return None
        if response.status_code != 200:
            raise GoogleAPIError(
                f"Failed to fetch event {google_event_id}: HTTP {response.status_code}", response.status_code
            )
        return response.json()

    async def list_events(
        self, access_token: str, time_min: str, time_max: str, calendar_id: str = "primary"
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            self._events_url(calendar_id),
            headers=self._bearer(access_token),
            params={
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        if response.status_code != 200:
            logger.error(f"❌ Google Calendar API error: {response.text}")
            raise GoogleAPIError("Failed to fetch calendar events", response.status_code)
        return response.json().get("items", [])

    async def create_event(
        self, access_token: str, event: dict[str, Any], calendar_id: str = "primary"
    ) -> dict[str, Any]:
        response = await self._request(
            "POST", self._events_url(calendar_id), headers=self._bearer(access_token), json=event
        )
        if response.status_code not in (200, 201):
            logger.error(f"❌ Failed to create calendar event: {response.text}")
            raise GoogleAPIError("Failed to create event", response.status_code)
        return response.json()

    async def update_event(
        self, access_token: str, event_id: str, event: dict[str, Any], calendar_id: str = "primary"
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            self._events_url(calendar_id, strip_gcal_prefix(event_id)),
            headers=self._bearer(access_token),
            json=event,
        )
        if response.status_code != 200:
            logger.error(f"❌ Failed to update calendar event: {response.text}")
            raise GoogleAPIError("Failed to update event", response.status_code)
        return response.json()

    # ------------------------------------------------------------------
    # Push notification channels
    # ------------------------------------------------------------------

    async def watch_events(
        self,
        access_token: str,
        channel_id: str,
        token: str,
        address: str,
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._events_url(calendar_id)}/watch",
            headers=self._bearer(access_token),
            json={"id": channel_id, "type": "web_hook", "address": address, "token": token},
        )
        if response.status_code != 200:
            logger.error(f"❌ Failed to register watch channel: {response.text}")
            raise GoogleAPIError("Failed to register watch channel", response.status_code)
        return response.json()

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        response = await self._request(
            "POST",
            f"{GOOGLE_CALENDAR_API}/channels/stop",
            headers=self._bearer(access_token),
            json={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code not in (200, 204):
            raise GoogleAPIError(f"Failed to stop channel {channel_id}", response.status_code)


def get_google_client() -> GoogleCalendarClient:
    """Dependency injection for GoogleCalendarClient"""
    return GoogleCalendarClient.from_config()
