"""Shared fixtures: in-memory database, fake Google endpoints, fake job queue."""

from __future__ import annotations

import os

# Configure before the application modules read the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["APP_URL"] = "http://app.test"
os.environ["WEBHOOK_BASE_URL"] = "https://api.test"
os.environ["ALLOW_DEMO_USER"] = "false"
os.environ["SECURITY_HEADERS_ENABLED"] = "true"

import itertools
import json
import time
from datetime import date, datetime, timedelta
from datetime import time as dt_time
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt as jose_jwt

from goalachiever.auth import AnonymousIdentityPolicy, get_anonymous_policy
from goalachiever.database import Base, engine, get_db, SessionLocal
from goalachiever.main import app
from goalachiever.models import Profile, TimeBlock
from goalachiever.models_google_calendar import (
    GOOGLE_CALENDAR_PROVIDER,
    SYNC_STATUS_SYNCED,
    CalendarSyncRecord,
    CalendarSyncSettings,
    CalendarWebhookChannel,
    UserIntegration,
)
from goalachiever.security_utils import encrypt_token
from goalachiever.services.google_calendar_service import GoogleCalendarClient, get_google_client
from goalachiever.services.sync_jobs import get_sync_job_queue

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"

EVENTS_PREFIX = "/calendar/v3/calendars/primary/events"


# ---------------------------------------------------------------------------
# Fake Google
# ---------------------------------------------------------------------------


class FakeGoogle:
    """In-memory stand-in for the Google OAuth and Calendar endpoints."""

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.event_status: dict[str, int] = {}
        self.token_status = 200
        self.token_payload: dict[str, Any] = {
            "access_token": "fresh-access-token",
            "refresh_token": "fresh-refresh-token",
            "expires_in": 3600,
            "scope": "https://www.googleapis.com/auth/calendar",
        }
        self.userinfo_email: Optional[str] = "owner@example.com"
        self.revoke_error: Optional[Exception] = None
        self.create_status = 200
        self.watch_payload = {"resourceId": "resource-1", "expiration": "1893456000000"}
        self._ids = itertools.count(1)

    def calls(self, method: str, path_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.startswith(path_prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path, method = request.url.host, request.url.path, request.method

        if host == "oauth2.googleapis.com" and path == "/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self.token_payload)

        if host == "oauth2.googleapis.com" and path == "/revoke":
            if self.revoke_error:
                raise self.revoke_error
            return httpx.Response(200)

        if path == "/oauth2/v2/userinfo":
            if not self.userinfo_email:
                return httpx.Response(401)
            return httpx.Response(200, json={"email": self.userinfo_email})

        if path == "/calendar/v3/channels/stop":
            return httpx.Response(204)

        if path == f"{EVENTS_PREFIX}/watch":
            return httpx.Response(200, json={"kind": "api#channel", **self.watch_payload})

        if path == EVENTS_PREFIX and method == "GET":
            return httpx.Response(200, json={"items": list(self.events.values())})

        if path == EVENTS_PREFIX and method == "POST":
            if self.create_status != 200:
                return httpx.Response(self.create_status, json={"error": {"message": "nope"}})
            event_id = f"created{next(self._ids)}"
            body = {"id": event_id, **_json(request)}
            self.events[event_id] = body
            return httpx.Response(200, json=body)

        if path.startswith(f"{EVENTS_PREFIX}/"):
            event_id = path[len(EVENTS_PREFIX) + 1 :]
            if event_id in self.event_status:
                return httpx.Response(self.event_status[event_id], json={"error": "failure"})
            if event_id not in self.events:
                return httpx.Response(404, json={"error": {"code": 404}})
            if method == "PATCH":
                self.events[event_id].update(_json(request))
            return httpx.Response(200, json=self.events[event_id])

        return httpx.Response(404)


def _json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content or b"{}")


def form_data(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def google_client(fake_google: FakeGoogle) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://app.test/api/calendar/oauth/callback",
        transport=httpx.MockTransport(fake_google.handler),
    )


# ---------------------------------------------------------------------------
# Fake job queue
# ---------------------------------------------------------------------------


class FakeSyncQueue:
    def __init__(self) -> None:
        self.enqueued: list[str] = []
        self.error: Optional[Exception] = None

    async def enqueue_sync(self, user_id: str) -> Optional[str]:
        if self.error:
            raise self.error
        if user_id in self.enqueued:
            return None
        self.enqueued.append(user_id)
        return f"calendar-sync:{user_id}"


@pytest.fixture
def sync_queue() -> FakeSyncQueue:
    return FakeSyncQueue()


# ---------------------------------------------------------------------------
# Database and app
# ---------------------------------------------------------------------------


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def anonymous_policy() -> AnonymousIdentityPolicy:
    return AnonymousIdentityPolicy(enabled=False)


@pytest.fixture
def client(db_session, google_client, sync_queue, anonymous_policy):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_google_client] = lambda: google_client
    app.dependency_overrides[get_sync_job_queue] = lambda: sync_queue
    app.dependency_overrides[get_anonymous_policy] = lambda: anonymous_policy
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def make_session_token(user_id: str = USER_ID, email: str = "user@example.com", **claims: Any) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
        **claims,
    }
    return jose_jwt.encode(payload, os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_session_token()}"}


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------


def add_profile(db, user_id: str = USER_ID, timezone: str = "UTC", is_admin: bool = False) -> Profile:
    profile = Profile(id=user_id, email=f"{user_id[:4]}@example.com", timezone=timezone, is_admin=is_admin)
    db.add(profile)
    db.commit()
    return profile


def add_integration(
    db,
    user_id: str = USER_ID,
    access_token: str = "stored-access-token",
    refresh_token: Optional[str] = "stored-refresh-token",
    expires_in: timedelta = timedelta(hours=1),
    is_active: bool = True,
) -> UserIntegration:
    integration = UserIntegration(
        user_id=user_id,
        provider=GOOGLE_CALENDAR_PROVIDER,
        access_token=encrypt_token(access_token),
        refresh_token=encrypt_token(refresh_token),
        token_expiry=datetime.utcnow() + expires_in,
        provider_email="owner@example.com",
        is_active=is_active,
    )
    db.add(integration)
    db.commit()
    return integration


def add_settings(db, user_id: str = USER_ID, **values: Any) -> CalendarSyncSettings:
    settings = CalendarSyncSettings(user_id=user_id, **values)
    db.add(settings)
    db.commit()
    return settings


def add_time_block(
    db,
    event_id: Optional[str],
    user_id: str = USER_ID,
    block_date: date = date(2026, 3, 10),
    start: dt_time = dt_time(9, 0),
    end: dt_time = dt_time(10, 0),
    name: str = "Deep work",
) -> TimeBlock:
    block = TimeBlock(
        user_id=user_id,
        block_date=block_date,
        start_time=start,
        end_time=end,
        duration_minutes=60,
        activity_name=name,
        source=GOOGLE_CALENDAR_PROVIDER if event_id else "manual",
        external_event_id=event_id,
    )
    db.add(block)
    db.commit()
    return block


def add_sync_record(
    db, entity_id: str, event_id: str, user_id: str = USER_ID, status: str = SYNC_STATUS_SYNCED,
    entity_type: str = "daily_action",
) -> CalendarSyncRecord:
    record = CalendarSyncRecord(
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        google_event_id=event_id,
        sync_status=status,
    )
    db.add(record)
    db.commit()
    return record


def add_channel(
    db, channel_id: str = "channel-1", user_id: str = USER_ID, token: Optional[str] = "channel-token",
    is_active: bool = True,
) -> CalendarWebhookChannel:
    channel = CalendarWebhookChannel(
        user_id=user_id,
        channel_id=channel_id,
        resource_id="resource-1",
        token=token,
        is_active=is_active,
    )
    db.add(channel)
    db.commit()
    return channel


def google_event(
    event_id: str,
    start: str = "2026-03-10T09:00:00Z",
    end: str = "2026-03-10T10:00:00Z",
    summary: str = "Deep work",
    **extra: Any,
) -> dict[str, Any]:
    return {"id": event_id, "summary": summary, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}
