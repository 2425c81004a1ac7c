"""Google -> app reconciliation of linked time blocks."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from goalachiever.models import TimeBlock
from goalachiever.models_google_calendar import (
    SYNC_STATUS_NEEDS_CHECK,
    SYNC_STATUS_SYNCED,
    CalendarSyncRecord,
    CalendarSyncSettings,
    UserIntegration,
)
from goalachiever.security_utils import decrypt_token
from goalachiever.services.calendar_sync_service import (
    CalendarNotConnectedError,
    TokenRefreshError,
    extract_event_datetime,
    find_users_due_for_auto_sync,
    mark_records_needing_check,
    sync_from_google,
)
from goalachiever.services.google_calendar_service import GoogleCalendarClient

from .conftest import (
    OTHER_USER_ID,
    USER_ID,
    add_integration,
    add_profile,
    add_settings,
    add_sync_record,
    add_time_block,
    form_data,
    google_event,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def connected(db_session):
    add_profile(db_session)
    add_integration(db_session)
    return USER_ID


def _reload(db_session, block: TimeBlock) -> TimeBlock:
    db_session.expire_all()
    return db_session.get(TimeBlock, block.id)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_not_connected_raises(db_session, google_client):
    add_profile(db_session)

    with pytest.raises(CalendarNotConnectedError):
        await sync_from_google(db_session, USER_ID, google_client)


@pytest.mark.asyncio
async def test_inactive_credential_counts_as_not_connected(db_session, google_client):
    add_profile(db_session)
    add_integration(db_session, is_active=False)

    with pytest.raises(CalendarNotConnectedError):
        await sync_from_google(db_session, USER_ID, google_client)


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_persisted(db_session, google_client, fake_google):
    add_profile(db_session)
    integration = add_integration(db_session, expires_in=timedelta(seconds=30))

    await sync_from_google(db_session, USER_ID, google_client)

    refresh = fake_google.calls("POST", "/token")[0]
    assert form_data(refresh)["grant_type"] == "refresh_token"
    assert form_data(refresh)["refresh_token"] == "stored-refresh-token"
    db_session.expire_all()
    integration = db_session.get(UserIntegration, integration.id)
    assert decrypt_token(integration.access_token) == "fresh-access-token"
    assert integration.token_expiry > datetime.utcnow() + timedelta(minutes=50)


@pytest.mark.asyncio
async def test_valid_token_is_not_refreshed(db_session, google_client, fake_google, connected):
    await sync_from_google(db_session, USER_ID, google_client)

    assert fake_google.calls("POST", "/token") == []


@pytest.mark.asyncio
async def test_refresh_failure_raises(db_session, google_client, fake_google):
    add_profile(db_session)
    add_integration(db_session, expires_in=timedelta(minutes=-5))
    fake_google.token_status = 400

    with pytest.raises(TokenRefreshError):
        await sync_from_google(db_session, USER_ID, google_client)


@pytest.mark.asyncio
async def test_missing_refresh_token_raises(db_session, google_client):
    add_profile(db_session)
    add_integration(db_session, refresh_token=None, expires_in=timedelta(minutes=-5))

    with pytest.raises(TokenRefreshError):
        await sync_from_google(db_session, USER_ID, google_client)


# ---------------------------------------------------------------------------
# Per-block outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unchanged_event_is_skipped(db_session, google_client, fake_google, connected):
    block = add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event("evt-1")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.to_dict()["details"] == [{"blockId": block.id, "action": "skipped", "reason": "Already in sync"}]
    assert (result.synced, result.deleted, result.conflicts) == (0, 0, 0)


@pytest.mark.asyncio
async def test_gcal_prefix_is_stripped(db_session, google_client, fake_google, connected):
    add_time_block(db_session, "gcal_evt-1")
    fake_google.events["evt-1"] = google_event("evt-1")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.details[0]["action"] == "skipped"
    assert fake_google.calls("GET", "/calendar/v3/calendars/primary/events/evt-1")


@pytest.mark.asyncio
async def test_deleted_event_unlinks_block(db_session, google_client, connected):
    block = add_time_block(db_session, "evt-gone")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.deleted == 1
    assert result.details[0]["action"] == "deleted"
    block = _reload(db_session, block)
    assert block.external_event_id is None
    assert block.source == "manual"


@pytest.mark.asyncio
async def test_cancelled_event_unlinks_block(db_session, google_client, fake_google, connected):
    block = add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event("evt-1", status="cancelled")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.deleted == 1
    assert _reload(db_session, block).external_event_id is None


@pytest.mark.asyncio
async def test_remote_failure_is_reported_not_treated_as_deletion(db_session, google_client, fake_google, connected):
    block = add_time_block(db_session, "evt-1")
    fake_google.event_status["evt-1"] = 500

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.deleted == 0
    assert len(result.errors) == 1
    assert result.details[0]["action"] == "error"
    assert _reload(db_session, block).external_event_id == "evt-1"


@pytest.mark.asyncio
async def test_unparseable_event_is_an_error(db_session, google_client, fake_google, connected):
    add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = {"id": "evt-1", "summary": "Deep work", "start": {}, "end": {}}

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert len(result.errors) == 1
    assert result.synced == 0


@pytest.mark.asyncio
async def test_conflict_without_settings_keeps_local_block(db_session, google_client, fake_google, connected):
    block = add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event("evt-1", start="2026-03-11T14:00:00Z", end="2026-03-11T15:30:00Z")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.conflicts == 1
    assert result.synced == 0
    assert result.details[0]["oldDate"] == "2026-03-10"
    assert result.details[0]["newDate"] == "2026-03-11"
    block = _reload(db_session, block)
    assert block.block_date == date(2026, 3, 10)
    assert block.start_time == time(9, 0)


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ["app_wins", "ask"])
async def test_local_wins_policies_count_conflicts(db_session, google_client, fake_google, connected, policy):
    add_settings(db_session, conflict_resolution=policy)
    block = add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event("evt-1", summary="Renamed in Google")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.conflicts == 1
    assert _reload(db_session, block).activity_name == "Deep work"


@pytest.mark.asyncio
async def test_calendar_wins_applies_remote_changes(db_session, google_client, fake_google, connected):
    add_settings(db_session, conflict_resolution="calendar_wins")
    block = add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event(
        "evt-1", start="2026-03-11T14:00:00Z", end="2026-03-11T15:30:00Z", summary="Strategy review"
    )

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.synced == 1
    assert result.conflicts == 0
    assert result.details[0]["action"] == "updated"
    block = _reload(db_session, block)
    assert block.block_date == date(2026, 3, 11)
    assert block.start_time == time(14, 0)
    assert block.end_time == time(15, 30)
    assert block.duration_minutes == 90
    assert block.activity_name == "Strategy review"


@pytest.mark.asyncio
async def test_times_are_read_in_profile_timezone(db_session, google_client, fake_google):
    add_profile(db_session, timezone="Europe/Berlin")
    add_integration(db_session)
    add_settings(db_session, conflict_resolution="calendar_wins")
    block = add_time_block(db_session, "evt-1", start=time(10, 0), end=time(11, 0))
    # 09:00 UTC is 10:00 in Berlin in March (CET)
    fake_google.events["evt-1"] = google_event("evt-1")

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert result.details[0]["action"] == "skipped"
    assert _reload(db_session, block).start_time == time(10, 0)


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_needs_check_records_are_marked_synced(db_session, google_client, connected):
    add_sync_record(db_session, "action-1", "evt-1", status=SYNC_STATUS_NEEDS_CHECK)
    add_sync_record(db_session, "action-2", "evt-2", user_id=OTHER_USER_ID, status=SYNC_STATUS_NEEDS_CHECK)

    await sync_from_google(db_session, USER_ID, google_client)

    db_session.expire_all()
    statuses = {r.entity_id: r.sync_status for r in db_session.query(CalendarSyncRecord)}
    assert statuses == {"action-1": SYNC_STATUS_SYNCED, "action-2": SYNC_STATUS_NEEDS_CHECK}


@pytest.mark.asyncio
async def test_records_for_failed_events_stay_flagged(db_session, google_client, fake_google, connected):
    add_time_block(db_session, "evt-1")
    add_time_block(db_session, "evt-2")
    fake_google.event_status["evt-1"] = 500
    fake_google.events["evt-2"] = google_event("evt-2")
    add_sync_record(db_session, "action-1", "evt-1", status=SYNC_STATUS_NEEDS_CHECK)
    add_sync_record(db_session, "action-2", "evt-2", status=SYNC_STATUS_NEEDS_CHECK)

    result = await sync_from_google(db_session, USER_ID, google_client)

    assert len(result.errors) == 1
    db_session.expire_all()
    statuses = {r.entity_id: r.sync_status for r in db_session.query(CalendarSyncRecord)}
    assert statuses == {"action-1": SYNC_STATUS_NEEDS_CHECK, "action-2": SYNC_STATUS_SYNCED}


@pytest.mark.asyncio
async def test_records_flagged_during_a_sync_stay_flagged(db_session, fake_google, connected):
    add_time_block(db_session, "evt-1")
    fake_google.events["evt-1"] = google_event("evt-1")
    add_sync_record(db_session, "action-1", "evt-1")

    def handler(request: httpx.Request) -> httpx.Response:
        response = fake_google.handler(request)
        if request.url.path.endswith("/events/evt-1"):
            # A notification lands after the event was read
            mark_records_needing_check(db_session, USER_ID)
        return response

    google = GoogleCalendarClient(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://app.test/api/calendar/oauth/callback",
        transport=httpx.MockTransport(handler),
    )

    await sync_from_google(db_session, USER_ID, google)

    db_session.expire_all()
    assert db_session.query(CalendarSyncRecord).one().sync_status == SYNC_STATUS_NEEDS_CHECK


@pytest.mark.asyncio
async def test_last_synced_at_is_stamped_on_existing_settings(db_session, google_client, connected):
    add_settings(db_session)

    await sync_from_google(db_session, USER_ID, google_client)

    db_session.expire_all()
    assert db_session.query(CalendarSyncSettings).one().last_synced_at is not None


@pytest.mark.asyncio
async def test_no_settings_row_is_created_by_sync(db_session, google_client, connected):
    await sync_from_google(db_session, USER_ID, google_client)

    assert db_session.query(CalendarSyncSettings).count() == 0


def test_manual_sync_route_requires_connection(client, auth_headers):
    response = client.post("/calendar/sync", headers=auth_headers)

    assert response.status_code == 401
    assert "error" in response.json()


def test_manual_sync_route_returns_summary(client, db_session, fake_google, auth_headers):
    add_profile(db_session)
    add_integration(db_session)
    add_time_block(db_session, "evt-gone")

    response = client.post("/calendar/sync", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["deleted"] == 1
    assert set(body) == {"success", "synced", "deleted", "conflicts", "errors", "details"}


# ---------------------------------------------------------------------------
# Event parsing and auto sync selection
# ---------------------------------------------------------------------------


def test_all_day_event_spans_whole_day():
    event = {"start": {"date": "2026-04-01"}, "end": {"date": "2026-04-02"}}

    assert extract_event_datetime(event, ZoneInfo("UTC")) == (date(2026, 4, 1), time(0, 0), time(23, 59))


def test_offset_datetimes_are_converted():
    event = google_event("e", start="2026-07-01T18:15:00-04:00", end="2026-07-01T19:00:00-04:00")

    assert extract_event_datetime(event, ZoneInfo("UTC")) == (date(2026, 7, 1), time(22, 15), time(23, 0))


def test_auto_sync_selection(db_session):
    now = datetime(2026, 5, 1, 12, 0)
    for user_id in ("due-stale", "fresh", "fresh-but-flagged", "disabled", "disconnected", "never"):
        add_profile(db_session, user_id=user_id)
        add_integration(db_session, user_id=user_id, is_active=user_id != "disconnected")

    add_settings(db_session, "due-stale", auto_sync_enabled=True, last_synced_at=now - timedelta(minutes=90))
    add_settings(db_session, "fresh", auto_sync_enabled=True, last_synced_at=now - timedelta(minutes=10))
    add_settings(db_session, "fresh-but-flagged", auto_sync_enabled=True, last_synced_at=now - timedelta(minutes=10))
    add_settings(db_session, "disabled", auto_sync_enabled=False)
    add_settings(db_session, "disconnected", auto_sync_enabled=True)
    add_settings(db_session, "never", auto_sync_enabled=True)
    add_sync_record(db_session, "action-1", "evt-1", user_id="fresh-but-flagged", status=SYNC_STATUS_NEEDS_CHECK)

    due = find_users_due_for_auto_sync(db_session, now=now)

    assert sorted(due) == ["due-stale", "fresh-but-flagged", "never"]
