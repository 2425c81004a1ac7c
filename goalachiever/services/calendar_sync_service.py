"""
Calendar Sync Service
Reconciles Google Calendar events with locally stored time blocks
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ..models import Profile, TimeBlock
from ..models_google_calendar import (
    DEFAULT_SYNC_SETTINGS,
    GOOGLE_CALENDAR_PROVIDER,
    SYNC_STATUS_NEEDS_CHECK,
    SYNC_STATUS_SYNCED,
    CalendarSyncRecord,
    CalendarSyncSettings,
    UserIntegration,
)
from ..security_utils import TokenDecryptionError, decrypt_token, encrypt_token
from .google_calendar_service import CalendarSyncError, GoogleAPIError, GoogleCalendarClient, strip_gcal_prefix

logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)


class CalendarNotConnectedError(CalendarSyncError):
    """The user has no active Google Calendar credential"""

    pass


class TokenRefreshError(CalendarSyncError):
    """The stored access token is stale and could not be refreshed"""

    pass


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    deleted: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)

    def add_detail(self, block_id: str, action: str, reason: Optional[str] = None, **dates: Optional[str]) -> None:
        detail = {"blockId": block_id, "action": action}
        if reason:
            detail["reason"] = reason
        detail.update({k: v for k, v in dates.items() if v is not None})
        self.details.append(detail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "synced": self.synced,
            "deleted": self.deleted,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
            "details": list(self.details),
        }


# ============================================================================
# CREDENTIALS
# ============================================================================


def get_integration(db: Session, user_id: str) -> Optional[UserIntegration]:
    return (
        db.query(UserIntegration)
        .filter(UserIntegration.user_id == user_id, UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER)
        .first()
    )


def get_active_integration(db: Session, user_id: str) -> UserIntegration:
    integration = get_integration(db, user_id)
    if not integration or not integration.is_active:
        raise CalendarNotConnectedError("Not connected to Google Calendar")
    return integration


async def get_valid_access_token(
    integration: UserIntegration, db: Session, google: GoogleCalendarClient
) -> str:
    """
    Get a valid access token, refreshing and persisting it when it is about to expire
    """
    try:
        if integration.token_expiry and integration.token_expiry > datetime.utcnow() + TOKEN_REFRESH_MARGIN:
            return decrypt_token(integration.access_token)

        logger.info(f"🔄 Google Calendar token expired for user {integration.user_id}, refreshing...")
        refresh_token = decrypt_token(integration.refresh_token)
    except TokenDecryptionError as e:
        raise TokenRefreshError("Stored Google credentials are unreadable. Please reconnect.") from e

    if not refresh_token:
        raise TokenRefreshError("No refresh token available")
    if not google.is_configured:
        raise TokenRefreshError("Missing Google OAuth credentials")

    try:
        tokens = await google.refresh_access_token(refresh_token)
    except GoogleAPIError as e:
        raise TokenRefreshError("Failed to refresh token. Please reconnect Google Calendar.") from e

    integration.access_token = encrypt_token(tokens["access_token"])
    integration.token_expiry = datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
    integration.updated_at = datetime.utcnow()
    db.commit()

    logger.info("✅ Google Calendar token refreshed successfully")
    return tokens["access_token"]


# ============================================================================
# EVENT PARSING
# ============================================================================


def get_user_timezone(db: Session, user_id: str) -> ZoneInfo:
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    tz_name = (profile.timezone if profile else None) or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r} for user {user_id}, using UTC")
        return ZoneInfo("UTC")


def _parse_event_datetime(value: str, tz: ZoneInfo) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def extract_event_datetime(event: dict[str, Any], tz: ZoneInfo) -> Optional[tuple[date, time, time]]:
    """
    Return (date, start, end) for a Google event in the user's timezone,
    or None when the event carries no usable start.
    All-day events span 00:00-23:59.
    """
    start = event.get("start") or {}
    end = event.get("end") or {}
    try:
        if start.get("dateTime"):
            start_dt = _parse_event_datetime(start["dateTime"], tz)
            end_dt = _parse_event_datetime(end.get("dateTime") or start["dateTime"], tz)
            return start_dt.date(), _minute(start_dt.time()), _minute(end_dt.time())
        if start.get("date"):
            return date.fromisoformat(start["date"]), time(0, 0), time(23, 59)
    except (TypeError, ValueError):
        return None
    return None


def _minute(value: time) -> time:
    return value.replace(second=0, microsecond=0, tzinfo=None)


def _hhmm(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value else None


def _duration_minutes(start: time, end: time) -> int:
    minutes = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
    # Crosses midnight
    if minutes < 0:
        minutes += 24 * 60
    return minutes


# ============================================================================
# SYNC STATE
# ============================================================================


def get_settings_row(db: Session, user_id: str) -> Optional[CalendarSyncSettings]:
    return db.query(CalendarSyncSettings).filter(CalendarSyncSettings.user_id == user_id).first()


def get_conflict_policy(db: Session, user_id: str) -> str:
    settings = get_settings_row(db, user_id)
    return (settings.conflict_resolution if settings else None) or DEFAULT_SYNC_SETTINGS["conflict_resolution"]


def mark_records_needing_check(db: Session, user_id: str) -> int:
    """Flag every synced record of the user for re-check. Re-marking is a no-op."""
    count = (
        db.query(CalendarSyncRecord)
        .filter(CalendarSyncRecord.user_id == user_id, CalendarSyncRecord.sync_status == SYNC_STATUS_SYNCED)
        .update(
            {"sync_status": SYNC_STATUS_NEEDS_CHECK, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return count


def get_records_needing_check(db: Session, user_id: str) -> dict[str, Optional[str]]:
    """Map of record id to Google event id for the user's records flagged for re-check"""
    rows = (
        db.query(CalendarSyncRecord.id, CalendarSyncRecord.google_event_id)
        .filter(CalendarSyncRecord.user_id == user_id, CalendarSyncRecord.sync_status == SYNC_STATUS_NEEDS_CHECK)
        .all()
    )
    return {record_id: event_id for record_id, event_id in rows}


def count_records_needing_check(db: Session, user_id: str) -> int:
    return (
        db.query(CalendarSyncRecord)
        .filter(CalendarSyncRecord.user_id == user_id, CalendarSyncRecord.sync_status == SYNC_STATUS_NEEDS_CHECK)
        .count()
    )


def get_sync_status(db: Session, user_id: str) -> dict[str, int]:
    linked = (
        db.query(TimeBlock)
        .filter(TimeBlock.user_id == user_id, TimeBlock.external_event_id.isnot(None))
        .count()
    )
    return {"linkedTimeBlocks": linked, "recordsNeedingCheck": count_records_needing_check(db, user_id)}


# ============================================================================
# SYNC FROM GOOGLE
# ============================================================================


def _unlink_block(block: TimeBlock) -> None:
    block.external_event_id = None
    block.source = "manual"
    block.updated_at = datetime.utcnow()


async def sync_from_google(db: Session, user_id: str, google: GoogleCalendarClient) -> SyncResult:
    """
    Pull the current state of every linked Google event into the user's time blocks.

    Raises CalendarNotConnectedError or TokenRefreshError before any block is touched.
    Per-event failures are reported in the result instead of raised.
    """
    logger.info(f"[Sync From Google] Starting sync for user: {user_id}")

    integration = get_active_integration(db, user_id)
    access_token = await get_valid_access_token(integration, db, google)

    conflict_policy = get_conflict_policy(db, user_id)
    tz = get_user_timezone(db, user_id)
    logger.info(f"[Sync From Google] Conflict resolution policy: {conflict_policy}")

    result = SyncResult()

    # Only marks present before any event is read are cleared at the end
    pending_checks = get_records_needing_check(db, user_id)
    failed_event_ids: set[str] = set()

    linked_blocks = (
        db.query(TimeBlock)
        .filter(TimeBlock.user_id == user_id, TimeBlock.external_event_id.isnot(None))
        .order_by(TimeBlock.block_date, TimeBlock.start_time)
        .all()
    )
    logger.info(f"[Sync From Google] Found linked time blocks: {len(linked_blocks)}")

    for block in linked_blocks:
        try:
            event = await google.get_event(access_token, block.external_event_id)
        except GoogleAPIError as e:
            result.errors.append(f"Failed to fetch event for block {block.id}: {e}")
            result.add_detail(block.id, "error", str(e))
            failed_event_ids.add(strip_gcal_prefix(block.external_event_id))
            continue

        if event is None or event.get("status") == "cancelled":
            reason = "Event deleted in Google Calendar" if event is None else "Event cancelled in Google Calendar"
            logger.info(f"[Sync From Google] {reason}, unlinking block {block.id}")
            _unlink_block(block)
            result.deleted += 1
            result.add_detail(block.id, "deleted", reason)
            continue

        remote = extract_event_datetime(event, tz)
        if remote is None:
            result.errors.append(f"Could not parse date/time for block {block.id}")
            result.add_detail(block.id, "error", "Could not parse event date/time")
            failed_event_ids.add(strip_gcal_prefix(block.external_event_id))
            continue
        remote_date, remote_start, remote_end = remote
        summary = event.get("summary")

        date_changed = remote_date != block.block_date
        start_changed = _hhmm(remote_start) != _hhmm(block.start_time)
        end_changed = _hhmm(remote_end) != _hhmm(block.end_time)
        summary_changed = bool(summary) and summary != block.activity_name

        if not (date_changed or start_changed or end_changed or summary_changed):
            result.add_detail(block.id, "skipped", "Already in sync")
            continue

        old_date = block.block_date.isoformat()
        new_date = remote_date.isoformat()

        if conflict_policy != "calendar_wins":
            # app_wins keeps the local block; ask leaves the decision to the user
            logger.info(f"[Sync From Google] Conflict on block {block.id}, policy {conflict_policy}: keeping local")
            result.conflicts += 1
            result.add_detail(
                block.id, "skipped", f"Conflict resolution: {conflict_policy}", oldDate=old_date, newDate=new_date
            )
            continue

        if date_changed:
            block.block_date = remote_date
        if start_changed:
            block.start_time = remote_start
        if end_changed:
            block.end_time = remote_end
        if summary_changed:
            block.activity_name = summary
        if start_changed or end_changed:
            block.duration_minutes = _duration_minutes(block.start_time, block.end_time)
        block.updated_at = datetime.utcnow()

        result.synced += 1
        result.add_detail(block.id, "updated", oldDate=old_date, newDate=new_date)

    now = datetime.utcnow()
    # Records whose event could not be reconciled stay flagged for the next run
    checked_ids = [
        record_id
        for record_id, event_id in pending_checks.items()
        if not event_id or strip_gcal_prefix(event_id) not in failed_event_ids
    ]
    if checked_ids:
        checked = (
            db.query(CalendarSyncRecord)
            .filter(
                CalendarSyncRecord.id.in_(checked_ids),
                CalendarSyncRecord.sync_status == SYNC_STATUS_NEEDS_CHECK,
            )
            .update(
                {"sync_status": SYNC_STATUS_SYNCED, "last_synced_at": now, "updated_at": now},
                synchronize_session=False,
            )
        )
        logger.info(f"[Sync From Google] Marked {checked} sync records as synced")
    if len(checked_ids) < len(pending_checks):
        logger.warning(
            f"[Sync From Google] {len(pending_checks) - len(checked_ids)} sync records left for re-check after errors"
        )

    settings = get_settings_row(db, user_id)
    if settings:
        settings.last_synced_at = now

    db.commit()

    logger.info(
        f"[Sync From Google] Complete. Updated: {result.synced}, Deleted: {result.deleted}, "
        f"Conflicts: {result.conflicts}, Errors: {len(result.errors)}"
    )
    return result


def find_users_due_for_auto_sync(db: Session, now: Optional[datetime] = None) -> list[str]:
    """
    Users with auto sync on and an active credential whose records need a check
    or whose last sync is older than their interval.
    """
    now = now or datetime.utcnow()
    rows = (
        db.query(CalendarSyncSettings)
        .join(UserIntegration, UserIntegration.user_id == CalendarSyncSettings.user_id)
        .filter(
            CalendarSyncSettings.auto_sync_enabled.is_(True),
            UserIntegration.provider == GOOGLE_CALENDAR_PROVIDER,
            UserIntegration.is_active.is_(True),
        )
        .all()
    )

    due = []
    for settings in rows:
        interval = timedelta(
            minutes=settings.sync_interval_minutes or DEFAULT_SYNC_SETTINGS["sync_interval_minutes"]
        )
        if (
            settings.last_synced_at is None
            or settings.last_synced_at + interval <= now
            or count_records_needing_check(db, settings.user_id) > 0
        ):
            due.append(settings.user_id)
    return due
