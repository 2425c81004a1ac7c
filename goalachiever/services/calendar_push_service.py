"""
Calendar Push Service
Publishes goals at every planning level as Google Calendar events
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from ..models import DailyAction, MonthlyTarget, QuarterlyTarget, WeeklyTarget
from ..models_google_calendar import (
    DEFAULT_SYNC_SETTINGS,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SYNCED,
    CalendarSyncRecord,
    CalendarSyncSettings,
)
from .calendar_sync_service import get_active_integration, get_settings_row, get_user_timezone, get_valid_access_token
from .google_calendar_service import GoogleAPIError, GoogleCalendarClient

logger = logging.getLogger(__name__)

PUSH_LEVELS = ("quarterly", "monthly", "weekly", "daily")

ENTITY_TYPES = {
    "quarterly": "quarterly_target",
    "monthly": "monthly_target",
    "weekly": "weekly_target",
    "daily": "daily_action",
}

# Settings toggle per level
LEVEL_TOGGLES = {
    "quarterly": "sync_quarterly_targets",
    "monthly": "sync_monthly_targets",
    "weekly": "sync_weekly_targets",
    "daily": "sync_daily_actions",
}

WEEKLY_FOCUS_START = time(9, 0)
WEEKLY_FOCUS_END = time(11, 0)
DAILY_FIRST_HOUR = 9
DAILY_SLOTS = 8
DAILY_DEFAULT_MINUTES = 30


@dataclass
class PendingEvent:
    level: str
    entity_id: str
    body: dict[str, Any]


def build_description(description: Optional[str], level: str) -> str:
    text = description or ""
    text += "\n\n---\nGoal Achiever Pro\n"
    text += f"Level: {level.capitalize()}\n"
    return text


def _level_color(settings: Optional[CalendarSyncSettings], level: str) -> str:
    key = f"{level}_color_id"
    return (getattr(settings, key) if settings else None) or DEFAULT_SYNC_SETTINGS[key]


def _level_enabled(settings: Optional[CalendarSyncSettings], level: str) -> bool:
    if settings is None:
        return True
    return getattr(settings, LEVEL_TOGGLES[level]) is not False


def _timed(value: datetime, tz_name: str) -> dict[str, str]:
    return {"dateTime": value.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": tz_name}


def quarter_bounds(year: int, quarter: int) -> tuple[date, date]:
    """First day of the quarter and the (exclusive) first day of the next one"""
    start = date(year, (quarter - 1) * 3 + 1, 1)
    if quarter == 4:
        return start, date(year + 1, 1, 1)
    return start, date(year, quarter * 3 + 1, 1)


def quarterly_event(target: QuarterlyTarget, color_id: str) -> dict[str, Any]:
    start, end = quarter_bounds(target.year, target.quarter)
    return {
        "summary": f"[GAP Q{target.quarter}] {target.title}",
        "description": build_description(target.description, "quarterly"),
        "start": {"date": start.isoformat()},
        "end": {"date": end.isoformat()},
        "colorId": color_id,
    }


def monthly_event(target: MonthlyTarget, color_id: str) -> dict[str, Any]:
    start = date(target.target_year, target.target_month, 1)
    return {
        "summary": f"[GAP Monthly] {target.title}",
        "description": build_description(target.description, "monthly"),
        "start": {"date": start.isoformat()},
        "end": {"date": (start + timedelta(days=30)).isoformat()},
        "colorId": color_id,
    }


def weekly_event(target: WeeklyTarget, color_id: str, tz_name: str) -> dict[str, Any]:
    monday = target.week_start_date - timedelta(days=target.week_start_date.weekday())
    return {
        "summary": f"[GAP Weekly] {target.title}",
        "description": build_description(target.description, "weekly"),
        "start": _timed(datetime.combine(monday, WEEKLY_FOCUS_START), tz_name),
        "end": _timed(datetime.combine(monday, WEEKLY_FOCUS_END), tz_name),
        "colorId": color_id,
    }


def daily_event(action: DailyAction, index: int, color_id: str, tz_name: str) -> dict[str, Any]:
    start = datetime.combine(action.action_date, time(DAILY_FIRST_HOUR + index % DAILY_SLOTS, 0))
    end = start + timedelta(minutes=action.estimated_minutes or DAILY_DEFAULT_MINUTES)
    return {
        "summary": f"[GAP] {action.title}",
        "description": build_description(action.description, "daily"),
        "start": _timed(start, tz_name),
        "end": _timed(end, tz_name),
        "colorId": color_id,
    }


def collect_events(
    db: Session,
    user_id: str,
    levels: Iterable[str],
    settings: Optional[CalendarSyncSettings],
    tz_name: str,
    vision_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> list[PendingEvent]:
    """Build the event bodies for every non-completed entity of the requested, enabled levels"""
    levels = [level for level in PUSH_LEVELS if level in set(levels) and _level_enabled(settings, level)]
    pending: list[PendingEvent] = []

    if "quarterly" in levels:
        query = db.query(QuarterlyTarget).filter(
            QuarterlyTarget.user_id == user_id, QuarterlyTarget.status != "completed"
        )
        if vision_id:
            query = query.filter(QuarterlyTarget.vision_id == vision_id)
        color = _level_color(settings, "quarterly")
        for target in query.order_by(QuarterlyTarget.year, QuarterlyTarget.quarter).all():
            pending.append(PendingEvent("quarterly", target.id, quarterly_event(target, color)))

    if "monthly" in levels:
        color = _level_color(settings, "monthly")
        targets = (
            db.query(MonthlyTarget)
            .filter(MonthlyTarget.user_id == user_id, MonthlyTarget.status != "completed")
            .order_by(MonthlyTarget.target_year, MonthlyTarget.target_month)
            .all()
        )
        for target in targets:
            pending.append(PendingEvent("monthly", target.id, monthly_event(target, color)))

    if "weekly" in levels:
        color = _level_color(settings, "weekly")
        targets = (
            db.query(WeeklyTarget)
            .filter(WeeklyTarget.user_id == user_id, WeeklyTarget.status != "completed")
            .order_by(WeeklyTarget.week_start_date)
            .all()
        )
        for target in targets:
            pending.append(PendingEvent("weekly", target.id, weekly_event(target, color, tz_name)))

    if "daily" in levels:
        color = _level_color(settings, "daily")
        query = db.query(DailyAction).filter(DailyAction.user_id == user_id, DailyAction.status != "completed")
        if start_date and end_date:
            query = query.filter(DailyAction.action_date >= start_date, DailyAction.action_date <= end_date)
        else:
            query = query.filter(DailyAction.action_date == (start_date or date.today()))
        actions = query.order_by(DailyAction.action_date, DailyAction.created_at, DailyAction.id).all()
        for i, action in enumerate(actions):
            pending.append(PendingEvent("daily", action.id, daily_event(action, i, color, tz_name)))

    return pending


async def _publish(
    google: GoogleCalendarClient,
    access_token: str,
    record: Optional[CalendarSyncRecord],
    body: dict[str, Any],
) -> str:
    """Update the already linked event when there is one, otherwise create it"""
    if record and record.google_event_id:
        try:
            event = await google.update_event(
                access_token, record.google_event_id, body, record.google_calendar_id or "primary"
            )
            return event.get("id") or record.google_event_id
        except GoogleAPIError as e:
            if e.status_code not in (404, 410):
                raise
            logger.info(f"Linked event {record.google_event_id} is gone, creating a new one")

    event = await google.create_event(access_token, body)
    return event["id"]


async def push_goals_to_google(
    db: Session,
    user_id: str,
    google: GoogleCalendarClient,
    levels: Optional[Iterable[str]] = None,
    vision_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> dict[str, Any]:
    """
    Push the user's goals to their primary calendar.

    Raises CalendarNotConnectedError or TokenRefreshError when no usable credential exists.
    Individual event failures are reported per entity.
    """
    integration = get_active_integration(db, user_id)
    access_token = await get_valid_access_token(integration, db, google)

    settings = get_settings_row(db, user_id)
    tz_name = get_user_timezone(db, user_id).key

    pending = collect_events(
        db,
        user_id,
        levels or PUSH_LEVELS,
        settings,
        tz_name,
        vision_id=vision_id,
        start_date=start_date,
        end_date=end_date,
    )
    logger.info(f"📤 Pushing {len(pending)} goal events to Google Calendar for user {user_id}")

    results: list[dict[str, Any]] = []
    synced = failed = 0

    for item in pending:
        entity_type = ENTITY_TYPES[item.level]
        record = (
            db.query(CalendarSyncRecord)
            .filter(CalendarSyncRecord.entity_type == entity_type, CalendarSyncRecord.entity_id == item.entity_id)
            .first()
        )

        try:
            event_id = await _publish(google, access_token, record, item.body)
        except GoogleAPIError as e:
            failed += 1
            logger.warning(f"Failed to push {entity_type} {item.entity_id}: {e}")
            if record:
                record.sync_status = SYNC_STATUS_ERROR
                record.error_message = str(e)
                db.commit()
            results.append({"entityType": entity_type, "entityId": item.entity_id, "success": False, "error": str(e)})
            continue

        now = datetime.utcnow()
        if not record:
            record = CalendarSyncRecord(
                user_id=user_id,
                entity_type=entity_type,
                entity_id=item.entity_id,
                google_calendar_id="primary",
            )
            db.add(record)
        record.google_event_id = event_id
        record.sync_status = SYNC_STATUS_SYNCED
        record.last_synced_at = now
        record.error_message = None
        db.commit()

        synced += 1
        results.append({"entityType": entity_type, "entityId": item.entity_id, "eventId": event_id, "success": True})

    if settings:
        settings.last_synced_at = datetime.utcnow()
        db.commit()

    return {
        "success": True,
        "synced": synced,
        "failed": failed,
        "total": len(results),
        "results": results,
        "message": f"Synced {synced} of {len(results)} items to Google Calendar",
    }
