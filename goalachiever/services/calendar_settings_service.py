"""
Calendar Sync Settings Service
"""
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models_google_calendar import DEFAULT_SYNC_SETTINGS, CalendarSyncSettings

logger = logging.getLogger(__name__)

SETTINGS_FIELDS = tuple(k for k in DEFAULT_SYNC_SETTINGS if k != "last_synced_at")


def serialize_settings(settings: CalendarSyncSettings) -> dict[str, Any]:
    data = {field: getattr(settings, field) for field in SETTINGS_FIELDS}
    data["last_synced_at"] = settings.last_synced_at.isoformat() if settings.last_synced_at else None
    return data


def get_sync_settings(db: Session, user_id: str) -> dict[str, Any]:
    """Stored settings for the user, or the defaults when none were saved yet"""
    settings = db.query(CalendarSyncSettings).filter(CalendarSyncSettings.user_id == user_id).first()
    if not settings:
        return dict(DEFAULT_SYNC_SETTINGS)
    return serialize_settings(settings)


def _apply_updates(settings: CalendarSyncSettings, updates: dict[str, Any]) -> None:
    for field, value in updates.items():
        setattr(settings, field, value)
    settings.updated_at = datetime.utcnow()


def update_sync_settings(db: Session, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
    """
    Upsert the user's settings row.
    Only keys present in ``updates`` are written; a first insert fills the rest with defaults.
    """
    unknown = set(updates) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown sync settings: {', '.join(sorted(unknown))}")

    settings = db.query(CalendarSyncSettings).filter(CalendarSyncSettings.user_id == user_id).first()
    if not settings:
        settings = CalendarSyncSettings(user_id=user_id)
        db.add(settings)
    _apply_updates(settings, updates)

    try:
        db.commit()
    except IntegrityError:
        # Row created by a concurrent request; apply the update on top of it
        db.rollback()
        settings = db.query(CalendarSyncSettings).filter(CalendarSyncSettings.user_id == user_id).first()
        if not settings:
            raise
        _apply_updates(settings, updates)
        db.commit()

    db.refresh(settings)
    logger.info(f"⚙️ Calendar sync settings updated for user {user_id}: {sorted(updates)}")
    return serialize_settings(settings)
