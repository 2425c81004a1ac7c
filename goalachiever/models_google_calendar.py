"""
Google Calendar Integration Models
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from .database import Base
from .models import generate_uuid

GOOGLE_CALENDAR_PROVIDER = "google_calendar"

SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_NEEDS_CHECK = "needs_check"
SYNC_STATUS_ERROR = "error"

CONFLICT_POLICIES = ("app_wins", "calendar_wins", "ask")

# Returned for users without a settings row, and used as column defaults on first insert
DEFAULT_SYNC_SETTINGS = {
    "sync_quarterly_targets": True,
    "sync_monthly_targets": True,
    "sync_weekly_targets": True,
    "sync_daily_actions": True,
    "quarterly_color_id": "5",
    "monthly_color_id": "9",
    "weekly_color_id": "10",
    "daily_color_id": "1",
    "auto_sync_enabled": False,
    "sync_interval_minutes": 60,
    "two_way_sync_enabled": False,
    "conflict_resolution": "app_wins",
    "last_synced_at": None,
}


class UserIntegration(Base):
    __tablename__ = "user_integrations"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_user_integrations_user_provider"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default=GOOGLE_CALENDAR_PROVIDER)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expiry = Column(DateTime, nullable=False)
    scopes = Column(Text, nullable=True)

    provider_email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CalendarSyncSettings(Base):
    __tablename__ = "calendar_sync_settings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)

    # Which goal levels are pushed to the calendar
    sync_quarterly_targets = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["sync_quarterly_targets"])
    sync_monthly_targets = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["sync_monthly_targets"])
    sync_weekly_targets = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["sync_weekly_targets"])
    sync_daily_actions = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["sync_daily_actions"])

    # Google Calendar color ids ("1"-"11")
    quarterly_color_id = Column(String(4), default=DEFAULT_SYNC_SETTINGS["quarterly_color_id"])
    monthly_color_id = Column(String(4), default=DEFAULT_SYNC_SETTINGS["monthly_color_id"])
    weekly_color_id = Column(String(4), default=DEFAULT_SYNC_SETTINGS["weekly_color_id"])
    daily_color_id = Column(String(4), default=DEFAULT_SYNC_SETTINGS["daily_color_id"])

    auto_sync_enabled = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["auto_sync_enabled"])
    sync_interval_minutes = Column(Integer, default=DEFAULT_SYNC_SETTINGS["sync_interval_minutes"])

    two_way_sync_enabled = Column(Boolean, default=DEFAULT_SYNC_SETTINGS["two_way_sync_enabled"])
    conflict_resolution = Column(String(20), default=DEFAULT_SYNC_SETTINGS["conflict_resolution"])

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CalendarSyncRecord(Base):
    __tablename__ = "calendar_sync_records"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", name="calendar_sync_entity_idx"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    # quarterly_target, monthly_target, weekly_target, daily_action
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)

    google_event_id = Column(String(255), nullable=False, index=True)
    google_calendar_id = Column(String(255), default="primary")

    sync_status = Column(String(20), default=SYNC_STATUS_SYNCED, index=True)
    last_synced_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CalendarWebhookChannel(Base):
    __tablename__ = "calendar_webhook_channels"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    channel_id = Column(String(255), nullable=False, unique=True)  # Our UUID for the channel
    resource_id = Column(String(255), nullable=False)  # Google's resource ID
    expiration = Column(DateTime, nullable=True)
    token = Column(String(255), nullable=True)  # Verification token echoed in X-Goog-Channel-Token
    calendar_id = Column(String(255), default="primary")
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
