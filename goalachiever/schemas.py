from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

ColorId = Optional[str]
COLOR_ID_PATTERN = "^(1[01]|[1-9])$"  # Google Calendar event colors 1-11


class SyncSettingsUpdate(BaseModel):
    """Partial update; only keys sent by the client are written"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sync_quarterly_targets: Optional[bool] = Field(None, alias="syncQuarterlyTargets")
    sync_monthly_targets: Optional[bool] = Field(None, alias="syncMonthlyTargets")
    sync_weekly_targets: Optional[bool] = Field(None, alias="syncWeeklyTargets")
    sync_daily_actions: Optional[bool] = Field(None, alias="syncDailyActions")
    quarterly_color_id: ColorId = Field(None, alias="quarterlyColorId", pattern=COLOR_ID_PATTERN)
    monthly_color_id: ColorId = Field(None, alias="monthlyColorId", pattern=COLOR_ID_PATTERN)
    weekly_color_id: ColorId = Field(None, alias="weeklyColorId", pattern=COLOR_ID_PATTERN)
    daily_color_id: ColorId = Field(None, alias="dailyColorId", pattern=COLOR_ID_PATTERN)
    auto_sync_enabled: Optional[bool] = Field(None, alias="autoSyncEnabled")
    sync_interval_minutes: Optional[int] = Field(None, alias="syncIntervalMinutes", ge=5, le=1440)
    two_way_sync_enabled: Optional[bool] = Field(None, alias="twoWaySyncEnabled")
    conflict_resolution: Optional[Literal["app_wins", "calendar_wins", "ask"]] = Field(
        None, alias="conflictResolution"
    )

    def changes(self) -> dict:
        """Column name -> value for the keys actually sent (nulls are ignored)"""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class PushToCalendarRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    levels: Optional[List[Literal["quarterly", "monthly", "weekly", "daily"]]] = None
    vision_id: Optional[str] = Field(None, alias="visionId")
    start_date: Optional[date] = Field(None, alias="startDate")
    end_date: Optional[date] = Field(None, alias="endDate")

    @field_validator("end_date")
    @classmethod
    def validate_date_range(cls, v: Optional[date], info: ValidationInfo) -> Optional[date]:
        if v is None:
            return v
        start = info.data.get("start_date")
        if start is None:
            raise ValueError("endDate requires startDate")
        if v < start:
            raise ValueError("endDate must not be before startDate")
        return v


class WatchChannelResponse(BaseModel):
    channelId: str
    resourceId: str
    expiration: Optional[str] = None


class PrincipalResponse(BaseModel):
    kind: str
    userId: str
    email: Optional[str] = None
