import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_uuid():
    """Generate a string UUID primary key"""
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    # Same id as the auth service's user id
    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=False, default="")
    full_name = Column(String(255), nullable=True)
    timezone = Column(String(64), default="UTC")  # IANA name, used to read event times
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    time_blocks = relationship("TimeBlock", back_populates="user", cascade="all, delete-orphan")


class TimeBlock(Base):
    __tablename__ = "time_blocks"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    block_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=True)

    activity_name = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)

    # manual, google_calendar
    source = Column(String(50), default="manual")
    external_event_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("Profile", back_populates="time_blocks")


class QuarterlyTarget(Base):
    __tablename__ = "quarterly_targets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    vision_id = Column(String(36), nullable=True, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    quarter = Column(Integer, nullable=False)  # 1-4
    year = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")  # pending, in_progress, completed
    created_at = Column(DateTime, server_default=func.now())


class MonthlyTarget(Base):
    __tablename__ = "monthly_targets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    target_month = Column(Integer, nullable=False)  # 1-12
    target_year = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    created_at = Column(DateTime, server_default=func.now())


class WeeklyTarget(Base):
    __tablename__ = "weekly_targets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    week_start_date = Column(Date, nullable=False)
    week_end_date = Column(Date, nullable=False)
    status = Column(String(50), default="pending")
    created_at = Column(DateTime, server_default=func.now())


class DailyAction(Base):
    __tablename__ = "daily_actions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    action_date = Column(Date, nullable=False, index=True)
    estimated_minutes = Column(Integer, nullable=True)
    status = Column(String(50), default="pending")
    created_at = Column(DateTime, server_default=func.now())
