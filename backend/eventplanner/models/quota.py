"""Quota models: send counters per (scope, channel) and the weekly mass-send throttle."""
import enum
from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, UniqueConstraint, Enum as SAEnum
from sqlalchemy.sql import func
from eventplanner.database import Base


class Channel(str, enum.Enum):
    email = "EMAIL"
    sms = "SMS"


class QuotaScopeType(str, enum.Enum):
    event = "EVENT"
    organizer = "ORGANIZER"


class QuotaCounter(Base):
    __tablename__ = "quota_counters"
    __table_args__ = (
        UniqueConstraint("scope_type", "scope_id", "channel", name="uq_quota_scope_channel"),
    )

    counter_id = Column(Integer, primary_key=True, autoincrement=True)
    scope_type = Column(SAEnum(QuotaScopeType), nullable=False)
    scope_id = Column(String(36), nullable=False)
    channel = Column(SAEnum(Channel), nullable=False)
    daily_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)
    daily_window_start = Column(Date, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MassSendThrottle(Base):
    """Weekly mass-send budget and spacing for one event and channel."""

    __tablename__ = "mass_send_throttles"
    __table_args__ = (
        UniqueConstraint("event_id", "channel", name="uq_mass_send_event_channel"),
    )

    throttle_id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False)
    channel = Column(SAEnum(Channel), nullable=False)
    weekly_count = Column(Integer, nullable=False, default=0)
    week_start = Column(Date, nullable=False)
    last_sent_at = Column(DateTime(timezone=True), nullable=True)
