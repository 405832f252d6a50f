"""NotificationRecord and OutboxEvent ORM models."""
import uuid
import enum
from sqlalchemy import Column, Boolean, Integer, String, DateTime, JSON, ForeignKey, Enum as SAEnum
from sqlalchemy.sql import func
from eventplanner.database import Base


class NotificationType(str, enum.Enum):
    event_updated = "EVENT_UPDATED"
    event_cancelled = "EVENT_CANCELLED"
    rsvp_reconfirm = "RSVP_RECONFIRM"
    waitlist_spot_available = "WAITLIST_SPOT_AVAILABLE"
    new_rsvp = "NEW_RSVP"
    rsvp_changed = "RSVP_CHANGED"


class NotificationRecord(Base):
    __tablename__ = "notifications"

    notification_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False, index=True)
    type = Column(SAEnum(NotificationType), nullable=False)
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=True)
    message = Column(String(1000), nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    dedupe_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """A domain event waiting for fan-out."""

    __tablename__ = "outbox_events"

    outbox_id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False)
    actor_user_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True, index=True)
