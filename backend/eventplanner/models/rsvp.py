"""RSVP ORM model — one row per (event, user), never hard-deleted."""
import enum
from sqlalchemy import Column, Boolean, DateTime, ForeignKey, String, Enum as SAEnum
from sqlalchemy.sql import func
from eventplanner.database import Base


class RsvpResponse(str, enum.Enum):
    yes = "YES"
    no = "NO"
    maybe = "MAYBE"


class Rsvp(Base):
    __tablename__ = "rsvps"

    event_id = Column(String(36), ForeignKey("events.event_id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.user_id"), primary_key=True)
    response = Column(SAEnum(RsvpResponse), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=False)
    needs_reconfirmation = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
