"""Event and EventOrganizer ORM models."""
import uuid
import enum
from sqlalchemy import Column, String, Text, Boolean, DateTime, Integer, ForeignKey, Enum as SAEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from eventplanner.database import Base


class EventState(str, enum.Enum):
    draft = "DRAFT"
    published = "PUBLISHED"
    closed = "CLOSED"
    ongoing = "ONGOING"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


TERMINAL_STATES = frozenset({EventState.completed, EventState.cancelled})


class OrganizerRole(str, enum.Enum):
    organizer = "ORGANIZER"


class Event(Base):
    __tablename__ = "events"

    event_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    date_time = Column(DateTime(timezone=True), nullable=False)
    end_date_time = Column(DateTime(timezone=True), nullable=True)
    timezone = Column(String(50), nullable=False, default="UTC")  # IANA tz
    location = Column(String(500), nullable=False, default="")
    notes = Column(Text, nullable=True)
    capacity = Column(Integer, nullable=True)  # None = unlimited
    waitlist_enabled = Column(Boolean, nullable=False, default=False)
    rsvp_deadline = Column(DateTime(timezone=True), nullable=True)
    state = Column(SAEnum(EventState), nullable=False, default=EventState.draft)
    creator_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_message = Column(String(1000), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    organizers = relationship("EventOrganizer", back_populates="event", cascade="all, delete-orphan")


class EventOrganizer(Base):
    __tablename__ = "event_organizers"

    event_id = Column(String(36), ForeignKey("events.event_id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.user_id"), primary_key=True)
    role = Column(SAEnum(OrganizerRole), nullable=False, default=OrganizerRole.organizer)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    event = relationship("Event", back_populates="organizers")
