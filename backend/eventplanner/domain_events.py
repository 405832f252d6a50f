"""
Domain events emitted by the event, RSVP and waitlist services.

They are appended to the outbox inside the state-changing transaction and
turned into notification records later by ``services.notification_fanout``.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, ClassVar, Optional


@dataclass(kw_only=True)
class DomainEvent:
    """Base domain event, scoped to one planner event."""

    event_type: ClassVar[str] = "domain_event"

    event_id: str
    actor_user_id: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("event_id")
        data.pop("actor_user_id")
        return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in data.items()}

    @classmethod
    def from_payload(cls, event_id: str, actor_user_id: Optional[str], payload: dict[str, Any]) -> "DomainEvent":
        return cls(event_id=event_id, actor_user_id=actor_user_id, **payload)


@dataclass(kw_only=True)
class EventCancelled(DomainEvent):
    """Organizer cancelled the event."""

    event_type: ClassVar[str] = "event.cancelled"

    title: str
    message: Optional[str] = None


@dataclass(kw_only=True)
class EventUpdated(DomainEvent):
    """Organizer changed event details; ``material`` changes need reconfirmation."""

    event_type: ClassVar[str] = "event.updated"

    title: str
    material: bool
    changed_fields: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class RsvpChanged(DomainEvent):
    """An attendee responded for the first time (``previous`` is None) or changed."""

    event_type: ClassVar[str] = "rsvp.changed"

    title: str
    user_id: str
    response: str
    previous: Optional[str] = None


@dataclass(kw_only=True)
class WaitlistSpotAvailable(DomainEvent):
    """A seat was offered to the head of the waitlist."""

    event_type: ClassVar[str] = "waitlist.spot_available"

    title: str
    user_id: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, event_id, actor_user_id, payload):
        payload = dict(payload)
        payload["expires_at"] = datetime.fromisoformat(payload["expires_at"])
        return cls(event_id=event_id, actor_user_id=actor_user_id, **payload)


EVENT_TYPES: dict[str, type[DomainEvent]] = {
    cls.event_type: cls
    for cls in (EventCancelled, EventUpdated, RsvpChanged, WaitlistSpotAvailable)
}
