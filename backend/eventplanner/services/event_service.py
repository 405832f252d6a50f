"""Event service: lifecycle transitions for organizers.

Every stored transition locks the event row, checks organizer rights and the
observed state, bumps ``version`` and writes an ``EventMutation`` ledger row.
Attendee-visible consequences are appended to the outbox as domain events.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import pytz
from sqlalchemy.orm import Session

from eventplanner.domain_events import EventCancelled, EventUpdated
from eventplanner.errors import InvalidTransition, ValidationFailed
from eventplanner.models.event import Event, EventOrganizer, EventState
from eventplanner.models.event_mutation import ActionType, EventMutation
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.services import notification_fanout, rsvp_store, waitlist_service
from eventplanner.services.event_state import (
    accepts_rsvps,
    can_be_cancelled,
    observed_state_of,
    state_label,
)
from eventplanner.services.guards import get_event, lock_event, require_organizer, require_user
from eventplanner.services.rsvp_store import CapacitySnapshot
from eventplanner.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)

# Changing any of these on a live event asks YES holders to reconfirm.
MATERIAL_FIELDS = ("date_time", "location", "capacity")

UPDATABLE_FIELDS = (
    "title",
    "description",
    "date_time",
    "end_date_time",
    "timezone",
    "location",
    "notes",
    "capacity",
    "waitlist_enabled",
    "rsvp_deadline",
)

REQUIRED_FOR_PUBLISH = ("title", "description", "date_time", "location")


@dataclass(frozen=True)
class EventStateView:
    event: Event
    observed_state: EventState
    accepts_rsvps: bool
    capacity: CapacitySnapshot
    pending_waitlist: int

    @property
    def label(self) -> str:
        return state_label(self.observed_state)


@dataclass(frozen=True)
class CancelResult:
    event: Event
    notified_count: int


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _event_snapshot(event: Event) -> dict[str, Any]:
    """Serialize an event to a JSON-safe dict for the mutation ledger."""
    return {
        "event_id": event.event_id,
        "title": event.title,
        "date_time": _iso(event.date_time),
        "end_date_time": _iso(event.end_date_time),
        "timezone": event.timezone,
        "location": event.location,
        "capacity": event.capacity,
        "waitlist_enabled": event.waitlist_enabled,
        "rsvp_deadline": _iso(event.rsvp_deadline),
        "state": event.state.value if event.state else None,
        "version": event.version,
    }


def _record_mutation(
    db: Session,
    event: Event,
    actor_user_id: str,
    action: ActionType,
    before: Optional[dict[str, Any]],
) -> EventMutation:
    mutation = EventMutation(
        event_id=event.event_id,
        actor_user_id=actor_user_id,
        action_type=action,
        before_snapshot=before,
        after_snapshot=_event_snapshot(event),
        idempotency_key=str(uuid.uuid4()),
    )
    db.add(mutation)
    return mutation


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _check_version(event: Event, version: Optional[int]) -> None:
    """Optimistic locking; callers that pass no version skip the check."""
    if version is not None and event.version != version:
        raise InvalidTransition(
            f"Version mismatch: expected {event.version}, got {version}. Re-fetch and retry.",
            current_version=event.version,
        )


def _validate_timezone(name: str) -> None:
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationFailed(f"Unknown timezone '{name}'", timezone=name)


def _validate_schedule(date_time: datetime, end_date_time: Optional[datetime]) -> None:
    if end_date_time is not None and as_utc(end_date_time) <= as_utc(date_time):
        raise ValidationFailed("End time must be after the start time")


def _validate_capacity(capacity: Optional[int]) -> None:
    if capacity is not None and capacity < 1:
        raise ValidationFailed("Capacity must be at least 1, or empty for unlimited")


def create_event(
    db: Session,
    creator_id: str,
    title: str,
    date_time: datetime,
    description: str = "",
    location: str = "",
    end_date_time: Optional[datetime] = None,
    timezone: str = "UTC",
    notes: Optional[str] = None,
    capacity: Optional[int] = None,
    waitlist_enabled: bool = False,
    rsvp_deadline: Optional[datetime] = None,
) -> Event:
    """Create a DRAFT event; the creator becomes its first organizer."""
    require_user(db, creator_id)
    _validate_timezone(timezone)
    _validate_schedule(date_time, end_date_time)
    _validate_capacity(capacity)

    event = Event(
        creator_id=creator_id,
        title=title,
        description=description,
        date_time=date_time,
        end_date_time=end_date_time,
        timezone=timezone,
        location=location,
        notes=notes,
        capacity=capacity,
        waitlist_enabled=waitlist_enabled,
        rsvp_deadline=rsvp_deadline,
        state=EventState.draft,
        version=1,
    )
    db.add(event)
    db.flush()
    db.add(EventOrganizer(event_id=event.event_id, user_id=creator_id))

    _record_mutation(db, event, creator_id, ActionType.create, before=None)
    db.commit()
    db.refresh(event)
    logger.info("Created event '%s' (%s) by organizer %s", title, event.event_id, creator_id)
    return event


def add_organizer(db: Session, event_id: str, actor_user_id: str, user_id: str) -> EventOrganizer:
    event = lock_event(db, event_id)
    require_organizer(db, event, actor_user_id)
    require_user(db, user_id)
    organizer = db.query(EventOrganizer).filter(
        EventOrganizer.event_id == event_id,
        EventOrganizer.user_id == user_id,
    ).first()
    if organizer is None:
        organizer = EventOrganizer(event_id=event_id, user_id=user_id)
        db.add(organizer)
        db.commit()
        logger.info("User %s added as organizer of event %s", user_id, event_id)
    return organizer


def publish_event(db: Session, event_id: str, actor_user_id: str, now: Optional[datetime] = None) -> Event:
    """DRAFT -> PUBLISHED, once the required details are filled in."""
    event = lock_event(db, event_id)
    require_organizer(db, event, actor_user_id)

    if event.state != EventState.draft:
        raise InvalidTransition(
            f"Only draft events can be published (state: {state_label(event.state)}).",
            state=event.state.value,
        )
    missing = [name for name in REQUIRED_FOR_PUBLISH if _is_blank(getattr(event, name))]
    if missing:
        raise InvalidTransition(
            f"Cannot publish: missing {', '.join(missing)}.",
            missing=missing,
        )

    before = _event_snapshot(event)
    event.state = EventState.published
    event.version += 1
    _record_mutation(db, event, actor_user_id, ActionType.publish, before)
    db.commit()
    db.refresh(event)
    logger.info("Published event %s", event_id)
    return event


def close_rsvps(db: Session, event_id: str, actor_user_id: str, now: Optional[datetime] = None) -> Event:
    """Organizer closes RSVPs early: PUBLISHED -> CLOSED."""
    now = now or utc_now()
    event = lock_event(db, event_id)
    require_organizer(db, event, actor_user_id)

    observed = observed_state_of(event, now)
    if observed != EventState.published:
        raise InvalidTransition(
            f"RSVPs can only be closed on a published event (state: {state_label(observed)}).",
            state=observed.value,
        )

    before = _event_snapshot(event)
    event.state = EventState.closed
    event.version += 1
    _record_mutation(db, event, actor_user_id, ActionType.close, before)
    db.commit()
    db.refresh(event)
    logger.info("Closed RSVPs for event %s", event_id)
    return event


def _changed_fields(event: Event, updates: dict[str, Any]) -> list[str]:
    changed = []
    for name, value in updates.items():
        current = getattr(event, name)
        if isinstance(current, datetime) or isinstance(value, datetime):
            if as_utc(current) != as_utc(value):
                changed.append(name)
        elif current != value:
            changed.append(name)
    return changed


def update_event(
    db: Session,
    event_id: str,
    actor_user_id: str,
    updates: dict[str, Any],
    version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Event:
    """Apply organizer edits.

    Only fields whose value actually changes are written. A changed
    date/time, location or capacity on a non-draft event flags every YES RSVP
    for reconfirmation and notifies attendees; a grown capacity offers the new
    seats to the waitlist.
    """
    now = now or utc_now()
    event = lock_event(db, event_id)
    require_organizer(db, event, actor_user_id)

    observed = observed_state_of(event, now)
    if observed in (EventState.cancelled, EventState.completed):
        raise InvalidTransition(
            f"Cannot update an event that is {state_label(observed)}.",
            state=observed.value,
        )
    _check_version(event, version)

    unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationFailed(f"Fields cannot be updated: {', '.join(unknown)}", fields=unknown)

    if "timezone" in updates:
        _validate_timezone(updates["timezone"])
    if "capacity" in updates:
        _validate_capacity(updates["capacity"])
    if updates.get("date_time") is None and "date_time" in updates:
        raise ValidationFailed("date_time cannot be cleared")
    _validate_schedule(
        updates.get("date_time", event.date_time),
        updates.get("end_date_time", event.end_date_time),
    )

    changed = _changed_fields(event, updates)
    if not changed:
        return event

    old_capacity = event.capacity
    before = _event_snapshot(event)
    for name in changed:
        setattr(event, name, updates[name])
    event.version += 1

    material = [name for name in changed if name in MATERIAL_FIELDS]
    live = event.state != EventState.draft
    if material and live:
        flagged = db.query(Rsvp).filter(
            Rsvp.event_id == event_id,
            Rsvp.response == RsvpResponse.yes,
        ).update({Rsvp.needs_reconfirmation: True}, synchronize_session=False)
        logger.info("Event %s material change (%s): %d RSVPs need reconfirmation",
                    event_id, ", ".join(material), flagged)
    notification_fanout.publish(db, EventUpdated(
        event_id=event_id,
        actor_user_id=actor_user_id,
        title=event.title,
        material=bool(material) and live,
        changed_fields=material if material else changed,
    ), now=now)

    capacity_grew = "capacity" in changed and (
        event.capacity is None or (old_capacity is not None and event.capacity > old_capacity)
    )
    if capacity_grew and event.waitlist_enabled and accepts_rsvps(event, now):
        offered = waitlist_service.fill_free_seats(db, event, now)
        if offered:
            logger.info("Capacity increase on event %s offered %d waitlist seats", event_id, len(offered))

    _record_mutation(db, event, actor_user_id, ActionType.update, before)
    db.commit()
    db.refresh(event)
    logger.info("Updated event %s to version %d", event_id, event.version)
    return event


def cancel_event(
    db: Session,
    event_id: str,
    actor_user_id: str,
    message: Optional[str] = None,
    version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> CancelResult:
    """Cancel from any non-terminal state.

    Returns the event and how many attendees (non-NO RSVPs and waitlisted
    users) the cancellation notice goes to.
    """
    now = now or utc_now()
    event = lock_event(db, event_id)
    require_organizer(db, event, actor_user_id)

    if not can_be_cancelled(event, now):
        observed = observed_state_of(event, now)
        raise InvalidTransition(
            f"Cannot cancel an event that is {state_label(observed)}.",
            state=observed.value,
        )
    _check_version(event, version)

    before = _event_snapshot(event)
    event.state = EventState.cancelled
    event.cancelled_at = now
    event.cancel_message = message
    event.version += 1

    notified_count = len(notification_fanout.cancellation_recipient_ids(db, event_id))
    notification_fanout.publish(db, EventCancelled(
        event_id=event_id,
        actor_user_id=actor_user_id,
        title=event.title,
        message=message,
    ), now=now)
    _record_mutation(db, event, actor_user_id, ActionType.cancel, before)
    db.commit()
    db.refresh(event)
    logger.info("Cancelled event %s; notifying %d attendees", event_id, notified_count)
    return CancelResult(event=event, notified_count=notified_count)


def get_event_state(db: Session, event_id: str, now: Optional[datetime] = None) -> EventStateView:
    now = now or utc_now()
    event = get_event(db, event_id)
    return EventStateView(
        event=event,
        observed_state=observed_state_of(event, now),
        accepts_rsvps=accepts_rsvps(event, now),
        capacity=rsvp_store.capacity_snapshot(db, event, now),
        pending_waitlist=waitlist_service.pending_count(db, event_id),
    )


def list_events(db: Session, user_id: Optional[str] = None, include_cancelled: bool = False) -> list[Event]:
    """Events overall, or those a user organizes."""
    query = db.query(Event)
    if user_id:
        query = query.join(EventOrganizer).filter(EventOrganizer.user_id == user_id)
    if not include_cancelled:
        query = query.filter(Event.state != EventState.cancelled)
    return query.order_by(Event.date_time).all()


def list_mutations(db: Session, event_id: str) -> list[EventMutation]:
    get_event(db, event_id)
    return (
        db.query(EventMutation)
        .filter(EventMutation.event_id == event_id)
        .order_by(EventMutation.created_at)
        .all()
    )
