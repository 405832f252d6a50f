"""Lookups and authorization checks shared by the service layer."""
from sqlalchemy.orm import Session

from eventplanner.errors import NotFound, NotOrganizer
from eventplanner.models.event import Event, EventOrganizer
from eventplanner.models.user import User


def get_event(db: Session, event_id: str) -> Event:
    event = db.query(Event).filter(Event.event_id == event_id).first()
    if not event:
        raise NotFound("Event not found", event_id=event_id)
    return event


def lock_event(db: Session, event_id: str) -> Event:
    """Load the event under a row lock.

    Every admission decision for an event runs behind this lock, so two
    concurrent requests never read the same confirmed count.
    """
    event = db.query(Event).filter(Event.event_id == event_id).with_for_update().first()
    if not event:
        raise NotFound("Event not found", event_id=event_id)
    return event


def require_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.user_id == user_id).first()
    if not user:
        raise NotFound("User not found", user_id=user_id)
    return user


def is_organizer(db: Session, event: Event, user_id: str) -> bool:
    if event.creator_id == user_id:
        return True
    return db.query(EventOrganizer).filter(
        EventOrganizer.event_id == event.event_id,
        EventOrganizer.user_id == user_id,
    ).first() is not None


def require_organizer(db: Session, event: Event, user_id: str) -> None:
    """Only organizers may change event state or message attendees."""
    if not is_organizer(db, event, user_id):
        raise NotOrganizer("Only an organizer may perform this action on the event.")
