"""RSVP writes. Admission is decided under the event row lock."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from eventplanner.errors import EventFull, InvalidTransition
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.services import rsvp_store, waitlist_service
from eventplanner.services.event_state import accepts_rsvps, observed_state_of, state_label
from eventplanner.services.guards import get_event, lock_event, require_user
from eventplanner.services.rsvp_store import CapacitySnapshot
from eventplanner.timeutils import utc_now

logger = logging.getLogger(__name__)


def set_rsvp(
    db: Session,
    event_id: str,
    user_id: str,
    response: RsvpResponse,
    now: Optional[datetime] = None,
) -> Rsvp:
    """Record ``user_id``'s answer for the event.

    A YES is refused with ``EventFull`` once confirmed seats plus seats held
    by other users' live waitlist offers reach capacity. Lapsed offers are
    released first, so their seats go to the waitlist rather than to a
    direct RSVP. Moving away from YES hands the freed seat to the head of
    the waitlist.
    """
    now = now or utc_now()
    event = lock_event(db, event_id)
    require_user(db, user_id)

    if not accepts_rsvps(event, now):
        state = observed_state_of(event, now)
        raise InvalidTransition(
            f"This event is not accepting RSVPs (state: {state_label(state)}).",
            state=state.value,
        )

    # Lapsed offers go to the next waitlisted user before anyone else is admitted.
    if waitlist_service.release_lapsed_offers(db, event, now):
        db.commit()
        event = lock_event(db, event_id)

    existing = rsvp_store.get_rsvp(db, event_id, user_id)
    was_yes = existing is not None and existing.response == RsvpResponse.yes

    if response == RsvpResponse.yes and not was_yes and event.capacity is not None:
        snapshot = rsvp_store.capacity_snapshot(db, event, now, exclude_user_id=user_id)
        if snapshot.is_full:
            logger.info("RSVP YES refused for user %s on full event %s", user_id, event_id)
            raise EventFull(waitlist_available=event.waitlist_enabled)

    rsvp, previous = rsvp_store.record_response(db, event, user_id, response, now)

    if response == RsvpResponse.yes:
        entry = waitlist_service.get_entry(db, event_id, user_id)
        if entry is not None:
            db.delete(entry)

    if was_yes and response != RsvpResponse.yes and event.waitlist_enabled and event.capacity is not None:
        waitlist_service.fill_free_seats(db, event, now, max_offers=1)

    db.commit()
    db.refresh(rsvp)
    logger.info(
        "User %s RSVP'd %s to event %s (was %s)",
        user_id, response.value, event_id, previous.value if previous else None,
    )
    return rsvp


def get_rsvp(db: Session, event_id: str, user_id: str) -> Optional[Rsvp]:
    get_event(db, event_id)
    return rsvp_store.get_rsvp(db, event_id, user_id)


def list_rsvps(db: Session, event_id: str, response: Optional[RsvpResponse] = None) -> list[Rsvp]:
    get_event(db, event_id)
    query = db.query(Rsvp).filter(Rsvp.event_id == event_id)
    if response is not None:
        query = query.filter(Rsvp.response == response)
    return query.order_by(Rsvp.responded_at).all()


def capacity_snapshot(db: Session, event_id: str, now: Optional[datetime] = None) -> CapacitySnapshot:
    event = get_event(db, event_id)
    return rsvp_store.capacity_snapshot(db, event, now or utc_now())
