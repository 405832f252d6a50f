"""RSVP rows and the capacity ledger.

Helpers here never commit; they run inside the caller's locked transaction.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from eventplanner.domain_events import RsvpChanged
from eventplanner.models.event import Event
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.models.waitlist import WaitlistEntry
from eventplanner.services import notification_fanout
from eventplanner.timeutils import as_utc


@dataclass(frozen=True)
class CapacitySnapshot:
    capacity: Optional[int]
    confirmed: int
    held_offers: int

    @property
    def remaining(self) -> Optional[int]:
        if self.capacity is None:
            return None
        return max(0, self.capacity - self.confirmed - self.held_offers)

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and self.confirmed + self.held_offers >= self.capacity


def get_rsvp(db: Session, event_id: str, user_id: str) -> Optional[Rsvp]:
    return db.query(Rsvp).filter(Rsvp.event_id == event_id, Rsvp.user_id == user_id).first()


def confirmed_count(db: Session, event_id: str, exclude_user_id: Optional[str] = None) -> int:
    """Number of YES rows; only these count against capacity."""
    query = db.query(func.count()).select_from(Rsvp).filter(
        Rsvp.event_id == event_id,
        Rsvp.response == RsvpResponse.yes,
    )
    if exclude_user_id is not None:
        query = query.filter(Rsvp.user_id != exclude_user_id)
    return query.scalar() or 0


def offer_active(entry: WaitlistEntry, now: datetime) -> bool:
    """A notified entry holds its seat until ``expires_at``."""
    return (
        entry.notified_at is not None
        and entry.expires_at is not None
        and as_utc(entry.expires_at) >= as_utc(now)
    )


def held_offer_count(db: Session, event_id: str, now: datetime, exclude_user_id: Optional[str] = None) -> int:
    offers = db.query(WaitlistEntry).filter(
        WaitlistEntry.event_id == event_id,
        WaitlistEntry.notified_at.isnot(None),
    ).all()
    return sum(
        1 for entry in offers
        if offer_active(entry, now) and entry.user_id != exclude_user_id
    )


def capacity_snapshot(
    db: Session,
    event: Event,
    now: datetime,
    exclude_user_id: Optional[str] = None,
) -> CapacitySnapshot:
    """Seats taken by YES RSVPs plus seats held by live waitlist offers."""
    return CapacitySnapshot(
        capacity=event.capacity,
        confirmed=confirmed_count(db, event.event_id, exclude_user_id),
        held_offers=held_offer_count(db, event.event_id, now, exclude_user_id),
    )


def record_response(
    db: Session,
    event: Event,
    user_id: str,
    response: RsvpResponse,
    now: datetime,
) -> tuple[Rsvp, Optional[RsvpResponse]]:
    """Upsert the (event, user) row and emit ``RsvpChanged`` when the answer changed.

    Any response, even an unchanged one, counts as a reconfirmation.
    Returns the row and the previous response (None on first response).
    """
    rsvp = get_rsvp(db, event.event_id, user_id)
    previous = rsvp.response if rsvp else None
    if rsvp is None:
        rsvp = Rsvp(event_id=event.event_id, user_id=user_id, response=response, responded_at=now)
        db.add(rsvp)
    else:
        rsvp.response = response
        rsvp.responded_at = now
    rsvp.needs_reconfirmation = False

    if previous != response:
        notification_fanout.publish(db, RsvpChanged(
            event_id=event.event_id,
            actor_user_id=user_id,
            title=event.title,
            user_id=user_id,
            response=response.value,
            previous=previous.value if previous else None,
        ), now=now)
    db.flush()
    return rsvp, previous
