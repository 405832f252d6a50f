"""Waitlist queue: FIFO entries, time-boxed seat offers and promotion."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from eventplanner.config import settings
from eventplanner.domain_events import WaitlistSpotAvailable
from eventplanner.errors import AlreadyQueued, InvalidTransition, NoActiveOffer, NotFound, NotFull
from eventplanner.models.event import Event
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.models.waitlist import WaitlistEntry
from eventplanner.services import notification_fanout, rsvp_store
from eventplanner.services.event_state import accepts_rsvps, observed_state_of, state_label
from eventplanner.services.guards import lock_event, require_user
from eventplanner.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitlistStatus:
    entry: Optional[WaitlistEntry]
    position: Optional[int]
    total_pending: int
    offer_active: bool

    @property
    def on_waitlist(self) -> bool:
        return self.entry is not None


def get_entry(db: Session, event_id: str, user_id: str) -> Optional[WaitlistEntry]:
    return db.query(WaitlistEntry).filter(
        WaitlistEntry.event_id == event_id,
        WaitlistEntry.user_id == user_id,
    ).first()


def pending_entries(db: Session, event_id: str) -> list[WaitlistEntry]:
    """Entries still waiting for an offer, in join order."""
    return (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.event_id == event_id, WaitlistEntry.notified_at.is_(None))
        .order_by(WaitlistEntry.entry_id)
        .all()
    )


def pending_count(db: Session, event_id: str) -> int:
    return db.query(func.count(WaitlistEntry.entry_id)).filter(
        WaitlistEntry.event_id == event_id,
        WaitlistEntry.notified_at.is_(None),
    ).scalar() or 0


def position_of(db: Session, entry: WaitlistEntry) -> Optional[int]:
    """1-based rank among pending entries; None once an offer went out."""
    if entry.notified_at is not None:
        return None
    return db.query(func.count(WaitlistEntry.entry_id)).filter(
        WaitlistEntry.event_id == entry.event_id,
        WaitlistEntry.notified_at.is_(None),
        WaitlistEntry.entry_id <= entry.entry_id,
    ).scalar()


def _ensure_accepting(event: Event, now: datetime) -> None:
    if not accepts_rsvps(event, now):
        state = observed_state_of(event, now)
        raise InvalidTransition(
            f"This event is not accepting RSVPs (state: {state_label(state)}).",
            state=state.value,
        )


def _offer(db: Session, event: Event, entry: WaitlistEntry, now: datetime) -> WaitlistEntry:
    entry.notified_at = now
    entry.expires_at = now + timedelta(hours=settings.WAITLIST_OFFER_HOURS)
    notification_fanout.publish(db, WaitlistSpotAvailable(
        event_id=event.event_id,
        title=event.title,
        user_id=entry.user_id,
        expires_at=as_utc(entry.expires_at),
    ), now=now)
    logger.info(
        "Offered a seat on event %s to user %s until %s",
        event.event_id, entry.user_id, entry.expires_at.isoformat(),
    )
    return entry


def fill_free_seats(db: Session, event: Event, now: datetime, max_offers: Optional[int] = None) -> list[WaitlistEntry]:
    """Offer seats to the head of the queue while seats are free.

    At most ``max_offers`` entries are promoted (all free seats when None).
    Runs under the caller's event lock and does not commit.
    """
    db.flush()
    offered = []
    for entry in pending_entries(db, event.event_id):
        if max_offers is not None and len(offered) >= max_offers:
            break
        if event.capacity is not None and rsvp_store.capacity_snapshot(db, event, now).remaining <= 0:
            break
        offered.append(_offer(db, event, entry, now))
        db.flush()
    return offered


def release_lapsed_offers(db: Session, event: Event, now: datetime) -> int:
    """Drop offers whose window has passed and offer their seats to the next in line.

    Runs under the caller's event lock and does not commit.
    """
    stale = [
        entry for entry in db.query(WaitlistEntry).filter(
            WaitlistEntry.event_id == event.event_id,
            WaitlistEntry.notified_at.isnot(None),
        ).all()
        if as_utc(entry.expires_at) < as_utc(now)
    ]
    if not stale:
        return 0
    for entry in stale:
        logger.info("Waitlist offer for user %s on event %s expired", entry.user_id, event.event_id)
        db.delete(entry)
    if accepts_rsvps(event, now):
        fill_free_seats(db, event, now, max_offers=len(stale))
    return len(stale)


def join(db: Session, event_id: str, user_id: str, now: Optional[datetime] = None) -> WaitlistEntry:
    now = now or utc_now()
    event = lock_event(db, event_id)
    require_user(db, user_id)
    _ensure_accepting(event, now)
    if release_lapsed_offers(db, event, now):
        db.commit()
        event = lock_event(db, event_id)
    if not event.waitlist_enabled:
        raise InvalidTransition("Waitlist is not enabled for this event.")
    if event.capacity is None:
        raise NotFull("Event has no capacity limit. You can RSVP directly.")

    rsvp = rsvp_store.get_rsvp(db, event_id, user_id)
    if rsvp is not None and rsvp.response == RsvpResponse.yes:
        raise InvalidTransition("You are already confirmed for this event.")
    if get_entry(db, event_id, user_id) is not None:
        raise AlreadyQueued("You are already on the waitlist.")
    if not rsvp_store.capacity_snapshot(db, event, now).is_full:
        raise NotFull("Event is not at capacity. You can RSVP directly.")

    entry = WaitlistEntry(event_id=event_id, user_id=user_id, created_at=now)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("User %s joined the waitlist for event %s", user_id, event_id)
    return entry


def leave(db: Session, event_id: str, user_id: str, now: Optional[datetime] = None) -> None:
    """Drop the user's entry; giving up a live offer passes the seat on."""
    now = now or utc_now()
    event = lock_event(db, event_id)
    entry = get_entry(db, event_id, user_id)
    if entry is None:
        raise NotFound("You are not on the waitlist.")

    held = rsvp_store.offer_active(entry, now)
    db.delete(entry)
    if held and accepts_rsvps(event, now):
        fill_free_seats(db, event, now, max_offers=1)
    db.commit()
    logger.info("User %s left the waitlist for event %s", user_id, event_id)


def promote_next(db: Session, event_id: str, now: Optional[datetime] = None) -> Optional[WaitlistEntry]:
    """Offer the next free seat to the head of the queue, if there is one."""
    now = now or utc_now()
    event = lock_event(db, event_id)
    offered = fill_free_seats(db, event, now, max_offers=1)
    db.commit()
    return offered[0] if offered else None


def confirm_waitlist_spot(db: Session, event_id: str, user_id: str, now: Optional[datetime] = None) -> Rsvp:
    """Turn a live offer into a YES RSVP.

    The seat was reserved when the offer went out, so capacity is not
    re-checked here.
    """
    now = now or utc_now()
    event = lock_event(db, event_id)
    _ensure_accepting(event, now)
    release_lapsed_offers(db, event, now)

    entry = get_entry(db, event_id, user_id)
    if entry is None or not rsvp_store.offer_active(entry, now):
        db.commit()
        raise NoActiveOffer("You don't have an active waitlist offer for this event.")

    db.delete(entry)
    rsvp, _ = rsvp_store.record_response(db, event, user_id, RsvpResponse.yes, now)
    db.commit()
    db.refresh(rsvp)
    logger.info("User %s confirmed a waitlist seat on event %s", user_id, event_id)
    return rsvp


def expire_stale_offers(db: Session, event_id: str, now: Optional[datetime] = None) -> int:
    """Remove lapsed offers and offer their seats onwards. Returns how many lapsed."""
    now = now or utc_now()
    event = lock_event(db, event_id)
    expired = release_lapsed_offers(db, event, now)
    db.commit()
    return expired


def expire_all_stale_offers(db: Session, now: Optional[datetime] = None) -> int:
    """Sweep every event with a lapsed offer; meant for a periodic job."""
    now = now or utc_now()
    event_ids = sorted({
        entry.event_id
        for entry in db.query(WaitlistEntry).filter(WaitlistEntry.notified_at.isnot(None)).all()
        if as_utc(entry.expires_at) < as_utc(now)
    })
    total = 0
    for event_id in event_ids:
        total += expire_stale_offers(db, event_id, now)
    if total:
        logger.info("Expired %d waitlist offers across %d events", total, len(event_ids))
    return total


def waitlist_status(db: Session, event_id: str, user_id: str, now: Optional[datetime] = None) -> WaitlistStatus:
    now = now or utc_now()
    expire_stale_offers(db, event_id, now)
    entry = get_entry(db, event_id, user_id)
    return WaitlistStatus(
        entry=entry,
        position=position_of(db, entry) if entry else None,
        total_pending=pending_count(db, event_id),
        offer_active=bool(entry and rsvp_store.offer_active(entry, now)),
    )
