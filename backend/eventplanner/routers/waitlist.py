"""Waitlist API routes."""
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from eventplanner.database import get_db, get_session_factory
from eventplanner.schemas.rsvp import (
    ExpireOffersOut,
    RsvpOut,
    WaitlistEntryOut,
    WaitlistRequest,
    WaitlistStatusOut,
)
from eventplanner.services import notification_fanout, waitlist_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/waitlist/sweep", response_model=ExpireOffersOut)
def sweep_expired_offers(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Expire lapsed offers on every event. Called by an external scheduler."""
    expired = waitlist_service.expire_all_stale_offers(db)
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return ExpireOffersOut(expired=expired)


@router.post("/{event_id}/waitlist", response_model=WaitlistEntryOut, status_code=status.HTTP_201_CREATED)
def join_waitlist(event_id: str, payload: WaitlistRequest, db: Session = Depends(get_db)):
    entry = waitlist_service.join(db, event_id, payload.user_id)
    out = WaitlistEntryOut.model_validate(entry)
    out.position = waitlist_service.position_of(db, entry)
    return out


@router.delete("/{event_id}/waitlist/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def leave_waitlist(
    event_id: str,
    user_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    waitlist_service.leave(db, event_id, user_id)
    notification_fanout.schedule_drain(background_tasks, session_factory)


@router.get("/{event_id}/waitlist/{user_id}", response_model=WaitlistStatusOut)
def waitlist_status(
    event_id: str,
    user_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    result = waitlist_service.waitlist_status(db, event_id, user_id)
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return WaitlistStatusOut(
        on_waitlist=result.on_waitlist,
        position=result.position,
        total_pending=result.total_pending,
        offer_active=result.offer_active,
        expires_at=result.entry.expires_at if result.entry else None,
    )


@router.post("/{event_id}/waitlist/confirm", response_model=RsvpOut)
def confirm_waitlist_spot(
    event_id: str,
    payload: WaitlistRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Accept an offered seat; answers 409 NO_ACTIVE_OFFER when it lapsed."""
    rsvp = waitlist_service.confirm_waitlist_spot(db, event_id, payload.user_id)
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return rsvp


@router.post("/{event_id}/waitlist/expire", response_model=ExpireOffersOut)
def expire_offers(
    event_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    expired = waitlist_service.expire_stale_offers(db, event_id)
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return ExpireOffersOut(expired=expired)
