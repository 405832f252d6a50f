"""RSVP API routes."""
import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from eventplanner.database import get_db, get_session_factory
from eventplanner.errors import NotFound
from eventplanner.models.rsvp import RsvpResponse
from eventplanner.schemas.rsvp import RsvpOut, RsvpSubmit
from eventplanner.services import notification_fanout, rsvp_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{event_id}/rsvp", response_model=RsvpOut)
def set_rsvp(
    event_id: str,
    payload: RsvpSubmit,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Set or change a user's RSVP. A full event answers 409 EVENT_FULL."""
    rsvp = rsvp_service.set_rsvp(db, event_id, payload.user_id, payload.response)
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return rsvp


@router.get("/{event_id}/rsvps", response_model=list[RsvpOut])
def list_rsvps(
    event_id: str,
    response: Optional[RsvpResponse] = Query(None),
    db: Session = Depends(get_db),
):
    return rsvp_service.list_rsvps(db, event_id, response)


@router.get("/{event_id}/rsvps/{user_id}", response_model=RsvpOut)
def get_rsvp(event_id: str, user_id: str, db: Session = Depends(get_db)):
    rsvp = rsvp_service.get_rsvp(db, event_id, user_id)
    if rsvp is None:
        raise NotFound("RSVP not found")
    return rsvp
