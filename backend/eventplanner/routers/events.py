"""Event API routes — delegates to event_service for lifecycle rules."""
import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from eventplanner.database import get_db, get_session_factory
from eventplanner.schemas.event import (
    CapacityOut,
    EventCancelOut,
    EventCancelRequest,
    EventCreate,
    EventMutationOut,
    EventOut,
    EventStateOut,
    EventUpdate,
    OrganizerAdd,
)
from eventplanner.services import event_service, notification_fanout
from eventplanner.services.guards import get_event as fetch_event

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=EventOut, status_code=status.HTTP_201_CREATED)
def create_event(payload: EventCreate, db: Session = Depends(get_db)):
    """Create a draft event; the creator becomes its organizer."""
    return event_service.create_event(db=db, **payload.model_dump())


@router.get("/", response_model=list[EventOut])
def list_events(
    user_id: Optional[str] = Query(None, description="Only events this user organizes"),
    include_cancelled: bool = Query(False),
    db: Session = Depends(get_db),
):
    return event_service.list_events(db, user_id=user_id, include_cancelled=include_cancelled)


@router.get("/{event_id}", response_model=EventOut)
def get_event(event_id: str, db: Session = Depends(get_db)):
    return fetch_event(db, event_id)


@router.put("/{event_id}", response_model=EventOut)
def update_event(
    event_id: str,
    payload: EventUpdate,
    background_tasks: BackgroundTasks,
    actor_user_id: str = Query(..., description="ID of the organizer performing the update"),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Update event details (organizer only). Material changes ask attendees to reconfirm."""
    updates = payload.model_dump(exclude_unset=True, exclude={"version"})
    event = event_service.update_event(
        db=db,
        event_id=event_id,
        actor_user_id=actor_user_id,
        updates=updates,
        version=payload.version,
    )
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return event


@router.post("/{event_id}/publish", response_model=EventOut)
def publish_event(
    event_id: str,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
):
    return event_service.publish_event(db, event_id, actor_user_id)


@router.post("/{event_id}/close", response_model=EventOut)
def close_rsvps(
    event_id: str,
    actor_user_id: str = Query(...),
    db: Session = Depends(get_db),
):
    """Close RSVPs ahead of the deadline."""
    return event_service.close_rsvps(db, event_id, actor_user_id)


@router.post("/{event_id}/cancel", response_model=EventCancelOut)
def cancel_event(
    event_id: str,
    payload: EventCancelRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Cancel an event (organizer only); attendees are notified after the response."""
    result = event_service.cancel_event(
        db=db,
        event_id=event_id,
        actor_user_id=payload.actor_user_id,
        message=payload.message,
        version=payload.version,
    )
    notification_fanout.schedule_drain(background_tasks, session_factory)
    return EventCancelOut(event=EventOut.model_validate(result.event), notified_count=result.notified_count)


@router.get("/{event_id}/state", response_model=EventStateOut)
def get_event_state(event_id: str, db: Session = Depends(get_db)):
    """Observed lifecycle state and seat usage."""
    view = event_service.get_event_state(db, event_id)
    snapshot = view.capacity
    return EventStateOut(
        event_id=view.event.event_id,
        stored_state=view.event.state.value,
        observed_state=view.observed_state.value,
        label=view.label,
        accepts_rsvps=view.accepts_rsvps,
        capacity=CapacityOut(
            capacity=snapshot.capacity,
            confirmed=snapshot.confirmed,
            held_offers=snapshot.held_offers,
            remaining=snapshot.remaining,
            is_full=snapshot.is_full,
        ),
        pending_waitlist=view.pending_waitlist,
    )


@router.get("/{event_id}/mutations", response_model=list[EventMutationOut])
def list_mutations(event_id: str, db: Session = Depends(get_db)):
    return event_service.list_mutations(db, event_id)


@router.post("/{event_id}/organizers", status_code=status.HTTP_201_CREATED)
def add_organizer(event_id: str, payload: OrganizerAdd, db: Session = Depends(get_db)):
    event_service.add_organizer(db, event_id, payload.actor_user_id, payload.user_id)
    return {"status": "ok", "user_id": payload.user_id}
