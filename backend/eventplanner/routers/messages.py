"""Mass message, invitation and quota API routes."""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from eventplanner.database import get_db
from eventplanner.models.quota import Channel
from eventplanner.schemas.messaging import (
    InvitationBatchOut,
    InvitationRequest,
    MassMessageOut,
    MassMessageRequest,
    MassSendThrottleOut,
    QuotaOut,
)
from eventplanner.services import messaging_service, quota_service
from eventplanner.services.delivery import DeliveryChannel, get_delivery_channel
from eventplanner.services.guards import get_event, require_organizer
from eventplanner.services.quota_service import QuotaScope

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{event_id}/messages", response_model=MassMessageOut, status_code=status.HTTP_201_CREATED)
def send_mass_message(
    event_id: str,
    payload: MassMessageRequest,
    db: Session = Depends(get_db),
    delivery: DeliveryChannel = Depends(get_delivery_channel),
):
    """Send an email or SMS to an audience of the event. Over quota answers 429."""
    return messaging_service.send_mass_message(
        db=db,
        event_id=event_id,
        organizer_id=payload.organizer_id,
        channel=payload.channel,
        audience=payload.target_audience,
        body=payload.body,
        subject=payload.subject,
        delivery=delivery,
    )


@router.get("/{event_id}/messages", response_model=list[MassMessageOut])
def list_mass_messages(
    event_id: str,
    organizer_id: str = Query(...),
    db: Session = Depends(get_db),
):
    return messaging_service.list_mass_messages(db, event_id, organizer_id)


@router.post("/{event_id}/invitations", response_model=InvitationBatchOut)
def send_invitations(
    event_id: str,
    payload: InvitationRequest,
    db: Session = Depends(get_db),
    delivery: DeliveryChannel = Depends(get_delivery_channel),
):
    """Invite contacts; ones already invited successfully are skipped."""
    batch = messaging_service.send_invitations(
        db=db,
        event_id=event_id,
        organizer_id=payload.organizer_id,
        channel=payload.channel,
        contacts=payload.contacts,
        delivery=delivery,
    )
    return InvitationBatchOut.model_validate(batch)


@router.get("/{event_id}/quota", response_model=list[QuotaOut])
def get_quota(
    event_id: str,
    organizer_id: str = Query(...),
    db: Session = Depends(get_db),
):
    """Per-channel send counters for the event."""
    event = get_event(db, event_id)
    require_organizer(db, event, organizer_id)
    scope = QuotaScope.for_event(event_id)
    return [QuotaOut.model_validate(quota_service.quota_snapshot(db, scope, channel)) for channel in Channel]


@router.get("/{event_id}/quota/mass-sends", response_model=list[MassSendThrottleOut])
def get_mass_send_throttle(
    event_id: str,
    organizer_id: str = Query(...),
    db: Session = Depends(get_db),
):
    """Weekly mass-send budget per channel, with the time the next send is allowed."""
    event = get_event(db, event_id)
    require_organizer(db, event, organizer_id)
    return [
        MassSendThrottleOut.model_validate(quota_service.throttle_snapshot(db, event_id, channel))
        for channel in Channel
    ]
