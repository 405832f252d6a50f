"""Mass messages and invitations, gated by the quota service.

Sends are reserved on both the event and the organizer scope before anything
goes out; sends the delivery channel reports as failed are given back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import pytz
from sqlalchemy.orm import Session

from eventplanner.config import settings
from eventplanner.errors import InvalidTransition, ValidationFailed
from eventplanner.models.communication import (
    DeliveryStatus,
    Invitation,
    MassCommunication,
    MassCommunicationRecipient,
    TargetAudience,
)
from eventplanner.models.event import Event, EventState
from eventplanner.models.quota import Channel
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.models.user import User
from eventplanner.models.waitlist import WaitlistEntry
from eventplanner.services import quota_service
from eventplanner.services.delivery import DeliveryChannel, DeliveryResult, LoggingDeliveryChannel, OutboundMessage
from eventplanner.services.event_state import observed_state_of, state_label
from eventplanner.services.guards import get_event, require_organizer
from eventplanner.services.quota_service import QuotaScope
from eventplanner.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 200
MAX_BODY_LENGTH = 10000

AUDIENCE_RESPONSES = {
    TargetAudience.yes_only: RsvpResponse.yes,
    TargetAudience.maybe_only: RsvpResponse.maybe,
    TargetAudience.no_only: RsvpResponse.no,
}


@dataclass(frozen=True)
class MessageRecipient:
    user_id: str
    contact: str


@dataclass
class InvitationBatch:
    sent: int = 0
    failed: int = 0
    skipped: list[str] = field(default_factory=list)
    invitations: list[Invitation] = field(default_factory=list)


def _contact_for(user: User, channel: Channel) -> Optional[str]:
    return user.email if channel == Channel.email else user.phone


def _ensure_messageable(event: Event, now: datetime) -> None:
    observed = observed_state_of(event, now)
    if observed not in (EventState.published, EventState.ongoing):
        raise InvalidTransition(
            f"Messages can only be sent for published or ongoing events (state: {state_label(observed)}).",
            state=observed.value,
        )


def _scopes(event: Event, organizer_id: str) -> list[QuotaScope]:
    return [QuotaScope.for_event(event.event_id), QuotaScope.for_organizer(organizer_id)]


def resolve_audience(
    db: Session,
    event_id: str,
    audience: TargetAudience,
    channel: Channel,
) -> list[MessageRecipient]:
    """Users in ``audience`` that have a contact for ``channel``, each contact once."""
    if audience == TargetAudience.waitlist_only:
        users = (
            db.query(User)
            .join(WaitlistEntry, WaitlistEntry.user_id == User.user_id)
            .filter(WaitlistEntry.event_id == event_id)
            .order_by(WaitlistEntry.entry_id)
            .all()
        )
    else:
        query = (
            db.query(User)
            .join(Rsvp, Rsvp.user_id == User.user_id)
            .filter(Rsvp.event_id == event_id)
        )
        if audience in AUDIENCE_RESPONSES:
            query = query.filter(Rsvp.response == AUDIENCE_RESPONSES[audience])
        users = query.order_by(Rsvp.responded_at, User.user_id).all()

    recipients = []
    seen = set()
    for user in users:
        contact = _contact_for(user, channel)
        if not contact or contact in seen:
            continue
        seen.add(contact)
        recipients.append(MessageRecipient(user_id=user.user_id, contact=contact))
    return recipients


def _validate_message(channel: Channel, subject: Optional[str], body: str) -> None:
    if not body or not body.strip():
        raise ValidationFailed("Message body is required")
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationFailed(f"Message body must be {MAX_BODY_LENGTH} characters or less")
    if channel == Channel.sms and len(body) > settings.SMS_MAX_LENGTH:
        raise ValidationFailed(
            f"SMS messages must be {settings.SMS_MAX_LENGTH} characters or less",
            length=len(body),
        )
    if channel == Channel.email:
        if not subject or not subject.strip():
            raise ValidationFailed("Email subject is required")
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationFailed(f"Subject must be {MAX_SUBJECT_LENGTH} characters or less")


def _results_in_order(contacts: list[str], results: list[DeliveryResult]) -> list[DeliveryResult]:
    """One result per contact, in order; a contact the channel did not report on counts as failed."""
    by_contact = {result.contact: result for result in results}
    return [
        by_contact.get(contact) or DeliveryResult(contact=contact, ok=False, error="No delivery result")
        for contact in contacts
    ]


def send_mass_message(
    db: Session,
    event_id: str,
    organizer_id: str,
    channel: Channel,
    audience: TargetAudience,
    body: str,
    subject: Optional[str] = None,
    delivery: Optional[DeliveryChannel] = None,
    now: Optional[datetime] = None,
) -> MassCommunication:
    """Send one message to an audience of the event and record the outcome.

    Raises ``QuotaExceeded`` before anything is sent when the event has used
    its weekly mass sends on the channel, sent one too recently, or when the
    event or the organizer cannot afford the whole batch. Failed deliveries are recorded
    per recipient and refunded to the quota; they do not fail the call.
    """
    now = now or utc_now()
    delivery = delivery or LoggingDeliveryChannel()
    event = get_event(db, event_id)
    require_organizer(db, event, organizer_id)
    _ensure_messageable(event, now)
    body = body.strip() if body else body
    subject = subject.strip() if subject else None
    _validate_message(channel, subject, body)

    recipients = resolve_audience(db, event_id, audience, channel)
    if not recipients:
        raise ValidationFailed("No recipients found for the selected audience", audience=audience.value)

    scopes = _scopes(event, organizer_id)
    _, previous_sent_at = quota_service.reserve_mass_send(db, event_id, channel, now=now)
    quota_service.check_and_reserve(db, scopes, channel, len(recipients), now=now)

    contacts = [r.contact for r in recipients]
    try:
        results = delivery.send(contacts, channel, OutboundMessage(subject=subject, body=body))
    except Exception:
        logger.exception("Mass %s for event %s could not be handed to the delivery channel", channel.value, event_id)
        quota_service.rollback(db, scopes, channel, len(recipients), now=now)
        quota_service.release_mass_send(db, event_id, channel, previous_sent_at, now=now)
        raise
    results = _results_in_order(contacts, results)
    failed = [result for result in results if not result.ok]
    if failed:
        quota_service.rollback(db, scopes, channel, len(failed), now=now)
        logger.warning(
            "Mass %s for event %s: %d of %d deliveries failed",
            channel.value, event_id, len(failed), len(recipients),
        )

    communication = MassCommunication(
        event_id=event_id,
        organizer_id=organizer_id,
        channel=channel,
        subject=subject,
        body=body,
        target_audience=audience,
        recipient_count=len(recipients),
        sent_count=len(results) - len(failed),
        failed_count=len(failed),
        sent_at=now,
    )
    for recipient, result in zip(recipients, results):
        communication.recipients.append(MassCommunicationRecipient(
            user_id=recipient.user_id,
            contact=recipient.contact,
            status=DeliveryStatus.sent if result.ok else DeliveryStatus.failed,
            failure_reason=result.error,
        ))
    db.add(communication)
    db.commit()
    db.refresh(communication)
    logger.info(
        "Mass %s %s sent for event %s: %d sent, %d failed",
        channel.value, communication.communication_id, event_id,
        communication.sent_count, communication.failed_count,
    )
    return communication


def list_mass_messages(db: Session, event_id: str, organizer_id: str) -> list[MassCommunication]:
    event = get_event(db, event_id)
    require_organizer(db, event, organizer_id)
    return (
        db.query(MassCommunication)
        .filter(MassCommunication.event_id == event_id)
        .order_by(MassCommunication.sent_at.desc())
        .all()
    )


def compose_invitation(event: Event, channel: Channel) -> OutboundMessage:
    """Invitation text; SMS bodies are kept within the SMS length limit."""
    local = as_utc(event.date_time).astimezone(pytz.timezone(event.timezone))
    when = local.strftime("%b %d %I:%M %p").replace(" 0", " ")
    url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}/events/{event.event_id}"
    if channel == Channel.email:
        body = (
            f"You're invited to {event.title}.\n\n"
            f"When: {when} ({event.timezone})\n"
            f"Where: {event.location}\n\n"
            f"RSVP: {url}"
        )
        return OutboundMessage(subject=f"You're invited: {event.title}", body=body)

    frame = f"Event: \n{when}\nRSVP: {url}"
    room = settings.SMS_MAX_LENGTH - len(frame)
    title = event.title
    if len(title) > room:
        title = title[:room - 3] + "..." if room > 3 else ""
    body = f"Event: {title}\n{when}\nRSVP: {url}"
    if len(body) > settings.SMS_MAX_LENGTH:
        raise ValidationFailed(
            f"The RSVP link is too long for a {settings.SMS_MAX_LENGTH} character SMS invitation",
            length=len(body),
        )
    return OutboundMessage(subject=None, body=body)


def send_invitations(
    db: Session,
    event_id: str,
    organizer_id: str,
    channel: Channel,
    contacts: list[str],
    delivery: Optional[DeliveryChannel] = None,
    now: Optional[datetime] = None,
) -> InvitationBatch:
    """Invite contacts by email or SMS; contacts already invited successfully are skipped."""
    now = now or utc_now()
    delivery = delivery or LoggingDeliveryChannel()
    event = get_event(db, event_id)
    require_organizer(db, event, organizer_id)
    _ensure_messageable(event, now)

    batch = InvitationBatch()
    pending = []
    for raw in contacts:
        contact = raw.strip() if raw else ""
        if not contact or contact in pending:
            continue
        existing = db.query(Invitation).filter(
            Invitation.event_id == event_id,
            Invitation.channel == channel,
            Invitation.contact == contact,
        ).first()
        if existing is not None and existing.status == DeliveryStatus.sent:
            batch.skipped.append(contact)
            continue
        pending.append(contact)

    if not pending:
        return batch

    content = compose_invitation(event, channel)
    scopes = _scopes(event, organizer_id)
    quota_service.check_and_reserve(db, scopes, channel, len(pending), now=now)
    try:
        results = delivery.send(pending, channel, content)
    except Exception:
        logger.exception("Invitations for event %s could not be handed to the delivery channel", event_id)
        quota_service.rollback(db, scopes, channel, len(pending), now=now)
        raise
    results = _results_in_order(pending, results)

    for contact, result in zip(pending, results):
        invitation = db.query(Invitation).filter(
            Invitation.event_id == event_id,
            Invitation.channel == channel,
            Invitation.contact == contact,
        ).first()
        if invitation is None:
            invitation = Invitation(event_id=event_id, channel=channel, contact=contact)
            db.add(invitation)
        invitation.status = DeliveryStatus.sent if result.ok else DeliveryStatus.failed
        invitation.failure_reason = result.error
        invitation.sent_at = now
        batch.invitations.append(invitation)
        if result.ok:
            batch.sent += 1
        else:
            batch.failed += 1
    db.commit()

    if batch.failed:
        quota_service.rollback(db, scopes, channel, batch.failed, now=now)
        logger.warning("Invitations for event %s: %d of %d failed", event_id, batch.failed, len(pending))
    for invitation in batch.invitations:
        db.refresh(invitation)
    logger.info(
        "Sent %d %s invitations for event %s (%d skipped)",
        batch.sent, channel.value, event_id, len(batch.skipped),
    )
    return batch
