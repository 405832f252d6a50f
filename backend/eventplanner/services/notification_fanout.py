"""Notification fan-out — turns domain events into per-user notification records.

Producers call ``publish`` inside their own transaction; that only appends an
outbox row. ``drain_outbox`` runs afterwards (a FastAPI background task or an
external worker), resolves recipients and writes one ``NotificationRecord``
per recipient. Records are keyed by ``dedupe_key`` so a retried drain never
writes a second copy.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventplanner.domain_events import (
    EVENT_TYPES,
    DomainEvent,
    EventCancelled,
    EventUpdated,
    RsvpChanged,
    WaitlistSpotAvailable,
)
from eventplanner.errors import NotFound
from eventplanner.models.event import EventOrganizer
from eventplanner.models.notification import NotificationRecord, NotificationType, OutboxEvent
from eventplanner.models.rsvp import Rsvp, RsvpResponse
from eventplanner.models.waitlist import WaitlistEntry
from eventplanner.timeutils import utc_now

logger = logging.getLogger(__name__)

# (user_id, notification type, message)
Recipient = tuple[str, NotificationType, str]


def publish(db: Session, domain_event: DomainEvent, now: Optional[datetime] = None) -> OutboxEvent:
    """Append ``domain_event`` to the outbox. The caller owns the commit."""
    row = OutboxEvent(
        event_type=domain_event.event_type,
        event_id=domain_event.event_id,
        actor_user_id=domain_event.actor_user_id,
        payload=domain_event.payload(),
        created_at=now or utc_now(),
    )
    db.add(row)
    return row


def cancellation_recipient_ids(db: Session, event_id: str) -> list[str]:
    """Users with a non-NO RSVP or a waitlist entry, in a stable order."""
    rsvp_ids = [
        uid for (uid,) in db.query(Rsvp.user_id)
        .filter(Rsvp.event_id == event_id, Rsvp.response != RsvpResponse.no)
        .order_by(Rsvp.user_id)
    ]
    waitlist_ids = [
        uid for (uid,) in db.query(WaitlistEntry.user_id)
        .filter(WaitlistEntry.event_id == event_id)
        .order_by(WaitlistEntry.entry_id)
    ]
    seen = set()
    ordered = []
    for uid in rsvp_ids + waitlist_ids:
        if uid not in seen:
            seen.add(uid)
            ordered.append(uid)
    return ordered


def _organizer_ids(db: Session, event_id: str) -> list[str]:
    return [
        uid for (uid,) in db.query(EventOrganizer.user_id)
        .filter(EventOrganizer.event_id == event_id)
        .order_by(EventOrganizer.user_id)
    ]


def _rsvp_user_ids(db: Session, event_id: str, response: RsvpResponse) -> list[str]:
    return [
        uid for (uid,) in db.query(Rsvp.user_id)
        .filter(Rsvp.event_id == event_id, Rsvp.response == response)
        .order_by(Rsvp.user_id)
    ]


def resolve_recipients(db: Session, domain_event: DomainEvent) -> list[Recipient]:
    """Compute who hears about ``domain_event`` and with which notification type."""
    if isinstance(domain_event, EventCancelled):
        text = f'"{domain_event.title}" has been cancelled.'
        if domain_event.message:
            text = f"{text} {domain_event.message}"
        return [
            (uid, NotificationType.event_cancelled, text)
            for uid in cancellation_recipient_ids(db, domain_event.event_id)
        ]

    if isinstance(domain_event, EventUpdated):
        if not domain_event.material:
            return []
        changes = " and ".join(domain_event.changed_fields) or "details"
        reconfirm = (
            f'The {changes} for "{domain_event.title}" changed. Please reconfirm your RSVP.'
        )
        updated = f'The {changes} for "{domain_event.title}" has been updated. Please review the changes.'
        yes_ids = _rsvp_user_ids(db, domain_event.event_id, RsvpResponse.yes)
        recipients: list[Recipient] = [(uid, NotificationType.rsvp_reconfirm, reconfirm) for uid in yes_ids]
        informed = set(yes_ids)
        others = _rsvp_user_ids(db, domain_event.event_id, RsvpResponse.maybe) + [
            uid for (uid,) in db.query(WaitlistEntry.user_id)
            .filter(WaitlistEntry.event_id == domain_event.event_id)
            .order_by(WaitlistEntry.entry_id)
        ]
        for uid in others:
            if uid not in informed:
                informed.add(uid)
                recipients.append((uid, NotificationType.event_updated, updated))
        return recipients

    if isinstance(domain_event, RsvpChanged):
        if domain_event.previous is None:
            ntype = NotificationType.new_rsvp
            text = f'A guest RSVP\'d {domain_event.response} to "{domain_event.title}".'
        else:
            ntype = NotificationType.rsvp_changed
            text = (
                f'A guest changed their RSVP from {domain_event.previous} to '
                f'{domain_event.response} for "{domain_event.title}".'
            )
        return [
            (uid, ntype, text)
            for uid in _organizer_ids(db, domain_event.event_id)
            if uid != domain_event.user_id
        ]

    if isinstance(domain_event, WaitlistSpotAvailable):
        text = (
            f'A spot has opened up for "{domain_event.title}"! Confirm before '
            f'{domain_event.expires_at.isoformat()} to keep it.'
        )
        return [(domain_event.user_id, NotificationType.waitlist_spot_available, text)]

    logger.warning("No recipient rule for domain event %s", domain_event.event_type)
    return []


def _dedupe_key(outbox_id: int, user_id: str, ntype: NotificationType) -> str:
    return f"{outbox_id}:{user_id}:{ntype.value}"


def _fan_out(db: Session, row: OutboxEvent) -> int:
    event_cls = EVENT_TYPES.get(row.event_type)
    if event_cls is None:
        logger.warning("Skipping outbox event %s with unknown type %s", row.outbox_id, row.event_type)
        return 0

    domain_event = event_cls.from_payload(row.event_id, row.actor_user_id, row.payload or {})
    written = 0
    for user_id, ntype, message in resolve_recipients(db, domain_event):
        key = _dedupe_key(row.outbox_id, user_id, ntype)
        exists = db.query(NotificationRecord.notification_id).filter(
            NotificationRecord.dedupe_key == key
        ).first()
        if exists:
            continue
        db.add(NotificationRecord(
            user_id=user_id,
            type=ntype,
            event_id=row.event_id,
            message=message,
            dedupe_key=key,
        ))
        written += 1
    return written


def drain_outbox(db: Session, limit: int = 100, now: Optional[datetime] = None) -> int:
    """Fan out pending outbox rows in order. Returns the number of records written.

    Each outbox row commits on its own; a failing row is rolled back, logged and
    left pending for the next drain.
    """
    rows = (
        db.query(OutboxEvent)
        .filter(OutboxEvent.processed_at.is_(None))
        .order_by(OutboxEvent.outbox_id)
        .limit(limit)
        .all()
    )
    written = 0
    for row in rows:
        outbox_id, event_type = row.outbox_id, row.event_type
        try:
            count = _fan_out(db, row)
            row.processed_at = now or utc_now()
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Fan-out failed for outbox event %s (%s)", outbox_id, event_type)
            continue
        written += count
        logger.info("Fanned out outbox event %s (%s) to %d recipients", outbox_id, event_type, count)
    return written


def drain_outbox_with(session_factory: Callable[[], Session]) -> int:
    """Background-task entry point: drain with a session of its own."""
    db = session_factory()
    try:
        return drain_outbox(db)
    finally:
        db.close()


def list_notifications(db: Session, user_id: str, unread_only: bool = False) -> list[NotificationRecord]:
    query = db.query(NotificationRecord).filter(NotificationRecord.user_id == user_id)
    if unread_only:
        query = query.filter(NotificationRecord.read.is_(False))
    return query.order_by(NotificationRecord.created_at.desc()).all()


def mark_read(db: Session, notification_id: str, user_id: str) -> NotificationRecord:
    record = db.query(NotificationRecord).filter(
        NotificationRecord.notification_id == notification_id,
        NotificationRecord.user_id == user_id,
    ).first()
    if not record:
        raise NotFound("Notification not found")
    record.read = True
    db.commit()
    db.refresh(record)
    return record


def schedule_drain(background_tasks: BackgroundTasks, session_factory: Callable[[], Session]) -> None:
    """Run the drain after the response is sent, outside the request transaction."""
    background_tasks.add_task(drain_outbox_with, session_factory)
