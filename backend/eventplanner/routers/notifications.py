"""Notification API routes."""
import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eventplanner.database import get_db
from eventplanner.schemas.notification import NotificationOut
from eventplanner.services import notification_fanout

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=list[NotificationOut])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    """Notifications for a user, newest first."""
    return notification_fanout.list_notifications(db, user_id, unread_only=unread_only)


@router.post("/{notification_id}/read", response_model=NotificationOut)
def mark_read(notification_id: str, user_id: str = Query(...), db: Session = Depends(get_db)):
    return notification_fanout.mark_read(db, notification_id, user_id)


@router.post("/drain")
def drain_outbox(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    """Fan out pending domain events now. Normally this runs after each write."""
    written = notification_fanout.drain_outbox(db, limit=limit)
    return {"written": written}
