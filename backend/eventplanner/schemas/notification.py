"""Pydantic schemas for Notifications."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from eventplanner.models.notification import NotificationType


class NotificationOut(BaseModel):
    notification_id: str
    user_id: str
    type: NotificationType
    event_id: Optional[str] = None
    message: str
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True}
