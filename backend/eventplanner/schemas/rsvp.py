"""Pydantic schemas for RSVPs and the waitlist."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from eventplanner.models.rsvp import RsvpResponse


class RsvpSubmit(BaseModel):
    user_id: str
    response: RsvpResponse


class RsvpOut(BaseModel):
    event_id: str
    user_id: str
    response: RsvpResponse
    responded_at: datetime
    needs_reconfirmation: bool

    model_config = {"from_attributes": True}


class WaitlistRequest(BaseModel):
    user_id: str


class WaitlistEntryOut(BaseModel):
    entry_id: int
    event_id: str
    user_id: str
    position: Optional[int] = None
    created_at: datetime
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WaitlistStatusOut(BaseModel):
    on_waitlist: bool
    position: Optional[int] = None
    total_pending: int
    offer_active: bool
    expires_at: Optional[datetime] = None


class ExpireOffersOut(BaseModel):
    expired: int
