"""Pydantic schemas for Events."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from eventplanner.models.event import EventState
from eventplanner.models.event_mutation import ActionType
from eventplanner.timeutils import as_utc


class EventCreate(BaseModel):
    creator_id: str
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    date_time: datetime
    end_date_time: Optional[datetime] = None
    timezone: str = "UTC"
    location: str = ""
    notes: Optional[str] = None
    capacity: Optional[int] = None
    waitlist_enabled: bool = False
    rsvp_deadline: Optional[datetime] = None

    @field_validator("date_time", "end_date_time", "rsvp_deadline")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class EventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    timezone: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    capacity: Optional[int] = None
    waitlist_enabled: Optional[bool] = None
    rsvp_deadline: Optional[datetime] = None
    version: Optional[int] = None  # optimistic locking when given

    @field_validator("date_time", "end_date_time", "rsvp_deadline")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class EventOut(BaseModel):
    event_id: str
    title: str
    description: str
    date_time: datetime
    end_date_time: Optional[datetime] = None
    timezone: str
    location: str
    notes: Optional[str] = None
    capacity: Optional[int] = None
    waitlist_enabled: bool
    rsvp_deadline: Optional[datetime] = None
    state: EventState
    creator_id: str
    cancelled_at: Optional[datetime] = None
    cancel_message: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EventCancelRequest(BaseModel):
    actor_user_id: str
    message: Optional[str] = Field(default=None, max_length=1000)
    version: Optional[int] = None


class EventCancelOut(BaseModel):
    event: EventOut
    notified_count: int


class CapacityOut(BaseModel):
    capacity: Optional[int] = None
    confirmed: int
    held_offers: int
    remaining: Optional[int] = None
    is_full: bool

    model_config = {"from_attributes": True}


class EventStateOut(BaseModel):
    event_id: str
    stored_state: str
    observed_state: str
    label: str
    accepts_rsvps: bool
    capacity: CapacityOut
    pending_waitlist: int


class EventMutationOut(BaseModel):
    mutation_id: str
    event_id: str
    actor_user_id: str
    action_type: ActionType
    before_snapshot: Optional[dict] = None
    after_snapshot: dict
    created_at: datetime

    model_config = {"from_attributes": True}


class OrganizerAdd(BaseModel):
    actor_user_id: str
    user_id: str
