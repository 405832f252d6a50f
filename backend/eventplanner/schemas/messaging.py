"""Pydantic schemas for mass messages and invitations."""
from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from eventplanner.models.communication import DeliveryStatus, TargetAudience
from eventplanner.models.quota import Channel


class MassMessageRequest(BaseModel):
    organizer_id: str
    channel: Channel
    target_audience: TargetAudience
    subject: Optional[str] = None
    body: str


class MassMessageRecipientOut(BaseModel):
    user_id: str
    contact: str
    status: DeliveryStatus
    failure_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class MassMessageOut(BaseModel):
    communication_id: str
    event_id: str
    channel: Channel
    subject: Optional[str] = None
    body: str
    target_audience: TargetAudience
    recipient_count: int
    sent_count: int
    failed_count: int
    sent_at: datetime
    recipients: list[MassMessageRecipientOut] = []

    model_config = {"from_attributes": True}


class InvitationRequest(BaseModel):
    organizer_id: str
    channel: Channel
    contacts: list[str] = Field(min_length=1)


class InvitationOut(BaseModel):
    invitation_id: str
    channel: Channel
    contact: str
    status: DeliveryStatus
    failure_reason: Optional[str] = None
    sent_at: datetime

    model_config = {"from_attributes": True}


class InvitationBatchOut(BaseModel):
    sent: int
    failed: int
    skipped: list[str]
    invitations: list[InvitationOut]

    model_config = {"from_attributes": True}


class QuotaOut(BaseModel):
    channel: Channel
    daily_count: int
    daily_limit: int
    daily_remaining: int
    total_count: int
    total_limit: int
    total_remaining: int

    model_config = {"from_attributes": True}


class MassSendThrottleOut(BaseModel):
    channel: Channel
    used: int
    limit: int
    remaining: int
    last_sent_at: Optional[datetime] = None
    next_send_allowed: Optional[datetime] = None
    approaching_limit: bool
    at_limit: bool
    can_send_now: bool

    model_config = {"from_attributes": True}
