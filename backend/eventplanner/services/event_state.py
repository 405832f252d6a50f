"""Observed event state — a pure function of stored state and the clock.

ONGOING and COMPLETED are never written by a transition; every read path
recomputes them here so no background job has to move rows along.
"""
from datetime import datetime, timedelta
from typing import Optional

from eventplanner.config import settings
from eventplanner.models.event import Event, EventState
from eventplanner.timeutils import as_utc

STATE_LABELS = {
    EventState.draft: "Draft",
    EventState.published: "Published",
    EventState.closed: "RSVPs Closed",
    EventState.ongoing: "In Progress",
    EventState.completed: "Completed",
    EventState.cancelled: "Cancelled",
}


def effective_end(date_time: datetime, end_date_time: Optional[datetime]) -> datetime:
    if end_date_time is not None:
        return as_utc(end_date_time)
    return as_utc(date_time) + timedelta(hours=settings.DEFAULT_EVENT_DURATION_HOURS)


def observed_state(
    stored_state: EventState,
    now: datetime,
    date_time: datetime,
    end_date_time: Optional[datetime] = None,
    rsvp_deadline: Optional[datetime] = None,
) -> EventState:
    if stored_state in (EventState.draft, EventState.cancelled, EventState.completed):
        return stored_state

    now = as_utc(now)
    if now >= effective_end(date_time, end_date_time):
        return EventState.completed
    if now >= as_utc(date_time):
        return EventState.ongoing
    if stored_state == EventState.published and rsvp_deadline is not None and now >= as_utc(rsvp_deadline):
        return EventState.closed
    return stored_state


def observed_state_of(event: Event, now: datetime) -> EventState:
    return observed_state(event.state, now, event.date_time, event.end_date_time, event.rsvp_deadline)


def deadline_passed(event: Event, now: datetime) -> bool:
    return event.rsvp_deadline is not None and as_utc(now) >= as_utc(event.rsvp_deadline)


def accepts_rsvps(event: Event, now: datetime) -> bool:
    """RSVP writes are legal while PUBLISHED or ONGOING and before the deadline."""
    state = observed_state_of(event, now)
    return state in (EventState.published, EventState.ongoing) and not deadline_passed(event, now)


def can_be_cancelled(event: Event, now: datetime) -> bool:
    return observed_state_of(event, now) not in (EventState.cancelled, EventState.completed)


def state_label(state: EventState) -> str:
    return STATE_LABELS.get(state, state.value)
