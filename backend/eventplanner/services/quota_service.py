"""Quota gate — daily and lifetime send limits per event and per organizer.

A reservation either increments every requested scope or none of them: all
counters are locked and checked before the first increment.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Sequence, Union

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from eventplanner.config import settings
from eventplanner.errors import QuotaExceeded, ValidationFailed
from eventplanner.models.quota import Channel, MassSendThrottle, QuotaCounter, QuotaScopeType
from eventplanner.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaScope:
    scope_type: QuotaScopeType
    scope_id: str

    @classmethod
    def for_event(cls, event_id: str) -> "QuotaScope":
        return cls(QuotaScopeType.event, event_id)

    @classmethod
    def for_organizer(cls, user_id: str) -> "QuotaScope":
        return cls(QuotaScopeType.organizer, user_id)

    def __str__(self) -> str:
        return f"{self.scope_type.value}:{self.scope_id}"


@dataclass(frozen=True)
class QuotaLimits:
    daily: int
    total: int


@dataclass(frozen=True)
class QuotaSnapshot:
    scope: QuotaScope
    channel: Channel
    daily_count: int
    daily_limit: int
    total_count: int
    total_limit: int

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_count)

    @property
    def total_remaining(self) -> int:
        return max(0, self.total_limit - self.total_count)

    @property
    def remaining(self) -> int:
        return min(self.daily_remaining, self.total_remaining)


def limits_for(scope_type: QuotaScopeType, channel: Channel) -> QuotaLimits:
    """Configured limits for a scope type and channel."""
    prefix = f"{scope_type.value}_{channel.value}"
    return QuotaLimits(
        daily=getattr(settings, f"{prefix}_DAILY_LIMIT"),
        total=getattr(settings, f"{prefix}_TOTAL_LIMIT"),
    )


def _as_scopes(scopes: Union[QuotaScope, Sequence[QuotaScope]]) -> list[QuotaScope]:
    if isinstance(scopes, QuotaScope):
        return [scopes]
    return list(scopes)


def _today(now: datetime) -> date:
    return as_utc(now).date()


def _insert_if_missing(db: Session, model, values: dict, conflict_columns: list[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING, so concurrent first uses never collide."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values)
    else:
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")
    db.execute(stmt.on_conflict_do_nothing(index_elements=conflict_columns))


def _lock_counter(db: Session, scope: QuotaScope, channel: Channel, today: date) -> QuotaCounter:
    """Fetch the counter row under a row lock, creating it on first use."""
    _insert_if_missing(
        db,
        QuotaCounter,
        {
            "scope_type": scope.scope_type,
            "scope_id": scope.scope_id,
            "channel": channel,
            "daily_count": 0,
            "total_count": 0,
            "daily_window_start": today,
        },
        ["scope_type", "scope_id", "channel"],
    )
    counter = (
        db.query(QuotaCounter)
        .filter(
            QuotaCounter.scope_type == scope.scope_type,
            QuotaCounter.scope_id == scope.scope_id,
            QuotaCounter.channel == channel,
        )
        .with_for_update()
        .populate_existing()
        .one()
    )
    if counter.daily_window_start < today:
        counter.daily_count = 0
        counter.daily_window_start = today
    return counter


def _snapshot(scope: QuotaScope, channel: Channel, counter: QuotaCounter, limits: QuotaLimits) -> QuotaSnapshot:
    return QuotaSnapshot(
        scope=scope,
        channel=channel,
        daily_count=counter.daily_count,
        daily_limit=limits.daily,
        total_count=counter.total_count,
        total_limit=limits.total,
    )


def check_and_reserve(
    db: Session,
    scopes: Union[QuotaScope, Sequence[QuotaScope]],
    channel: Channel,
    count: int,
    now: Optional[datetime] = None,
    limits: Optional[dict[QuotaScope, QuotaLimits]] = None,
) -> list[QuotaSnapshot]:
    """Reserve ``count`` sends on every scope, or raise ``QuotaExceeded`` and change nothing.

    Returns the post-increment snapshot for each scope, in the order given.
    """
    if count < 0:
        raise ValidationFailed("Reservation count must not be negative")
    now = now or utc_now()
    today = _today(now)
    scope_list = _as_scopes(scopes)
    limits = limits or {}

    locked = []
    for scope in scope_list:
        counter = _lock_counter(db, scope, channel, today)
        scope_limits = limits.get(scope) or limits_for(scope.scope_type, channel)
        locked.append((scope, counter, scope_limits))

    for scope, counter, scope_limits in locked:
        if counter.total_count + count > scope_limits.total:
            db.rollback()
            logger.warning(
                "Quota rejected for %s/%s: total %d + %d > %d",
                scope, channel.value, counter.total_count, count, scope_limits.total,
            )
            raise QuotaExceeded(
                f"{channel.value} total limit reached ({counter.total_count}/{scope_limits.total}). "
                f"Cannot send {count} more.",
                scope=str(scope),
                window="total",
            )
        if counter.daily_count + count > scope_limits.daily:
            db.rollback()
            logger.warning(
                "Quota rejected for %s/%s: daily %d + %d > %d",
                scope, channel.value, counter.daily_count, count, scope_limits.daily,
            )
            raise QuotaExceeded(
                f"{channel.value} daily limit reached ({counter.daily_count}/{scope_limits.daily}). "
                f"Cannot send {count} more today.",
                scope=str(scope),
                window="daily",
            )

    snapshots = []
    for scope, counter, scope_limits in locked:
        counter.daily_count += count
        counter.total_count += count
        snapshots.append(_snapshot(scope, channel, counter, scope_limits))
    db.commit()
    logger.info("Reserved %d %s sends on %s", count, channel.value, ", ".join(str(s) for s in scope_list))
    return snapshots


def rollback(
    db: Session,
    scopes: Union[QuotaScope, Sequence[QuotaScope]],
    channel: Channel,
    count: int,
    now: Optional[datetime] = None,
) -> list[QuotaSnapshot]:
    """Give back ``count`` reserved sends (e.g. failed deliveries). Never goes below zero."""
    if count < 0:
        raise ValidationFailed("Rollback count must not be negative")
    today = _today(now or utc_now())
    snapshots = []
    for scope in _as_scopes(scopes):
        counter = _lock_counter(db, scope, channel, today)
        counter.daily_count = max(0, counter.daily_count - count)
        counter.total_count = max(0, counter.total_count - count)
        snapshots.append(_snapshot(scope, channel, counter, limits_for(scope.scope_type, channel)))
    db.commit()
    if count:
        logger.info("Rolled back %d %s sends", count, channel.value)
    return snapshots


def quota_snapshot(
    db: Session,
    scope: QuotaScope,
    channel: Channel,
    now: Optional[datetime] = None,
) -> QuotaSnapshot:
    """Read-only view of a counter; an unused scope reports zeros."""
    today = _today(now or utc_now())
    limits = limits_for(scope.scope_type, channel)
    counter = db.query(QuotaCounter).filter(
        QuotaCounter.scope_type == scope.scope_type,
        QuotaCounter.scope_id == scope.scope_id,
        QuotaCounter.channel == channel,
    ).first()
    if counter is None:
        return QuotaSnapshot(scope, channel, 0, limits.daily, 0, limits.total)
    daily = counter.daily_count if counter.daily_window_start >= today else 0
    return QuotaSnapshot(scope, channel, daily, limits.daily, counter.total_count, limits.total)


# ---------------------------------------------------------------------------
# Mass-send throttle: a few mass messages per event and week, spaced apart
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ThrottleSnapshot:
    channel: Channel
    used: int
    limit: int
    last_sent_at: Optional[datetime]
    next_send_allowed: Optional[datetime]

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def at_limit(self) -> bool:
        return self.remaining == 0

    @property
    def approaching_limit(self) -> bool:
        return not self.at_limit and self.used >= self.limit * settings.MASS_SEND_WARNING_RATIO

    @property
    def can_send_now(self) -> bool:
        return not self.at_limit and self.next_send_allowed is None


def weekly_limit_for(channel: Channel) -> int:
    if channel == Channel.sms:
        return settings.MASS_SMS_WEEKLY_LIMIT
    return settings.MASS_EMAIL_WEEKLY_LIMIT


def week_start(now: datetime) -> date:
    """The Sunday (UTC) that starts the week containing ``now``."""
    today = _today(now)
    return today - timedelta(days=(today.weekday() + 1) % 7)


def _next_send_allowed(last_sent_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    if last_sent_at is None:
        return None
    allowed = as_utc(last_sent_at) + timedelta(hours=settings.MASS_SEND_MIN_HOURS)
    return allowed if allowed > as_utc(now) else None


def _throttle_snapshot(throttle: Optional[MassSendThrottle], channel: Channel, now: datetime) -> ThrottleSnapshot:
    if throttle is None:
        return ThrottleSnapshot(channel, 0, weekly_limit_for(channel), None, None)
    used = throttle.weekly_count if throttle.week_start >= week_start(now) else 0
    return ThrottleSnapshot(
        channel=channel,
        used=used,
        limit=weekly_limit_for(channel),
        last_sent_at=throttle.last_sent_at,
        next_send_allowed=_next_send_allowed(throttle.last_sent_at, now),
    )


def _lock_throttle(db: Session, event_id: str, channel: Channel, now: datetime) -> MassSendThrottle:
    current_week = week_start(now)
    _insert_if_missing(
        db,
        MassSendThrottle,
        {"event_id": event_id, "channel": channel, "weekly_count": 0, "week_start": current_week},
        ["event_id", "channel"],
    )
    throttle = (
        db.query(MassSendThrottle)
        .filter(MassSendThrottle.event_id == event_id, MassSendThrottle.channel == channel)
        .with_for_update()
        .populate_existing()
        .one()
    )
    if throttle.week_start < current_week:
        throttle.weekly_count = 0
        throttle.week_start = current_week
    return throttle


def reserve_mass_send(
    db: Session,
    event_id: str,
    channel: Channel,
    now: Optional[datetime] = None,
) -> tuple[ThrottleSnapshot, Optional[datetime]]:
    """Take one mass send from the event's weekly budget.

    Raises ``QuotaExceeded`` when the week's budget is spent or the previous
    mass send on this channel was too recent. Does not commit: the slot is
    kept only if the caller's transaction commits. Returns the post-reserve
    snapshot and the previous ``last_sent_at`` (needed by ``release_mass_send``).
    """
    now = now or utc_now()
    throttle = _lock_throttle(db, event_id, channel, now)
    limit = weekly_limit_for(channel)
    scope = f"EVENT:{event_id}"

    if throttle.weekly_count >= limit:
        db.rollback()
        logger.warning("Weekly mass %s limit reached for event %s", channel.value, event_id)
        raise QuotaExceeded(
            f"Weekly mass {channel.value} limit reached ({limit} per week). Resets on Sunday.",
            scope=scope,
            window="weekly",
        )
    next_allowed = _next_send_allowed(throttle.last_sent_at, now)
    if next_allowed is not None:
        db.rollback()
        logger.warning("Mass %s for event %s refused until %s", channel.value, event_id, next_allowed.isoformat())
        raise QuotaExceeded(
            f"Must wait {settings.MASS_SEND_MIN_HOURS} hours between mass {channel.value} messages. "
            f"Next allowed: {next_allowed.isoformat()}",
            scope=scope,
            window="spacing",
            next_send_allowed=next_allowed.isoformat(),
        )

    previous_sent_at = throttle.last_sent_at
    throttle.weekly_count += 1
    throttle.last_sent_at = now
    snapshot = _throttle_snapshot(throttle, channel, now)
    if snapshot.approaching_limit or snapshot.at_limit:
        logger.warning(
            "Event %s has used %d of %d mass %s sends this week",
            event_id, snapshot.used, snapshot.limit, channel.value,
        )
    return snapshot, previous_sent_at


def release_mass_send(
    db: Session,
    event_id: str,
    channel: Channel,
    previous_sent_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> ThrottleSnapshot:
    """Hand back a mass send that never went out."""
    now = now or utc_now()
    throttle = _lock_throttle(db, event_id, channel, now)
    throttle.weekly_count = max(0, throttle.weekly_count - 1)
    throttle.last_sent_at = previous_sent_at
    db.commit()
    logger.info("Released a mass %s send for event %s", channel.value, event_id)
    return _throttle_snapshot(throttle, channel, now)


def throttle_snapshot(db: Session, event_id: str, channel: Channel, now: Optional[datetime] = None) -> ThrottleSnapshot:
    """Read-only view of the event's weekly mass-send budget."""
    throttle = db.query(MassSendThrottle).filter(
        MassSendThrottle.event_id == event_id,
        MassSendThrottle.channel == channel,
    ).first()
    return _throttle_snapshot(throttle, channel, now or utc_now())
