from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, assert_never

from ..models import BlockedDate, ConfirmedBooking, ConflictType, PaymentWindow
from ..utils.time import local_days
from .errors import InvalidTimeRangeError

_BUCKET_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class TimeRange:
    """Half-open naive-UTC range [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is not None or self.end.tzinfo is not None:
            raise InvalidTimeRangeError("time range must be naive UTC")
        if self.start >= self.end:
            raise InvalidTimeRangeError("start must be earlier than end")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class ConflictResult:
    conflict_type: ConflictType
    detail: Optional[str] = None

    @property
    def has_conflict(self) -> bool:
        return self.conflict_type != ConflictType.NONE

    @classmethod
    def none(cls) -> "ConflictResult":
        return cls(conflict_type=ConflictType.NONE)


@dataclass(frozen=True)
class PaymentWindowPolicy:
    immediate_window: timedelta = timedelta(hours=72)
    immediate_expiry: timedelta = timedelta(minutes=30)
    delayed_expiry: timedelta = timedelta(hours=24)
    instant_methods: tuple[str, ...] = ("card",)
    delayed_methods: tuple[str, ...] = ("card", "multibanco")


@dataclass(frozen=True)
class PaymentWindowChoice:
    window: PaymentWindow
    expires_at: datetime
    payment_methods: tuple[str, ...] = field(default_factory=tuple)


def find_blocked_date(blocked_dates: Iterable[BlockedDate], time_range: TimeRange) -> Optional[BlockedDate]:
    """Return the first blocked date falling on any local day the range touches.

    Each blocked date is interpreted in its own timezone, so a provider who
    blocks a day while travelling keeps the day they actually meant.
    """
    for blocked in blocked_dates:
        if blocked.blocked_on in set(local_days(time_range.start, time_range.end, blocked.timezone)):
            return blocked
    return None


def find_overlapping_booking(
    bookings: Iterable[ConfirmedBooking], time_range: TimeRange
) -> Optional[ConfirmedBooking]:
    for booking in bookings:
        if time_range.overlaps(booking.starts_at, booking.ends_at):
            return booking
    return None


def violates_minimum_notice(time_range: TimeRange, *, now: datetime, minimum_notice: timedelta) -> bool:
    return time_range.start - now < minimum_notice


def choose_payment_window(time_range: TimeRange, *, now: datetime, policy: PaymentWindowPolicy) -> PaymentWindowChoice:
    """Imminent appointments only accept instantly-settling payment methods.

    Delayed-settlement methods can take days to clear, so they are offered
    only when the appointment is further away than `policy.immediate_window`.
    """
    if time_range.start - now <= policy.immediate_window:
        return PaymentWindowChoice(
            window=PaymentWindow.IMMEDIATE,
            expires_at=now + policy.immediate_expiry,
            payment_methods=policy.instant_methods,
        )
    return PaymentWindowChoice(
        window=PaymentWindow.DELAYED,
        expires_at=now + policy.delayed_expiry,
        payment_methods=policy.delayed_methods,
    )


def claim_buckets(time_range: TimeRange, granularity: timedelta) -> list[datetime]:
    """Bucket starts covering the range, aligned to `granularity` since the epoch."""
    step = int(granularity.total_seconds())
    if step <= 0:
        raise ValueError("granularity must be positive")
    offset = int((time_range.start - _BUCKET_EPOCH).total_seconds()) // step * step
    bucket = _BUCKET_EPOCH + timedelta(seconds=offset)
    buckets: list[datetime] = []
    while bucket < time_range.end:
        buckets.append(bucket)
        bucket += granularity
    return buckets


def ensure_aligned(time_range: TimeRange, granularity: timedelta) -> None:
    """Reject ranges whose start or end falls inside a claim bucket.

    Claims cover whole buckets, so a misaligned range would collide with a
    neighbour that only touches it.
    """
    if granularity <= timedelta(0):
        raise ValueError("granularity must be positive")
    for boundary in (time_range.start, time_range.end):
        if (boundary - _BUCKET_EPOCH) % granularity:
            minutes = int(granularity.total_seconds() // 60)
            raise InvalidTimeRangeError(f"start and end must fall on a {minutes}-minute boundary")


def refund_amount(original_amount: int, conflict_type: ConflictType) -> int:
    """Amount to refund for a conflict discovered after payment.

    Every conflict refunds in full. The conflict type is kept on the refund
    record for dispute handling only.
    """
    if original_amount < 0:
        raise ValueError("original_amount must not be negative")
    match conflict_type:
        case ConflictType.BLOCKED_DATE | ConflictType.TIME_OVERLAP | ConflictType.MINIMUM_NOTICE_VIOLATION:
            return original_amount
        case ConflictType.NONE:
            raise ValueError("no refund applies without a conflict")
        case _:
            assert_never(conflict_type)


def conflict_explanation(conflict_type: ConflictType) -> str:
    """Client-facing reason shown alongside a refund or rejection."""
    match conflict_type:
        case ConflictType.BLOCKED_DATE:
            return "The provider is unavailable on this date."
        case ConflictType.TIME_OVERLAP:
            return "This time slot has already been booked."
        case ConflictType.MINIMUM_NOTICE_VIOLATION:
            return "The appointment is too close to its start time for the provider to accept it."
        case ConflictType.NONE:
            return ""
        case _:
            assert_never(conflict_type)
