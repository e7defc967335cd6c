from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ..domain.errors import ProviderNotFoundError
from ..domain.repositories import Repositories
from ..domain.services import (
    ConflictResult,
    TimeRange,
    find_blocked_date,
    find_overlapping_booking,
    violates_minimum_notice,
)
from ..models import ConflictType
from ..utils.time import local_days

logger = logging.getLogger(__name__)


async def detect_conflict(
    repos: Repositories,
    *,
    provider_id: int,
    time_range: TimeRange,
    now: datetime,
    default_minimum_notice: timedelta,
) -> ConflictResult:
    """Decide whether `time_range` can still be honored for the provider.

    Read-only. Checks run in priority order and stop at the first hit:
    blocked date, overlap with a confirmed booking, minimum notice.
    """
    provider = await repos.providers.get(provider_id)
    if provider is None:
        raise ProviderNotFoundError(f"provider {provider_id} not found")

    # Blocked dates are stored per timezone; widen by a day so every local day
    # the range touches is among the candidates, then match precisely.
    utc_days = list(local_days(time_range.start, time_range.end, "UTC"))
    candidate_days = [utc_days[0] - timedelta(days=1), *utc_days, utc_days[-1] + timedelta(days=1)]
    blocked_dates = await repos.blocked_dates.list_for_provider(provider_id, days=candidate_days)
    blocked = find_blocked_date(blocked_dates, time_range)
    if blocked is not None:
        return ConflictResult(
            conflict_type=ConflictType.BLOCKED_DATE,
            detail=f"provider blocked {blocked.blocked_on.isoformat()}" + (f": {blocked.reason}" if blocked.reason else ""),
        )

    bookings = await repos.bookings.find_overlapping(provider_id, time_range.start, time_range.end)
    booking = find_overlapping_booking(bookings, time_range)
    if booking is not None:
        return ConflictResult(
            conflict_type=ConflictType.TIME_OVERLAP,
            detail=f"overlaps booking {booking.id} ({booking.starts_at.isoformat()} - {booking.ends_at.isoformat()})",
        )

    if provider.minimum_notice_minutes is None:
        minimum_notice = default_minimum_notice
    else:
        minimum_notice = timedelta(minutes=provider.minimum_notice_minutes)
    if violates_minimum_notice(time_range, now=now, minimum_notice=minimum_notice):
        logger.info(
            "Minimum notice violation for provider %s: starts %s, requires %s notice",
            provider_id,
            time_range.start.isoformat(),
            minimum_notice,
        )
        return ConflictResult(
            conflict_type=ConflictType.MINIMUM_NOTICE_VIOLATION,
            detail=f"requires {int(minimum_notice.total_seconds() // 60)} minutes notice",
        )

    return ConflictResult.none()
