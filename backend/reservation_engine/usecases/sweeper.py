from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..domain.gateways import Notification
from ..domain.repositories import ReservationRepository
from ..models import ReservationState, SlotReservation
from . import notifications

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: list[SlotReservation] = field(default_factory=list)
    deduplicated: list[SlotReservation] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.expired) + len(self.deduplicated)


async def sweep_expired(res_repo: ReservationRepository, *, now: datetime) -> SweepResult:
    """Release reservations whose payment window elapsed.

    Safe to run concurrently with itself and with payment handling: every
    update is conditional on the row still being RESERVED.
    """
    result = SweepResult()
    result.expired = await res_repo.expire_elapsed(now)
    for reservation in result.expired:
        result.notifications.extend(notifications.reservation_expired(reservation))

    for group in await res_repo.list_duplicate_reserved():
        keep, *extras = group
        for duplicate in extras:
            moved = await res_repo.transition(
                duplicate.id,
                from_state=ReservationState.RESERVED,
                to_state=ReservationState.EXPIRED,
                now=now,
            )
            if moved:
                logger.warning(
                    "Expired duplicate reservation %s (kept %s) for provider %s at %s",
                    duplicate.id,
                    keep.id,
                    duplicate.provider_id,
                    duplicate.starts_at.isoformat(),
                )
                result.deduplicated.append(duplicate)

    if result.count:
        logger.info("Sweep expired %d and deduplicated %d reservations", len(result.expired), len(result.deduplicated))
    return result
