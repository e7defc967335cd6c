from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from ..domain.errors import (
    ConflictError,
    InvalidReservationStateError,
    InvalidTimeRangeError,
    ReservationNotFoundError,
    SlotTakenError,
)
from ..domain.repositories import Repositories
from ..domain.services import PaymentWindowPolicy, TimeRange, choose_payment_window, ensure_aligned
from ..models import ReservationState, SlotReservation
from .conflicts import detect_conflict

logger = logging.getLogger(__name__)


async def create_reservation(
    repos: Repositories,
    *,
    provider_id: int,
    time_range: TimeRange,
    client_email: str,
    client_name: str,
    timezone: str,
    now: datetime,
    window_policy: PaymentWindowPolicy,
    default_minimum_notice: timedelta,
    claim_granularity: timedelta = timedelta(minutes=5),
) -> SlotReservation:
    """Claim the slot for a client who is about to pay.

    The conflict check here is advisory and only fails fast. Two requests can
    both pass it; the slot claim constraint in the store decides the winner.
    """
    if time_range.start <= now:
        raise InvalidTimeRangeError("appointment must start in the future")
    ensure_aligned(time_range, claim_granularity)

    result = await detect_conflict(
        repos,
        provider_id=provider_id,
        time_range=time_range,
        now=now,
        default_minimum_notice=default_minimum_notice,
    )
    if result.has_conflict:
        raise ConflictError(result)

    choice = choose_payment_window(time_range, now=now, policy=window_policy)
    try:
        reservation = await repos.reservations.create(
            provider_id=provider_id,
            starts_at=time_range.start,
            ends_at=time_range.end,
            timezone=timezone,
            client_email=client_email,
            client_name=client_name,
            payment_window=choice.window,
            payment_methods=choice.payment_methods,
            expires_at=choice.expires_at,
            now=now,
        )
    except IntegrityError as exc:
        logger.info("Slot claim rejected for provider %s at %s", provider_id, time_range.start.isoformat())
        raise SlotTakenError("slot no longer available") from exc
    return reservation


async def attach_payment(
    repos: Repositories,
    *,
    reservation_id: str,
    payment_correlation_id: str,
    amount: int,
    now: datetime,
) -> SlotReservation:
    reservation = await repos.reservations.get(reservation_id)
    if reservation is None:
        raise ReservationNotFoundError("reservation not found")
    # Idempotent: the checkout component may retry the same attachment.
    if reservation.payment_correlation_id == payment_correlation_id:
        return reservation
    if reservation.state != ReservationState.RESERVED or reservation.payment_correlation_id is not None:
        raise InvalidReservationStateError("reservation cannot accept a payment")

    try:
        attached = await repos.reservations.attach_payment(
            reservation_id,
            payment_correlation_id=payment_correlation_id,
            amount=amount,
            now=now,
        )
    except IntegrityError as exc:
        raise InvalidReservationStateError("payment already attached to another reservation") from exc
    if not attached:
        raise InvalidReservationStateError("reservation cannot accept a payment")
    reservation.payment_correlation_id = payment_correlation_id
    reservation.amount = amount
    return reservation


async def get_reservation(repos: Repositories, *, reservation_id: str) -> SlotReservation | None:
    return await repos.reservations.get(reservation_id)
