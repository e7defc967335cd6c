from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import assert_never

from sqlalchemy.exc import IntegrityError

from ..domain.errors import InvalidReservationStateError
from ..domain.gateways import PaymentGateway
from ..domain.payments import PaymentEvent, PaymentEventType, ReconcileAction, ReconcileOutcome
from ..domain.repositories import Repositories
from ..domain.services import ConflictResult, TimeRange
from ..models import ConflictType, ReservationState, SlotReservation
from . import notifications
from .conflicts import detect_conflict
from .refunds import process_refund

logger = logging.getLogger(__name__)

# Reached only through a succeeded event; nothing further applies to them.
_SETTLED_STATES = frozenset(
    {ReservationState.PAID, ReservationState.CONFIRMED, ReservationState.CONFLICT_REFUNDED}
)


async def handle_payment_event(
    repos: Repositories,
    gateway: PaymentGateway,
    *,
    event: PaymentEvent,
    now: datetime,
    default_minimum_notice: timedelta,
    policy_version: str,
) -> ReconcileOutcome:
    """Apply one gateway lifecycle event to its reservation.

    Must run inside a single transaction. Redelivered and out-of-order events
    are no-ops: processed event ids, existing bookings or refunds and a
    settled reservation under the row lock all short circuit, and every
    transition is conditional on the state read under that lock. A payment
    that succeeds after its reservation was released either re-takes the
    slot or is refunded in full. Any exception leaves the event
    unacknowledged so the gateway redelivers it.
    """
    correlation_id = event.payment_correlation_id
    if await repos.payment_events.exists(event.event_id):
        logger.info("Payment event %s already processed", event.event_id)
        return ReconcileOutcome(action=ReconcileAction.DUPLICATE)

    booking = await repos.bookings.get_by_correlation_id(correlation_id)
    refund = await repos.refunds.get_by_correlation_id(correlation_id)
    if booking is not None or refund is not None:
        logger.info(
            "Payment %s already settled (booking=%s, refund=%s); ignoring %s event %s",
            correlation_id,
            booking.id if booking else None,
            refund.id if refund else None,
            event.event_type.value,
            event.event_id,
        )
        outcome = ReconcileOutcome(action=ReconcileAction.DUPLICATE, booking=booking, refund=refund)
        await _record(repos, event, outcome, now)
        return outcome

    reservation = await repos.reservations.get_by_correlation_id(correlation_id, for_update=True)
    if reservation is None:
        # Not recorded: the checkout component may not have attached the payment yet.
        logger.warning("No reservation found for payment %s (event %s)", correlation_id, event.event_id)
        return ReconcileOutcome(action=ReconcileAction.UNKNOWN_RESERVATION)

    if reservation.state in _SETTLED_STATES:
        # A concurrent delivery settled it between the lookups above and the row lock.
        logger.info(
            "Reservation %s already %s; ignoring %s event %s",
            reservation.id,
            reservation.state.value,
            event.event_type.value,
            event.event_id,
        )
        outcome = ReconcileOutcome(
            action=ReconcileAction.DUPLICATE,
            reservation=reservation,
            booking=await repos.bookings.get_by_correlation_id(correlation_id),
            refund=await repos.refunds.get_by_correlation_id(correlation_id),
        )
        await _record(repos, event, outcome, now)
        return outcome

    match event.event_type:
        case PaymentEventType.SUCCEEDED:
            outcome = await _handle_succeeded(
                repos,
                gateway,
                reservation,
                event=event,
                now=now,
                default_minimum_notice=default_minimum_notice,
                policy_version=policy_version,
            )
        case PaymentEventType.FAILED:
            outcome = await _handle_failed(repos, reservation, event=event, now=now)
        case PaymentEventType.REQUIRES_ACTION:
            outcome = _handle_requires_action(reservation, event=event)
        case _:
            assert_never(event.event_type)

    await _record(repos, event, outcome, now)
    return outcome


async def _handle_succeeded(
    repos: Repositories,
    gateway: PaymentGateway,
    reservation: SlotReservation,
    *,
    event: PaymentEvent,
    now: datetime,
    default_minimum_notice: timedelta,
    policy_version: str,
) -> ReconcileOutcome:
    amount = event.amount if event.amount is not None else reservation.amount
    if amount is None:
        raise InvalidReservationStateError(f"payment amount unknown for {event.payment_correlation_id}")

    previous_state = reservation.state
    # Expired or failed: the client was charged after the slot was released.
    late = previous_state != ReservationState.RESERVED
    if late:
        logger.warning(
            "Payment %s succeeded for reservation %s in state %s; re-checking the slot",
            event.payment_correlation_id,
            reservation.id,
            previous_state.value,
        )

    provider = await repos.providers.get(reservation.provider_id)
    conflict = await detect_conflict(
        repos,
        provider_id=reservation.provider_id,
        time_range=TimeRange(reservation.starts_at, reservation.ends_at),
        now=now,
        default_minimum_notice=default_minimum_notice,
    )

    if late and not conflict.has_conflict:
        try:
            reclaimed = await repos.reservations.reclaim(reservation.id, from_state=previous_state, now=now)
        except IntegrityError:
            conflict = ConflictResult(
                conflict_type=ConflictType.TIME_OVERLAP,
                detail="slot was taken by another reservation after this one was released",
            )
        else:
            if not reclaimed:
                raise InvalidReservationStateError(
                    f"reservation {reservation.id} moved concurrently during late confirmation"
                )

    if conflict.has_conflict:
        logger.warning(
            "Conflict %s for paid reservation %s: %s",
            conflict.conflict_type.value,
            reservation.id,
            conflict.detail,
        )
        refund = await process_refund(
            repos.refunds,
            gateway,
            payment_correlation_id=event.payment_correlation_id,
            original_amount=amount,
            conflict_type=conflict.conflict_type,
            now=now,
            policy_version=policy_version,
        )
        moved = await repos.reservations.transition(
            reservation.id,
            from_state=previous_state,
            to_state=ReservationState.CONFLICT_REFUNDED,
            now=now,
        )
        if not moved:
            logger.warning(
                "Reservation %s left %s before refund transition", reservation.id, previous_state.value
            )
        return ReconcileOutcome(
            action=ReconcileAction.CONFLICT_REFUNDED,
            reservation=reservation,
            refund=refund,
            conflict=conflict,
            notifications=notifications.conflict_refunded(reservation, refund, provider, original_amount=amount),
            previous_state=previous_state,
            late_payment=late,
        )

    booking = await repos.bookings.create_from_reservation(
        reservation,
        payment_correlation_id=event.payment_correlation_id,
        amount=amount,
        now=now,
    )
    for from_state, to_state in (
        (ReservationState.RESERVED, ReservationState.PAID),
        (ReservationState.PAID, ReservationState.CONFIRMED),
    ):
        if not await repos.reservations.transition(reservation.id, from_state=from_state, to_state=to_state, now=now):
            raise InvalidReservationStateError(
                f"reservation {reservation.id} moved concurrently during confirmation"
            )
    return ReconcileOutcome(
        action=ReconcileAction.CONFIRMED,
        reservation=reservation,
        booking=booking,
        conflict=conflict,
        notifications=notifications.booking_confirmed(reservation, booking, provider),
        previous_state=previous_state,
        late_payment=late,
    )


async def _handle_failed(
    repos: Repositories,
    reservation: SlotReservation,
    *,
    event: PaymentEvent,
    now: datetime,
) -> ReconcileOutcome:
    moved = await repos.reservations.transition(
        reservation.id,
        from_state=ReservationState.RESERVED,
        to_state=ReservationState.FAILED,
        now=now,
    )
    if not moved:
        logger.info(
            "Ignoring failed event %s for reservation %s in state %s",
            event.event_id,
            reservation.id,
            reservation.state.value,
        )
        return ReconcileOutcome(action=ReconcileAction.STALE, reservation=reservation)
    return ReconcileOutcome(
        action=ReconcileAction.FAILED,
        reservation=reservation,
        notifications=notifications.payment_failed(reservation, failure_reason=event.failure_reason),
    )


def _handle_requires_action(reservation: SlotReservation, *, event: PaymentEvent) -> ReconcileOutcome:
    risk = event.voucher_expires_at is not None and event.voucher_expires_at > reservation.starts_at
    if risk:
        logger.warning(
            "Voucher for payment %s expires at %s, after appointment start %s",
            event.payment_correlation_id,
            event.voucher_expires_at.isoformat() if event.voucher_expires_at else None,
            reservation.starts_at.isoformat(),
        )
    else:
        logger.info("Payment %s requires customer action; awaiting terminal event", event.payment_correlation_id)
    return ReconcileOutcome(
        action=ReconcileAction.AWAITING_ACTION,
        reservation=reservation,
        voucher_expiry_risk=risk,
    )


async def _record(repos: Repositories, event: PaymentEvent, outcome: ReconcileOutcome, now: datetime) -> None:
    await repos.payment_events.record(
        event_id=event.event_id,
        event_type=event.event_type.value,
        payment_correlation_id=event.payment_correlation_id,
        outcome=outcome.action.value,
        processed_at=now,
    )
