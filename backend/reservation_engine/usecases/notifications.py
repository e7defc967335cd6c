from __future__ import annotations

from typing import Optional

from ..domain.gateways import Notification
from ..domain.services import conflict_explanation
from ..models import ConfirmedBooking, Provider, RefundRecord, SlotReservation
from ..utils.time import utc_naive_to_zone


def _appointment_variables(reservation: SlotReservation, provider: Optional[Provider]) -> dict[str, object]:
    return {
        "reservation_id": reservation.id,
        "client_name": reservation.client_name,
        "provider_name": provider.name if provider else None,
        "starts_at": utc_naive_to_zone(reservation.starts_at, reservation.timezone).isoformat(),
        "ends_at": utc_naive_to_zone(reservation.ends_at, reservation.timezone).isoformat(),
        "timezone": reservation.timezone,
    }


def booking_confirmed(
    reservation: SlotReservation,
    booking: ConfirmedBooking,
    provider: Optional[Provider],
) -> list[Notification]:
    variables = {**_appointment_variables(reservation, provider), "amount": booking.amount}
    notifications = [Notification(reservation.client_email, "booking_confirmed", variables)]
    if provider is not None:
        notifications.append(Notification(provider.email, "booking_confirmed_provider", variables))
    return notifications


def conflict_refunded(
    reservation: SlotReservation,
    refund: RefundRecord,
    provider: Optional[Provider],
    *,
    original_amount: int,
) -> list[Notification]:
    variables = {
        **_appointment_variables(reservation, provider),
        "conflict_type": refund.reason_code.value,
        "reason": conflict_explanation(refund.reason_code),
        "original_amount": original_amount,
        "refund_amount": refund.amount,
        "payment_correlation_id": refund.payment_correlation_id,
    }
    notifications = [Notification(reservation.client_email, "conflict_refund", variables)]
    if provider is not None:
        notifications.append(Notification(provider.email, "conflict_refund_provider", variables))
    return notifications


def payment_failed(reservation: SlotReservation, *, failure_reason: Optional[str]) -> list[Notification]:
    variables = {**_appointment_variables(reservation, None), "failure_reason": failure_reason or "unknown"}
    return [Notification(reservation.client_email, "payment_failed", variables)]


def reservation_expired(reservation: SlotReservation) -> list[Notification]:
    return [Notification(reservation.client_email, "reservation_expired", _appointment_variables(reservation, None))]
