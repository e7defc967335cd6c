from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Optional

from ..models import ConfirmedBooking, RefundRecord, ReservationState, SlotReservation
from .gateways import Notification
from .services import ConflictResult


class PaymentEventType(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


class ReconcileAction(StrEnum):
    DUPLICATE = "duplicate"
    CONFIRMED = "confirmed"
    CONFLICT_REFUNDED = "conflict_refunded"
    FAILED = "failed"
    AWAITING_ACTION = "awaiting_action"
    STALE = "stale"
    UNKNOWN_RESERVATION = "unknown_reservation"


@dataclass(frozen=True)
class PaymentEvent:
    """Gateway lifecycle event, already authenticated."""

    event_id: str
    event_type: PaymentEventType
    payment_correlation_id: str
    amount: Optional[int]
    occurred_at: datetime
    failure_reason: Optional[str] = None
    voucher_expires_at: Optional[datetime] = None


@dataclass
class ReconcileOutcome:
    action: ReconcileAction
    reservation: Optional[SlotReservation] = None
    booking: Optional[ConfirmedBooking] = None
    refund: Optional[RefundRecord] = None
    conflict: Optional[ConflictResult] = None
    notifications: list[Notification] = field(default_factory=list)
    # True when the reservation starts before a pending voucher can settle.
    voucher_expiry_risk: bool = False
    # State the reservation was read in; EXPIRED or FAILED for a late payment.
    previous_state: Optional[ReservationState] = None
    late_payment: bool = False
