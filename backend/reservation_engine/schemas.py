from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_serializer, field_validator

from .domain.payments import PaymentEvent, PaymentEventType
from .models import PaymentWindow, ReservationState, SlotReservation
from .utils.time import utc_naive_to_zone

# Gateway event types this service reconciles; everything else is acknowledged and ignored.
GATEWAY_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentEventType.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventType.FAILED,
    "payment_intent.requires_action": PaymentEventType.REQUIRES_ACTION,
}


class ReservationCreate(BaseModel):
    provider_id: int = Field(ge=1)
    starts_at: datetime
    ends_at: datetime
    client_email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    client_name: str = Field(min_length=1, max_length=255)
    timezone: str = Field(default="UTC", max_length=64)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class PaymentAttach(BaseModel):
    payment_correlation_id: str = Field(min_length=1, max_length=255)
    amount: int = Field(ge=0, description="Amount in the currency's minor unit")


class ReservationRead(BaseModel):
    reservation_id: str
    provider_id: int
    starts_at: datetime
    ends_at: datetime
    timezone: str
    client_email: str
    client_name: str
    state: ReservationState
    payment_window: PaymentWindow
    payment_methods: list[str]
    expires_at: datetime
    payment_correlation_id: Optional[str] = None
    amount: Optional[int] = None

    @field_serializer("starts_at", "ends_at", "expires_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(ZoneInfo(self.timezone)).isoformat()

    @classmethod
    def from_db(cls, *, reservation: SlotReservation) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            provider_id=reservation.provider_id,
            starts_at=utc_naive_to_zone(reservation.starts_at, reservation.timezone),
            ends_at=utc_naive_to_zone(reservation.ends_at, reservation.timezone),
            timezone=reservation.timezone,
            client_email=reservation.client_email,
            client_name=reservation.client_name,
            state=reservation.state,
            payment_window=reservation.payment_window,
            payment_methods=reservation.payment_methods,
            expires_at=utc_naive_to_zone(reservation.expires_at, reservation.timezone),
            payment_correlation_id=reservation.payment_correlation_id,
            amount=reservation.amount,
        )


class GatewayPaymentError(BaseModel):
    message: Optional[str] = None


class GatewayPaymentObject(BaseModel):
    id: str
    amount: Optional[int] = None
    amount_received: Optional[int] = None
    last_payment_error: Optional[GatewayPaymentError] = None
    next_action: Optional[dict[str, Any]] = None

    def voucher_expires_at(self) -> Optional[datetime]:
        """Expiry of a delayed-settlement voucher (e.g. Multibanco), naive UTC."""
        if not self.next_action:
            return None
        details = self.next_action.get("multibanco_display_details") or {}
        expires_at = details.get("expires_at")
        if expires_at is None:
            return None
        return datetime.fromtimestamp(int(expires_at), tz=timezone.utc).replace(tzinfo=None)


class GatewayEventData(BaseModel):
    object: GatewayPaymentObject


class GatewayEventEnvelope(BaseModel):
    id: str
    type: str
    created: int
    data: GatewayEventData

    def to_payment_event(self) -> Optional[PaymentEvent]:
        event_type = GATEWAY_EVENT_TYPES.get(self.type)
        if event_type is None:
            return None
        payment = self.data.object
        amount = payment.amount_received if event_type == PaymentEventType.SUCCEEDED else None
        error = payment.last_payment_error
        return PaymentEvent(
            event_id=self.id,
            event_type=event_type,
            payment_correlation_id=payment.id,
            amount=amount if amount else payment.amount,
            occurred_at=datetime.fromtimestamp(self.created, tz=timezone.utc).replace(tzinfo=None),
            failure_reason=error.message if error else None,
            voucher_expires_at=payment.voucher_expires_at(),
        )


class PaymentEventAck(BaseModel):
    received: bool = True
    handled: bool
    action: Optional[str] = None


class SweepRead(BaseModel):
    expired: int
    deduplicated: int
    count: int
