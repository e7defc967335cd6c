import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Sequence

import pytest
from reservation_engine.domain.errors import GatewayRejectedError
from reservation_engine.domain.gateways import Notification, RefundResult
from reservation_engine.domain.repositories import Repositories
from reservation_engine.domain.services import PaymentWindowPolicy, TimeRange, claim_buckets
from reservation_engine.models import (
    RELEASED_STATES,
    BlockedDate,
    ConfirmedBooking,
    ConflictType,
    PaymentWindow,
    Provider,
    RefundRecord,
    ReservationState,
    SlotReservation,
)
from sqlalchemy.exc import IntegrityError

GRANULARITY = timedelta(minutes=5)


def _integrity_error(constraint: str) -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception(f"Duplicate entry for key '{constraint}'"))


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, delta: timedelta) -> datetime:
        self._now += delta
        return self._now


class FakeProviderRepo:
    def __init__(self) -> None:
        self.providers: dict[int, Provider] = {}

    async def get(self, provider_id: int) -> Provider | None:
        # Yield so concurrent callers interleave like real I/O.
        await asyncio.sleep(0)
        return self.providers.get(provider_id)


class FakeBlockedDateRepo:
    def __init__(self) -> None:
        self.rows: list[BlockedDate] = []

    async def list_for_provider(self, provider_id: int, *, days: Iterable[date]) -> list[BlockedDate]:
        wanted = set(days)
        return [row for row in self.rows if row.provider_id == provider_id and row.blocked_on in wanted]


class FakeBookingRepo:
    def __init__(self) -> None:
        self.rows: list[ConfirmedBooking] = []

    async def get_by_correlation_id(self, payment_correlation_id: str) -> ConfirmedBooking | None:
        return next((b for b in self.rows if b.payment_correlation_id == payment_correlation_id), None)

    async def find_overlapping(self, provider_id: int, starts_at: datetime, ends_at: datetime) -> list[ConfirmedBooking]:
        return [
            b
            for b in self.rows
            if b.provider_id == provider_id and b.status == "succeeded" and b.starts_at < ends_at and b.ends_at > starts_at
        ]

    async def create_from_reservation(
        self,
        reservation: SlotReservation,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> ConfirmedBooking:
        if any(b.payment_correlation_id == payment_correlation_id for b in self.rows):
            raise _integrity_error("uq_booking_payment_correlation")
        booking = ConfirmedBooking(
            id=len(self.rows) + 1,
            reservation_id=reservation.id,
            provider_id=reservation.provider_id,
            starts_at=reservation.starts_at,
            ends_at=reservation.ends_at,
            timezone=reservation.timezone,
            client_email=reservation.client_email,
            client_name=reservation.client_name,
            payment_correlation_id=payment_correlation_id,
            amount=amount,
            status="succeeded",
            created_at=now,
        )
        self.rows.append(booking)
        return booking


class FakeReservationRepo:
    """In-memory store enforcing the same claim uniqueness as `slot_claims`."""

    def __init__(self) -> None:
        self.rows: dict[str, SlotReservation] = {}
        self.claims: dict[tuple[int, datetime], str] = {}

    async def get(self, reservation_id: str) -> SlotReservation | None:
        return self.rows.get(reservation_id)

    async def get_by_correlation_id(
        self,
        payment_correlation_id: str,
        *,
        for_update: bool = False,
    ) -> SlotReservation | None:
        return next((r for r in self.rows.values() if r.payment_correlation_id == payment_correlation_id), None)

    async def create(
        self,
        *,
        provider_id: int,
        starts_at: datetime,
        ends_at: datetime,
        timezone: str,
        client_email: str,
        client_name: str,
        payment_window: PaymentWindow,
        payment_methods: Sequence[str],
        expires_at: datetime,
        now: datetime,
        payment_correlation_id: str | None = None,
        amount: int | None = None,
    ) -> SlotReservation:
        buckets = claim_buckets(TimeRange(starts_at, ends_at), GRANULARITY)
        if any((provider_id, bucket) in self.claims for bucket in buckets):
            raise _integrity_error("uq_slot_claims_bucket")
        reservation = SlotReservation(
            id=uuid.uuid4().hex,
            provider_id=provider_id,
            starts_at=starts_at,
            ends_at=ends_at,
            timezone=timezone,
            client_email=client_email,
            client_name=client_name,
            payment_correlation_id=payment_correlation_id,
            amount=amount,
            state=ReservationState.RESERVED,
            payment_window=payment_window,
            allowed_payment_methods=",".join(payment_methods),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self.rows[reservation.id] = reservation
        for bucket in buckets:
            self.claims[(provider_id, bucket)] = reservation.id
        return reservation

    def insert_unchecked(self, reservation: SlotReservation) -> None:
        """Simulate a row that slipped past the claim constraint (manual fix, migration)."""
        self.rows[reservation.id] = reservation

    async def attach_payment(
        self,
        reservation_id: str,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> bool:
        if any(r.payment_correlation_id == payment_correlation_id for r in self.rows.values()):
            raise _integrity_error("uq_res_payment_correlation")
        reservation = self.rows.get(reservation_id)
        if (
            reservation is None
            or reservation.state != ReservationState.RESERVED
            or reservation.payment_correlation_id is not None
        ):
            return False
        reservation.payment_correlation_id = payment_correlation_id
        reservation.amount = amount
        reservation.updated_at = now
        return True

    async def transition(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        to_state: ReservationState,
        now: datetime,
    ) -> bool:
        reservation = self.rows.get(reservation_id)
        if reservation is None or reservation.state != from_state:
            return False
        reservation.state = to_state
        reservation.updated_at = now
        if to_state in RELEASED_STATES:
            self._release(reservation_id)
        return True

    async def reclaim(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        now: datetime,
    ) -> bool:
        reservation = self.rows.get(reservation_id)
        if reservation is None or reservation.state != from_state:
            return False
        buckets = claim_buckets(TimeRange(reservation.starts_at, reservation.ends_at), GRANULARITY)
        if any((reservation.provider_id, bucket) in self.claims for bucket in buckets):
            raise _integrity_error("uq_slot_claims_bucket")
        reservation.state = ReservationState.RESERVED
        reservation.updated_at = now
        for bucket in buckets:
            self.claims[(reservation.provider_id, bucket)] = reservation.id
        return True

    async def expire_elapsed(self, now: datetime) -> list[SlotReservation]:
        expired = []
        for reservation in self.rows.values():
            if reservation.state == ReservationState.RESERVED and reservation.expires_at < now:
                reservation.state = ReservationState.EXPIRED
                reservation.updated_at = now
                self._release(reservation.id)
                expired.append(reservation)
        return expired

    async def list_duplicate_reserved(self) -> list[list[SlotReservation]]:
        groups: dict[tuple[int, datetime, datetime], list[SlotReservation]] = {}
        for reservation in self.rows.values():
            if reservation.state == ReservationState.RESERVED:
                key = (reservation.provider_id, reservation.starts_at, reservation.ends_at)
                groups.setdefault(key, []).append(reservation)
        return [
            sorted(group, key=lambda r: (r.created_at, r.id), reverse=True)
            for group in groups.values()
            if len(group) > 1
        ]

    def _release(self, reservation_id: str) -> None:
        for key in [k for k, owner in self.claims.items() if owner == reservation_id]:
            del self.claims[key]


class FakeRefundRepo:
    def __init__(self) -> None:
        self.rows: list[RefundRecord] = []

    async def get_by_correlation_id(self, payment_correlation_id: str) -> RefundRecord | None:
        return next((r for r in self.rows if r.payment_correlation_id == payment_correlation_id), None)

    async def create(
        self,
        *,
        payment_correlation_id: str,
        gateway_refund_id: Optional[str],
        amount: int,
        reason_code: ConflictType,
        policy_version: str,
        processed_at: datetime,
    ) -> RefundRecord:
        if any(r.payment_correlation_id == payment_correlation_id for r in self.rows):
            raise _integrity_error("uq_refund_payment_correlation")
        record = RefundRecord(
            id=len(self.rows) + 1,
            payment_correlation_id=payment_correlation_id,
            gateway_refund_id=gateway_refund_id,
            amount=amount,
            reason_code=reason_code,
            policy_version=policy_version,
            processed_at=processed_at,
        )
        self.rows.append(record)
        return record


class FakePaymentEventRepo:
    def __init__(self) -> None:
        self.outcomes: dict[str, str] = {}

    async def exists(self, event_id: str) -> bool:
        return event_id in self.outcomes

    async def record(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_correlation_id: str,
        outcome: str,
        processed_at: datetime,
    ) -> None:
        if event_id in self.outcomes:
            raise _integrity_error("uq_payment_events_event_id")
        self.outcomes[event_id] = outcome


class FakeGateway:
    def __init__(self) -> None:
        self.valid_signature = True
        self.refund_calls: list[dict[str, object]] = []
        self.refund_error: Exception | None = None

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        return self.valid_signature

    async def refund(
        self,
        *,
        payment_correlation_id: str,
        amount: int,
        reason_code: ConflictType,
        metadata: dict[str, str],
    ) -> RefundResult:
        self.refund_calls.append(
            {
                "payment_correlation_id": payment_correlation_id,
                "amount": amount,
                "reason_code": reason_code,
                "metadata": metadata,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(refund_id=f"re_{len(self.refund_calls)}", status="succeeded", amount=amount)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)


@dataclass
class FakeEngine:
    clock: FixedClock
    providers: FakeProviderRepo = field(default_factory=FakeProviderRepo)
    blocked_dates: FakeBlockedDateRepo = field(default_factory=FakeBlockedDateRepo)
    reservations: FakeReservationRepo = field(default_factory=FakeReservationRepo)
    bookings: FakeBookingRepo = field(default_factory=FakeBookingRepo)
    refunds: FakeRefundRepo = field(default_factory=FakeRefundRepo)
    payment_events: FakePaymentEventRepo = field(default_factory=FakePaymentEventRepo)
    gateway: FakeGateway = field(default_factory=FakeGateway)
    notifier: RecordingNotifier = field(default_factory=RecordingNotifier)
    window_policy: PaymentWindowPolicy = field(default_factory=PaymentWindowPolicy)
    default_minimum_notice: timedelta = timedelta(hours=24)

    @property
    def repos(self) -> Repositories:
        return Repositories(
            providers=self.providers,
            blocked_dates=self.blocked_dates,
            reservations=self.reservations,
            bookings=self.bookings,
            refunds=self.refunds,
            payment_events=self.payment_events,
        )

    def add_provider(self, provider_id: int = 1, *, minimum_notice_minutes: Optional[int] = 60) -> Provider:
        provider = Provider(
            id=provider_id,
            name=f"Provider {provider_id}",
            email=f"provider{provider_id}@example.com",
            timezone="UTC",
            minimum_notice_minutes=minimum_notice_minutes,
            created_at=self.clock.now(),
            updated_at=self.clock.now(),
        )
        self.providers.providers[provider_id] = provider
        return provider

    def block_date(self, provider_id: int, day: date, *, timezone: str = "UTC", reason: str | None = None) -> BlockedDate:
        blocked = BlockedDate(
            id=len(self.blocked_dates.rows) + 1,
            provider_id=provider_id,
            blocked_on=day,
            timezone=timezone,
            reason=reason,
            created_at=self.clock.now(),
        )
        self.blocked_dates.rows.append(blocked)
        return blocked

    def add_booking(self, provider_id: int, starts_at: datetime, ends_at: datetime, correlation_id: str = "pi_existing") -> ConfirmedBooking:
        booking = ConfirmedBooking(
            id=len(self.bookings.rows) + 100,
            reservation_id=uuid.uuid4().hex,
            provider_id=provider_id,
            starts_at=starts_at,
            ends_at=ends_at,
            timezone="UTC",
            client_email="other@example.com",
            client_name="Other Client",
            payment_correlation_id=correlation_id,
            amount=5000,
            status="succeeded",
            created_at=self.clock.now(),
        )
        self.bookings.rows.append(booking)
        return booking


# 2025-05-28 10:00 UTC: four days before the reference appointment.
REFERENCE_NOW = datetime(2025, 5, 28, 10, 0)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(REFERENCE_NOW)


@pytest.fixture
def engine(clock: FixedClock) -> FakeEngine:
    fake = FakeEngine(clock=clock)
    fake.add_provider(1)
    return fake


@pytest.fixture
def rejected_refund() -> GatewayRejectedError:
    return GatewayRejectedError("charge already refunded", code="charge_already_refunded")
