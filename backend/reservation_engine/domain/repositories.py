from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Protocol, Sequence

from ..models import (
    BlockedDate,
    ConfirmedBooking,
    ConflictType,
    PaymentWindow,
    Provider,
    RefundRecord,
    ReservationState,
    SlotReservation,
)


class ProviderRepository(Protocol):
    async def get(self, provider_id: int) -> Provider | None: ...


class BlockedDateRepository(Protocol):
    async def list_for_provider(self, provider_id: int, *, days: Iterable[date]) -> Sequence[BlockedDate]: ...


class ConfirmedBookingRepository(Protocol):
    async def get_by_correlation_id(self, payment_correlation_id: str) -> ConfirmedBooking | None: ...

    async def find_overlapping(
        self,
        provider_id: int,
        starts_at: datetime,
        ends_at: datetime,
    ) -> Sequence[ConfirmedBooking]: ...

    async def create_from_reservation(
        self,
        reservation: SlotReservation,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> ConfirmedBooking: ...


class ReservationRepository(Protocol):
    async def get(self, reservation_id: str) -> SlotReservation | None: ...

    async def get_by_correlation_id(
        self,
        payment_correlation_id: str,
        *,
        for_update: bool = False,
    ) -> SlotReservation | None: ...

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
    ) -> SlotReservation: ...

    async def attach_payment(
        self,
        reservation_id: str,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> bool: ...

    async def transition(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        to_state: ReservationState,
        now: datetime,
    ) -> bool: ...

    async def reclaim(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        now: datetime,
    ) -> bool:
        """Put a released reservation back to RESERVED and re-take its slot claims.

        Returns False when the reservation is no longer in `from_state`.
        Raises `sqlalchemy.exc.IntegrityError`, leaving the reservation
        untouched, when another active reservation holds the slot.
        """
        ...

    async def expire_elapsed(self, now: datetime) -> list[SlotReservation]: ...

    async def list_duplicate_reserved(self) -> list[list[SlotReservation]]: ...


class RefundRepository(Protocol):
    async def get_by_correlation_id(self, payment_correlation_id: str) -> RefundRecord | None: ...

    async def create(
        self,
        *,
        payment_correlation_id: str,
        gateway_refund_id: str | None,
        amount: int,
        reason_code: ConflictType,
        policy_version: str,
        processed_at: datetime,
    ) -> RefundRecord: ...


class PaymentEventRepository(Protocol):
    async def exists(self, event_id: str) -> bool: ...

    async def record(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_correlation_id: str,
        outcome: str,
        processed_at: datetime,
    ) -> None: ...


@dataclass(frozen=True)
class Repositories:
    """The repositories of one unit of work, all bound to the same session."""

    providers: ProviderRepository
    blocked_dates: BlockedDateRepository
    reservations: ReservationRepository
    bookings: ConfirmedBookingRepository
    refunds: RefundRepository
    payment_events: PaymentEventRepository
