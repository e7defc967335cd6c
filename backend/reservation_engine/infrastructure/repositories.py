from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import (
    BlockedDateRepository,
    ConfirmedBookingRepository,
    PaymentEventRepository,
    ProviderRepository,
    RefundRepository,
    Repositories,
    ReservationRepository,
)
from ..domain.services import TimeRange, claim_buckets
from ..models import (
    RELEASED_STATES,
    BlockedDate,
    ConfirmedBooking,
    ConflictType,
    PaymentEventRecord,
    PaymentWindow,
    Provider,
    RefundRecord,
    ReservationState,
    SlotClaim,
    SlotReservation,
)


class SqlAlchemyProviderRepository(ProviderRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, provider_id: int) -> Provider | None:
        return await self.session.get(Provider, provider_id)


class SqlAlchemyBlockedDateRepository(BlockedDateRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_provider(self, provider_id: int, *, days: Iterable[date]) -> List[BlockedDate]:
        day_list = list(days)
        if not day_list:
            return []
        stmt = (
            select(BlockedDate)
            .where(BlockedDate.provider_id == provider_id, BlockedDate.blocked_on.in_(day_list))
            .order_by(BlockedDate.blocked_on, BlockedDate.id)
        )
        return list(await self.session.scalars(stmt))


class SqlAlchemyConfirmedBookingRepository(ConfirmedBookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_correlation_id(self, payment_correlation_id: str) -> ConfirmedBooking | None:
        stmt = select(ConfirmedBooking).where(ConfirmedBooking.payment_correlation_id == payment_correlation_id)
        return await self.session.scalar(stmt)

    async def find_overlapping(self, provider_id: int, starts_at: datetime, ends_at: datetime) -> List[ConfirmedBooking]:
        stmt = (
            select(ConfirmedBooking)
            .where(
                ConfirmedBooking.provider_id == provider_id,
                ConfirmedBooking.status == "succeeded",
                ConfirmedBooking.starts_at < ends_at,
                ConfirmedBooking.ends_at > starts_at,
            )
            .order_by(ConfirmedBooking.starts_at)
        )
        return list(await self.session.scalars(stmt))

    async def create_from_reservation(
        self,
        reservation: SlotReservation,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> ConfirmedBooking:
        booking = ConfirmedBooking(
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
        self.session.add(booking)
        await self.session.flush()
        return booking


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession, *, claim_granularity: timedelta = timedelta(minutes=5)) -> None:
        self.session = session
        self.claim_granularity = claim_granularity

    async def get(self, reservation_id: str) -> SlotReservation | None:
        return await self.session.get(SlotReservation, reservation_id)

    async def get_by_correlation_id(
        self,
        payment_correlation_id: str,
        *,
        for_update: bool = False,
    ) -> SlotReservation | None:
        stmt = select(SlotReservation).where(SlotReservation.payment_correlation_id == payment_correlation_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self.session.scalar(stmt)

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
        """Insert the reservation and its slot claims in one flush.

        Raises `sqlalchemy.exc.IntegrityError` when any claim bucket is
        already held by another active reservation of the same provider.
        """
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
        self.session.add(reservation)
        # Parent row first so the claim foreign keys resolve on every backend.
        await self.session.flush()
        await self._add_claims(reservation)
        return reservation

    async def _add_claims(self, reservation: SlotReservation) -> None:
        self.session.add_all(
            SlotClaim(provider_id=reservation.provider_id, reservation_id=reservation.id, bucket_start=bucket)
            for bucket in claim_buckets(TimeRange(reservation.starts_at, reservation.ends_at), self.claim_granularity)
        )
        await self.session.flush()

    async def reclaim(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        now: datetime,
    ) -> bool:
        reservation = await self.session.get(SlotReservation, reservation_id)
        if reservation is None:
            return False
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(
                    update(SlotReservation)
                    .where(SlotReservation.id == reservation_id, SlotReservation.state == from_state)
                    .values(state=ReservationState.RESERVED, updated_at=now)
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount != 1:
                    return False
                await self._add_claims(reservation)
        except IntegrityError:
            # The savepoint rollback expired the row; reload it before callers read it.
            await self.session.refresh(reservation)
            raise
        return True

    async def attach_payment(
        self,
        reservation_id: str,
        *,
        payment_correlation_id: str,
        amount: int,
        now: datetime,
    ) -> bool:
        stmt = (
            update(SlotReservation)
            .where(
                SlotReservation.id == reservation_id,
                SlotReservation.state == ReservationState.RESERVED,
                SlotReservation.payment_correlation_id.is_(None),
            )
            .values(payment_correlation_id=payment_correlation_id, amount=amount, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        reservation_id: str,
        *,
        from_state: ReservationState,
        to_state: ReservationState,
        now: datetime,
    ) -> bool:
        """Move one reservation from `from_state` to `to_state` if it is still there.

        Returns False without side effects when another writer already moved it.
        """
        stmt = (
            update(SlotReservation)
            .where(SlotReservation.id == reservation_id, SlotReservation.state == from_state)
            .values(state=to_state, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        if to_state in RELEASED_STATES:
            await self.session.execute(delete(SlotClaim).where(SlotClaim.reservation_id == reservation_id))
        return True

    async def expire_elapsed(self, now: datetime) -> List[SlotReservation]:
        # Rows locked by an in-flight payment handler are skipped and picked up next sweep.
        candidates = list(
            await self.session.scalars(
                select(SlotReservation)
                .where(SlotReservation.state == ReservationState.RESERVED, SlotReservation.expires_at < now)
                .with_for_update(skip_locked=True)
            )
        )
        if not candidates:
            return []
        ids = [reservation.id for reservation in candidates]
        await self.session.execute(
            update(SlotReservation)
            .where(
                SlotReservation.id.in_(ids),
                SlotReservation.state == ReservationState.RESERVED,
                SlotReservation.expires_at < now,
            )
            .values(state=ReservationState.EXPIRED, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        expired = [reservation for reservation in candidates if reservation.state == ReservationState.EXPIRED]
        if expired:
            await self.session.execute(
                delete(SlotClaim).where(SlotClaim.reservation_id.in_([r.id for r in expired]))
            )
        return expired

    async def list_duplicate_reserved(self) -> List[List[SlotReservation]]:
        """Groups of RESERVED rows sharing provider and exact range, newest first."""
        dup_keys = (
            select(SlotReservation.provider_id, SlotReservation.starts_at, SlotReservation.ends_at)
            .where(SlotReservation.state == ReservationState.RESERVED)
            .group_by(SlotReservation.provider_id, SlotReservation.starts_at, SlotReservation.ends_at)
            .having(func.count(SlotReservation.id) > 1)
        )
        groups: List[List[SlotReservation]] = []
        for provider_id, starts_at, ends_at in (await self.session.execute(dup_keys)).all():
            stmt = (
                select(SlotReservation)
                .where(
                    SlotReservation.provider_id == provider_id,
                    SlotReservation.starts_at == starts_at,
                    SlotReservation.ends_at == ends_at,
                    SlotReservation.state == ReservationState.RESERVED,
                )
                .order_by(SlotReservation.created_at.desc(), SlotReservation.id.desc())
            )
            groups.append(list(await self.session.scalars(stmt)))
        return groups


class SqlAlchemyRefundRepository(RefundRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_correlation_id(self, payment_correlation_id: str) -> RefundRecord | None:
        stmt = select(RefundRecord).where(RefundRecord.payment_correlation_id == payment_correlation_id)
        return await self.session.scalar(stmt)

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
        record = RefundRecord(
            payment_correlation_id=payment_correlation_id,
            gateway_refund_id=gateway_refund_id,
            amount=amount,
            reason_code=reason_code,
            policy_version=policy_version,
            processed_at=processed_at,
        )
        self.session.add(record)
        await self.session.flush()
        return record


class SqlAlchemyPaymentEventRepository(PaymentEventRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, event_id: str) -> bool:
        stmt = select(PaymentEventRecord.id).where(PaymentEventRecord.event_id == event_id)
        return await self.session.scalar(stmt) is not None

    async def record(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_correlation_id: str,
        outcome: str,
        processed_at: datetime,
    ) -> None:
        self.session.add(
            PaymentEventRecord(
                event_id=event_id,
                event_type=event_type,
                payment_correlation_id=payment_correlation_id,
                outcome=outcome,
                processed_at=processed_at,
            )
        )
        await self.session.flush()


def build_repositories(session: AsyncSession, *, claim_granularity: timedelta = timedelta(minutes=5)) -> Repositories:
    return Repositories(
        providers=SqlAlchemyProviderRepository(session),
        blocked_dates=SqlAlchemyBlockedDateRepository(session),
        reservations=SqlAlchemyReservationRepository(session, claim_granularity=claim_granularity),
        bookings=SqlAlchemyConfirmedBookingRepository(session),
        refunds=SqlAlchemyRefundRepository(session),
        payment_events=SqlAlchemyPaymentEventRepository(session),
    )
