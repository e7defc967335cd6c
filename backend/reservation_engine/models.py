from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String


class Base(DeclarativeBase):
    pass


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda values: [e.value for e in values],
        native_enum=False,
    )


class ReservationState(StrEnum):
    RESERVED = "reserved"
    PAID = "paid"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CONFLICT_REFUNDED = "conflict_refunded"
    FAILED = "failed"


# States whose slot claims have been released.
RELEASED_STATES = frozenset(
    {ReservationState.EXPIRED, ReservationState.FAILED, ReservationState.CONFLICT_REFUNDED}
)


class PaymentWindow(StrEnum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"


class ConflictType(StrEnum):
    BLOCKED_DATE = "blocked_date"
    TIME_OVERLAP = "time_overlap"
    MINIMUM_NOTICE_VIOLATION = "minimum_notice_violation"
    NONE = "none"


class Provider(Base):
    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    # NULL means the platform default applies.
    minimum_notice_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    blocked_dates: Mapped[list["BlockedDate"]] = relationship(back_populates="provider")


class BlockedDate(Base):
    __tablename__ = "blocked_dates"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", "timezone", name="uq_blocked_dates"),
        Index("idx_blocked_dates_provider", "provider_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), nullable=False)
    blocked_on: Mapped[date] = mapped_column("date", Date, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    provider: Mapped["Provider"] = relationship(back_populates="blocked_dates")


class SlotReservation(Base):
    __tablename__ = "slot_reservations"
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="chk_res_time"),
        UniqueConstraint("payment_correlation_id", name="uq_res_payment_correlation"),
        Index("idx_res_provider_range", "provider_id", "starts_at", "ends_at"),
        Index("idx_res_state_expires", "state", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    # Display only; all comparisons use the UTC columns.
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_correlation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    state: Mapped[ReservationState] = mapped_column(
        _str_enum(ReservationState),
        nullable=False,
        default=ReservationState.RESERVED,
    )
    payment_window: Mapped[PaymentWindow] = mapped_column(_str_enum(PaymentWindow), nullable=False)
    allowed_payment_methods: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    claims: Mapped[list["SlotClaim"]] = relationship(back_populates="reservation")

    @property
    def payment_methods(self) -> list[str]:
        return [m for m in self.allowed_payment_methods.split(",") if m]


class SlotClaim(Base):
    """One fixed-size bucket of provider time held by an active reservation.

    The unique constraint is what prevents two overlapping reservations from
    committing, whatever the application-level checks concluded.
    """

    __tablename__ = "slot_claims"
    __table_args__ = (
        UniqueConstraint("provider_id", "bucket_start", name="uq_slot_claims_bucket"),
        Index("idx_slot_claims_reservation", "reservation_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("slot_reservations.id"), nullable=False)
    bucket_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    reservation: Mapped["SlotReservation"] = relationship(back_populates="claims")


class ConfirmedBooking(Base):
    __tablename__ = "confirmed_bookings"
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="chk_booking_time"),
        UniqueConstraint("payment_correlation_id", name="uq_booking_payment_correlation"),
        UniqueConstraint("reservation_id", name="uq_booking_reservation"),
        Index("idx_booking_provider_range", "provider_id", "starts_at", "ends_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("slot_reservations.id"), nullable=False)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_correlation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="succeeded")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class RefundRecord(Base):
    __tablename__ = "refund_records"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="chk_refund_amount"),
        UniqueConstraint("payment_correlation_id", name="uq_refund_payment_correlation"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    payment_correlation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason_code: Mapped[ConflictType] = mapped_column(_str_enum(ConflictType), nullable=False)
    policy_version: Mapped[str] = mapped_column(String(32), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class PaymentEventRecord(Base):
    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_payment_events_event_id"),
        Index("idx_payment_events_correlation", "payment_correlation_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_correlation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[str] = mapped_column(String(64), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
