from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .services import ConflictResult


class DomainError(Exception):
    """Base class for errors raised by the reservation engine."""


class ProviderNotFoundError(DomainError):
    pass


class InvalidTimeRangeError(DomainError):
    pass


class ReservationNotFoundError(DomainError):
    pass


class InvalidReservationStateError(DomainError):
    pass


class SlotTakenError(DomainError):
    """Another reservation claimed an overlapping range first. Retry with a different slot."""


class ConflictError(DomainError):
    """Advisory rejection before payment: the slot cannot be honored."""

    def __init__(self, result: "ConflictResult") -> None:
        super().__init__(result.detail or result.conflict_type.value)
        self.result = result


class GatewayTransientError(DomainError):
    """Network or 5xx failure talking to the payment gateway."""


class GatewayRejectedError(DomainError):
    """The gateway refused the request (already refunded, amount mismatch, ...)."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class RefundFailureError(DomainError):
    """A refund could not be issued and needs manual operator review."""

    def __init__(self, message: str, *, payment_correlation_id: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.payment_correlation_id = payment_correlation_id
        self.code = code
