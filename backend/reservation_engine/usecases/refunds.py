from __future__ import annotations

import logging
from datetime import datetime

from ..domain.errors import GatewayRejectedError, RefundFailureError
from ..domain.gateways import PaymentGateway
from ..domain.repositories import RefundRepository
from ..domain.services import refund_amount
from ..models import ConflictType, RefundRecord

logger = logging.getLogger(__name__)


async def process_refund(
    refund_repo: RefundRepository,
    gateway: PaymentGateway,
    *,
    payment_correlation_id: str,
    original_amount: int,
    conflict_type: ConflictType,
    now: datetime,
    policy_version: str,
) -> RefundRecord:
    """Refund a payment whose slot can no longer be honored.

    Safe to retry: an existing record is returned as-is, and the gateway
    deduplicates on the payment correlation id.
    """
    existing = await refund_repo.get_by_correlation_id(payment_correlation_id)
    if existing is not None:
        return existing

    amount = refund_amount(original_amount, conflict_type)
    if amount == 0:
        # Nothing was captured; the gateway rejects zero-amount refunds.
        record = await refund_repo.create(
            payment_correlation_id=payment_correlation_id,
            gateway_refund_id=None,
            amount=0,
            reason_code=conflict_type,
            policy_version=policy_version,
            processed_at=now,
        )
        logger.info("Zero-amount payment %s settled locally (reason=%s)", payment_correlation_id, conflict_type.value)
        return record

    try:
        result = await gateway.refund(
            payment_correlation_id=payment_correlation_id,
            amount=amount,
            reason_code=conflict_type,
            metadata={
                "original_amount": str(original_amount),
                "refund_percentage": str(amount * 100 // original_amount),
                "policy_version": policy_version,
            },
        )
    except GatewayRejectedError as exc:
        existing = await refund_repo.get_by_correlation_id(payment_correlation_id)
        if existing is not None:
            logger.warning(
                "Gateway rejected refund for %s (%s); returning existing refund record",
                payment_correlation_id,
                exc,
            )
            return existing
        logger.critical(
            "Refund rejected by gateway for %s (code=%s): %s", payment_correlation_id, exc.code, exc
        )
        raise RefundFailureError(
            f"refund rejected: {exc}",
            payment_correlation_id=payment_correlation_id,
            code=exc.code,
        ) from exc

    if result.amount != amount:
        logger.warning(
            "Gateway refunded %s for %s, expected %s", result.amount, payment_correlation_id, amount
        )
    record = await refund_repo.create(
        payment_correlation_id=payment_correlation_id,
        gateway_refund_id=result.refund_id,
        amount=amount,
        reason_code=conflict_type,
        policy_version=policy_version,
        processed_at=now,
    )
    logger.info(
        "Refunded %s for %s (reason=%s, gateway refund %s, status %s)",
        amount,
        payment_correlation_id,
        conflict_type.value,
        result.refund_id,
        result.status,
    )
    return record
