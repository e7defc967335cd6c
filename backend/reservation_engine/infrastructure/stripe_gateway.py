from __future__ import annotations

import asyncio
import logging

import stripe

from ..domain.errors import GatewayRejectedError, GatewayTransientError
from ..domain.gateways import PaymentGateway, RefundResult
from ..models import ConflictType

logger = logging.getLogger(__name__)


class StripePaymentGateway(PaymentGateway):
    """Payment gateway backed by Stripe PaymentIntents.

    The payment correlation id is the PaymentIntent id. Refunds are requested
    with an idempotency key derived from it, so a retried refund for the same
    payment returns the original refund instead of issuing a second one.
    """

    def __init__(self, *, api_key: str, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            raise RuntimeError("webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            logger.warning("Invalid webhook signature")
            return False
        return True

    async def refund(
        self,
        *,
        payment_correlation_id: str,
        amount: int,
        reason_code: ConflictType,
        metadata: dict[str, str],
    ) -> RefundResult:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=payment_correlation_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={**metadata, "conflict_type": reason_code.value},
                idempotency_key=f"conflict-refund:{payment_correlation_id}",
                api_key=self.api_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise GatewayTransientError(str(exc)) from exc
        except stripe.InvalidRequestError as exc:
            raise GatewayRejectedError(str(exc), code=exc.code) from exc
        except stripe.StripeError as exc:
            if exc.http_status is not None and exc.http_status >= 500:
                raise GatewayTransientError(str(exc)) from exc
            raise GatewayRejectedError(str(exc), code=exc.code) from exc
        return RefundResult(refund_id=refund.id, status=refund.status or "unknown", amount=refund.amount)
