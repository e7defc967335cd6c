import logging
from typing import Any, assert_never

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..deps import (
    default_minimum_notice,
    get_clock,
    get_notifier,
    get_payment_gateway,
    get_raw_body,
    get_repositories,
    get_session,
)
from ..domain.errors import GatewayTransientError, RefundFailureError
from ..domain.gateways import Notifier, PaymentGateway
from ..domain.payments import PaymentEvent, ReconcileAction, ReconcileOutcome
from ..infrastructure.notifications import dispatch_notifications
from ..models import ReservationState
from ..schemas import GatewayEventEnvelope, PaymentEventAck
from ..usecases import payments as payment_usecase
from ..utils.audit_log import emit_audit_log
from ..utils.request_id import request_id_scope
from ..utils.time import Clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", response_model=PaymentEventAck)
async def receive_payment_event(
    payload: bytes = Depends(get_raw_body),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> PaymentEventAck:
    """Verify and reconcile one payment gateway event.

    A non-2xx response leaves the event unacknowledged and the gateway
    redelivers it later, which is how transient failures are retried.
    """
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing signature")
    if not gateway.verify_signature(payload, stripe_signature):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid signature")
    try:
        envelope = GatewayEventEnvelope.model_validate_json(payload)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="malformed event")

    event = envelope.to_payment_event()
    if event is None:
        logger.debug("Ignoring gateway event %s of type %s", envelope.id, envelope.type)
        return PaymentEventAck(handled=False)

    repos = get_repositories(session, settings)
    with request_id_scope(event.event_id):
        try:
            async with session.begin():
                outcome = await payment_usecase.handle_payment_event(
                    repos,
                    gateway,
                    event=event,
                    now=clock.now(),
                    default_minimum_notice=default_minimum_notice(settings),
                    policy_version=settings.refund_policy_version,
                )
        except (GatewayTransientError, OperationalError) as exc:
            logger.warning("Transient failure handling event %s, awaiting redelivery: %s", event.event_id, exc)
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="temporarily unavailable")
        except RefundFailureError as exc:
            logger.critical(
                "Refund for %s failed and needs operator review: %s", exc.payment_correlation_id, exc
            )
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="refund failed")

        await dispatch_notifications(notifier, outcome.notifications)
        try:
            _audit_outcome(event, outcome)
        except RuntimeError:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failure")

    return PaymentEventAck(handled=True, action=outcome.action.value)


def _audit_outcome(event: PaymentEvent, outcome: ReconcileOutcome) -> None:
    reservation = outcome.reservation
    common: dict[str, Any] = {
        "initiator": "gateway",
        "reservation_id": reservation.id if reservation else None,
        "provider_id": reservation.provider_id if reservation else None,
        "payment_correlation_id": event.payment_correlation_id,
    }
    match outcome.action:
        case ReconcileAction.CONFIRMED:
            emit_audit_log(
                action="reservation.confirmed",
                status_from=outcome.previous_state or ReservationState.RESERVED,
                status_to=ReservationState.CONFIRMED,
                extra={
                    "booking_id": outcome.booking.id if outcome.booking else None,
                    "amount": outcome.booking.amount if outcome.booking else None,
                    "late_payment": outcome.late_payment,
                },
                **common,
            )
        case ReconcileAction.CONFLICT_REFUNDED:
            refund = outcome.refund
            emit_audit_log(
                action="reservation.conflict_refunded",
                status_from=outcome.previous_state or ReservationState.RESERVED,
                status_to=ReservationState.CONFLICT_REFUNDED,
                message=outcome.conflict.detail if outcome.conflict else None,
                extra={
                    "conflict_type": refund.reason_code if refund else None,
                    "late_payment": outcome.late_payment,
                },
                **common,
            )
            if refund is not None:
                emit_audit_log(
                    action="refund.issued",
                    extra={
                        "refund_id": refund.gateway_refund_id,
                        "amount": refund.amount,
                        "reason_code": refund.reason_code,
                        "policy_version": refund.policy_version,
                    },
                    **common,
                )
        case ReconcileAction.FAILED:
            emit_audit_log(
                action="reservation.failed",
                status_from=ReservationState.RESERVED,
                status_to=ReservationState.FAILED,
                message=event.failure_reason,
                **common,
            )
        case ReconcileAction.AWAITING_ACTION:
            emit_audit_log(action="payment.requires_action", **common)
            if outcome.voucher_expiry_risk:
                emit_audit_log(
                    action="payment.voucher_expiry_risk",
                    message="voucher expires after the appointment starts",
                    extra={
                        "voucher_expires_at": event.voucher_expires_at.isoformat() if event.voucher_expires_at else None,
                        "starts_at": reservation.starts_at.isoformat() if reservation else None,
                        "requires_manual_review": True,
                    },
                    **common,
                )
        case ReconcileAction.DUPLICATE | ReconcileAction.STALE | ReconcileAction.UNKNOWN_RESERVATION:
            pass
        case _:
            assert_never(outcome.action)
