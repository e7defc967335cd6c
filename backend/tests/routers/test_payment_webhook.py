import json
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from reservation_engine import deps
from reservation_engine.config import Settings, get_settings
from reservation_engine.domain.errors import GatewayTransientError
from reservation_engine.domain.services import TimeRange
from reservation_engine.main import app
from reservation_engine.models import ReservationState
from reservation_engine.routers import webhooks
from reservation_engine.usecases import reservations as reservation_uc
from reservation_engine.utils.request_id import get_request_id

APPOINTMENT = TimeRange(datetime(2025, 6, 1, 10, 0), datetime(2025, 6, 1, 10, 30))


class DummySession:
    async def __aenter__(self) -> "DummySession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def begin(self) -> "DummySession":
        return self


@pytest.fixture
def audit_calls(monkeypatch: pytest.MonkeyPatch, engine) -> Any:
    calls: list[dict[str, Any]] = []

    def fake_emit(**kwargs: Any) -> None:
        calls.append({**kwargs, "request_id": get_request_id()})

    async def fake_session() -> AsyncIterator[DummySession]:
        yield DummySession()

    monkeypatch.setattr(webhooks, "get_repositories", lambda session, settings: engine.repos)
    monkeypatch.setattr(webhooks, "emit_audit_log", fake_emit)
    app.dependency_overrides[deps.get_session] = fake_session
    app.dependency_overrides[get_settings] = lambda: Settings()
    app.dependency_overrides[deps.get_payment_gateway] = lambda: engine.gateway
    app.dependency_overrides[deps.get_notifier] = lambda: engine.notifier
    app.dependency_overrides[deps.get_clock] = lambda: engine.clock
    yield calls
    app.dependency_overrides.clear()


async def _reserve_and_attach(engine, amount: int = 5000) -> Any:
    reservation = await reservation_uc.create_reservation(
        engine.repos,
        provider_id=1,
        time_range=APPOINTMENT,
        client_email="ana@example.com",
        client_name="Ana",
        timezone="UTC",
        now=engine.clock.now(),
        window_policy=engine.window_policy,
        default_minimum_notice=engine.default_minimum_notice,
    )
    return await reservation_uc.attach_payment(
        engine.repos,
        reservation_id=reservation.id,
        payment_correlation_id="pi_123",
        amount=amount,
        now=engine.clock.now(),
    )


def _body(event_type: str = "payment_intent.succeeded", *, event_id: str = "evt_1", **payment: Any) -> bytes:
    payment_object = {"id": "pi_123", "amount": 5000, "amount_received": 5000, **payment}
    return json.dumps(
        {"id": event_id, "type": event_type, "created": 1748498400, "data": {"object": payment_object}}
    ).encode()


async def _post(body: bytes, signature: str | None = "t=1,v1=sig") -> Any:
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.post("/webhooks/payments", content=body, headers=headers)


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(engine, audit_calls) -> None:
    resp = await _post(_body(), signature=None)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(engine, audit_calls) -> None:
    await _reserve_and_attach(engine)
    engine.gateway.valid_signature = False

    resp = await _post(_body())

    assert resp.status_code == 400
    assert engine.bookings.rows == []


@pytest.mark.asyncio
async def test_malformed_event_is_rejected(engine, audit_calls) -> None:
    resp = await _post(b'{"id": "evt_1"}')
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_unrelated_event_type_is_acknowledged(engine, audit_calls) -> None:
    resp = await _post(_body("charge.refunded"))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "handled": False, "action": None}


@pytest.mark.asyncio
async def test_success_confirms_notifies_and_audits(engine, audit_calls) -> None:
    reservation = await _reserve_and_attach(engine)

    resp = await _post(_body())

    assert resp.status_code == 200
    assert resp.json()["action"] == "confirmed"
    assert reservation.state == ReservationState.CONFIRMED
    assert [n.template_id for n in engine.notifier.sent] == ["booking_confirmed", "booking_confirmed_provider"]
    assert [c["action"] for c in audit_calls] == ["reservation.confirmed"]
    assert audit_calls[0]["request_id"] == "evt_1"
    assert audit_calls[0]["initiator"] == "gateway"


@pytest.mark.asyncio
async def test_replayed_webhook_is_acknowledged_without_side_effects(engine, audit_calls) -> None:
    await _reserve_and_attach(engine)

    first = await _post(_body())
    second = await _post(_body())

    assert first.json()["action"] == "confirmed"
    assert second.status_code == 200
    assert second.json()["action"] == "duplicate"
    assert len(engine.bookings.rows) == 1
    assert len(engine.notifier.sent) == 2
    assert len(audit_calls) == 1


@pytest.mark.asyncio
async def test_conflict_refund_audits_refund(engine, audit_calls) -> None:
    await _reserve_and_attach(engine)
    engine.block_date(1, date(2025, 6, 1))

    resp = await _post(_body())

    assert resp.json()["action"] == "conflict_refunded"
    assert [c["action"] for c in audit_calls] == ["reservation.conflict_refunded", "refund.issued"]
    assert audit_calls[1]["extra"]["amount"] == 5000
    assert [n.template_id for n in engine.notifier.sent] == ["conflict_refund", "conflict_refund_provider"]


@pytest.mark.asyncio
async def test_transient_refund_failure_returns_503_then_recovers(engine, audit_calls) -> None:
    await _reserve_and_attach(engine)
    engine.block_date(1, date(2025, 6, 1))
    engine.gateway.refund_error = GatewayTransientError("timeout")

    failed = await _post(_body())

    assert failed.status_code == 503
    assert engine.payment_events.outcomes == {}
    assert engine.notifier.sent == []

    engine.gateway.refund_error = None
    retried = await _post(_body())

    assert retried.status_code == 200
    assert retried.json()["action"] == "conflict_refunded"
    assert len(engine.refunds.rows) == 1


@pytest.mark.asyncio
async def test_rejected_refund_returns_500(engine, audit_calls, rejected_refund) -> None:
    await _reserve_and_attach(engine)
    engine.block_date(1, date(2025, 6, 1))
    engine.gateway.refund_error = rejected_refund

    resp = await _post(_body())

    assert resp.status_code == 500
    assert audit_calls == []


@pytest.mark.asyncio
async def test_payment_failed_event(engine, audit_calls) -> None:
    reservation = await _reserve_and_attach(engine)

    resp = await _post(_body("payment_intent.payment_failed", last_payment_error={"message": "Your card was declined."}))

    assert resp.json()["action"] == "failed"
    assert reservation.state == ReservationState.FAILED
    assert audit_calls[0]["action"] == "reservation.failed"
    assert audit_calls[0]["message"] == "Your card was declined."


@pytest.mark.asyncio
async def test_voucher_expiring_after_start_is_flagged(engine, audit_calls) -> None:
    await _reserve_and_attach(engine)
    # 2025-06-02T00:00:00Z, after the 2025-06-01 10:00 start.
    next_action = {"type": "multibanco_display_details", "multibanco_display_details": {"expires_at": 1748822400}}

    resp = await _post(_body("payment_intent.requires_action", amount_received=0, next_action=next_action))

    assert resp.json()["action"] == "awaiting_action"
    assert [c["action"] for c in audit_calls] == ["payment.requires_action", "payment.voucher_expiry_risk"]
    assert audit_calls[1]["extra"]["requires_manual_review"] is True


@pytest.mark.asyncio
async def test_payment_after_expiry_confirms_and_audits_late_payment(engine, audit_calls) -> None:
    reservation = await _reserve_and_attach(engine)
    engine.clock.advance(timedelta(hours=25))
    await engine.reservations.expire_elapsed(engine.clock.now())

    resp = await _post(_body())

    assert resp.json()["action"] == "confirmed"
    assert reservation.state == ReservationState.CONFIRMED
    assert audit_calls[0]["action"] == "reservation.confirmed"
    assert audit_calls[0]["status_from"] == ReservationState.EXPIRED
    assert audit_calls[0]["extra"]["late_payment"] is True
    assert [n.template_id for n in engine.notifier.sent] == ["booking_confirmed", "booking_confirmed_provider"]


@pytest.mark.asyncio
async def test_payment_after_expiry_on_taken_slot_is_refunded(engine, audit_calls) -> None:
    reservation = await _reserve_and_attach(engine)
    engine.clock.advance(timedelta(hours=25))
    await engine.reservations.expire_elapsed(engine.clock.now())
    await reservation_uc.create_reservation(
        engine.repos,
        provider_id=1,
        time_range=APPOINTMENT,
        client_email="rui@example.com",
        client_name="Rui",
        timezone="UTC",
        now=engine.clock.now(),
        window_policy=engine.window_policy,
        default_minimum_notice=engine.default_minimum_notice,
    )

    resp = await _post(_body())

    assert resp.json()["action"] == "conflict_refunded"
    assert reservation.state == ReservationState.CONFLICT_REFUNDED
    assert engine.gateway.refund_calls[0]["amount"] == 5000
    assert [c["action"] for c in audit_calls] == ["reservation.conflict_refunded", "refund.issued"]
    assert audit_calls[0]["status_from"] == ReservationState.EXPIRED
    assert audit_calls[0]["extra"]["late_payment"] is True
    assert [n.template_id for n in engine.notifier.sent] == ["conflict_refund", "conflict_refund_provider"]


@pytest.mark.asyncio
async def test_audit_failure_returns_500(monkeypatch: pytest.MonkeyPatch, engine, audit_calls) -> None:
    await _reserve_and_attach(engine)

    def failing_emit(**kwargs: Any) -> None:
        raise RuntimeError("fail log")

    monkeypatch.setattr(webhooks, "emit_audit_log", failing_emit)

    resp = await _post(_body())

    assert resp.status_code == 500
