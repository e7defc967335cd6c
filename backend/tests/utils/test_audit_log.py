import json
from typing import Any, List

import pytest
from reservation_engine.models import ConflictType, ReservationState
from reservation_engine.utils import audit_log
from reservation_engine.utils.request_id import request_id_scope


def test_emit_audit_log_outputs_json(monkeypatch) -> None:
    messages: List[str] = []

    class DummyLogger:
        def info(self, message: str) -> None:
            messages.append(message)

    dummy_logger = DummyLogger()
    monkeypatch.setattr(audit_log, "_audit_logger", dummy_logger)

    with request_id_scope("evt_123"):
        audit_log.emit_audit_log(
            action="reservation.conflict_refunded",
            initiator="gateway",
            reservation_id="res-1",
            provider_id=3,
            payment_correlation_id="pi_123",
            status_from=ReservationState.RESERVED,
            status_to=ReservationState.CONFLICT_REFUNDED,
            extra={"conflict_type": ConflictType.BLOCKED_DATE, "amount": 5000},
        )
    assert len(messages) == 1
    payload = json.loads(messages[0])
    assert payload["action"] == "reservation.conflict_refunded"
    assert payload["initiator"] == "gateway"
    assert payload["request_id"] == "evt_123"
    assert payload["status_from"] == "reserved"
    assert payload["status_to"] == "conflict_refunded"
    assert payload["conflict_type"] == "blocked_date"
    assert payload["amount"] == 5000
    assert "timestamp" in payload


def test_emit_audit_log_drops_empty_fields(monkeypatch) -> None:
    messages: List[str] = []

    class DummyLogger:
        def info(self, message: str) -> None:
            messages.append(message)

    monkeypatch.setattr(audit_log, "_audit_logger", DummyLogger())

    audit_log.emit_audit_log(action="reservation.expired", initiator="system", reservation_id="res-2")

    payload = json.loads(messages[0])
    assert "payment_correlation_id" not in payload
    assert "message" not in payload


def test_emit_audit_log_raises_on_logger_failure(monkeypatch) -> None:
    class DummyLogger:
        def info(self, _: Any) -> None:
            raise ValueError("fail")

    dummy_logger = DummyLogger()
    monkeypatch.setattr(audit_log, "_audit_logger", dummy_logger)

    with pytest.raises(RuntimeError):
        audit_log.emit_audit_log(
            action="reservation.failed",
            initiator="gateway",
            reservation_id="res-1",
            status_from=ReservationState.RESERVED,
            status_to=ReservationState.FAILED,
        )
