"""Mapeo de errores de dominio a respuestas HTTP"""
from datetime import datetime

import pytest

from shared.exceptions import (
    InsufficientInventory,
    InvalidStateTransition,
    InvariantViolation,
    OrderNotFound,
    PaymentProviderRejected,
    PaymentProviderUnavailable,
    TicketAlreadyUsed,
    TicketNotFound,
)
from shared.utils.http_errors import to_http_exception


@pytest.mark.parametrize("error, status_code", [
    (InsufficientInventory(["seat:1"]), 409),
    (InvalidStateTransition("o-1", "PAID", "CANCELLED"), 409),
    (TicketAlreadyUsed("t-1", datetime(2026, 3, 1, 20, 15)), 409),
    (OrderNotFound("o-1"), 404),
    (TicketNotFound("ticket:x"), 404),
    (PaymentProviderRejected("STRIPE", 402, "tarjeta rechazada"), 400),
    (PaymentProviderUnavailable("PAGOTIC", 3, "timeout"), 503),
    (InvariantViolation("ledger divergente", {"order_id": "o-1"}), 500),
])
def test_status_codes(error, status_code):
    assert to_http_exception(error).status_code == status_code


def test_already_used_includes_original_timestamp():
    detail = to_http_exception(TicketAlreadyUsed("t-1", datetime(2026, 3, 1, 20, 15))).detail
    assert detail["error"] == "ticket_already_used"
    assert detail["used_at"] == "2026-03-01T20:15:00"


def test_invariant_violation_hides_internal_context():
    detail = to_http_exception(InvariantViolation("ledger divergente", {"seat_id": "s-1"})).detail
    assert detail["error"] == "invariant_violation"
    assert "s-1" not in str(detail)


def test_provider_unavailable_is_safe_to_retry():
    detail = to_http_exception(PaymentProviderUnavailable("STRIPE", 3, "503")).detail
    assert "reintentar" in detail["detail"]
