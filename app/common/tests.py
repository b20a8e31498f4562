"""
Tests para las primitivas monetarias y la taxonomía de errores
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.ledger import round_money, derive_invoice_state, exceeds_tolerance
from app.common.exceptions import (
    AccountingNoteNotFoundError, AlreadyProcessedError, LedgerError, NotFoundError,
    OverpaymentError, PMAdvanceInsufficientError, ValidationError
)


class TestRoundMoney:

    @pytest.mark.parametrize("value, expected", [
        (Decimal("10.005"), Decimal("10.01")),
        (Decimal("10.004"), Decimal("10.00")),
        (0.1 + 0.2, Decimal("0.30")),
        ("99.999", Decimal("100.00")),
        (5, Decimal("5.00")),
        (None, Decimal("0.00")),
    ])
    def test_round_money(self, value, expected):
        assert round_money(value) == expected

    def test_negative_values_round_half_away_from_zero(self):
        assert round_money(Decimal("-2.345")) == Decimal("-2.35")


class TestDeriveInvoiceState:

    def test_unpaid_invoice(self):
        remaining, is_paid = derive_invoice_state(Decimal("1000.00"), Decimal("300.00"))
        assert remaining == Decimal("700.00")
        assert is_paid is False

    def test_fully_paid_invoice(self):
        remaining, is_paid = derive_invoice_state(Decimal("1000.00"), Decimal("1000.00"))
        assert remaining == Decimal("0.00")
        assert is_paid is True

    def test_one_cent_residual_counts_as_paid(self):
        remaining, is_paid = derive_invoice_state(Decimal("100.00"), Decimal("99.99"))
        assert remaining == Decimal("0.01")
        assert is_paid is True

    def test_two_cent_residual_is_not_paid(self):
        _, is_paid = derive_invoice_state(Decimal("100.00"), Decimal("99.98"))
        assert is_paid is False

    def test_overpaid_invoice_has_negative_remaining(self):
        remaining, is_paid = derive_invoice_state(Decimal("500.00"), Decimal("650.00"))
        assert remaining == Decimal("-150.00")
        assert is_paid is True


def test_exceeds_tolerance():
    assert exceeds_tolerance(Decimal("650.00"), Decimal("500.00")) is True
    assert exceeds_tolerance(Decimal("500.01"), Decimal("500.00")) is False
    assert exceeds_tolerance(Decimal("500.02"), Decimal("500.00")) is True


class TestLedgerErrors:

    def test_insufficient_funds_payload(self):
        error = PMAdvanceInsufficientError(remaining=Decimal("50.00"), needed=Decimal("80.00"))
        body = error.to_dict()
        assert error.status_code == 400
        assert body["error"] == "ACCOUNTING_NOTE_PM_ADVANCE_INSUFFICIENT"
        assert body["remaining"] == 50.0
        assert body["needed"] == 80.0

    def test_not_found_serializes_ids(self):
        note_id = uuid4()
        error = AccountingNoteNotFoundError(note_id)
        assert isinstance(error, NotFoundError)
        assert error.status_code == 404
        assert error.to_dict()["note_id"] == str(note_id)

    def test_overpayment_is_a_validation_error(self):
        error = OverpaymentError(max_allowed=Decimal("0.00"))
        assert isinstance(error, ValidationError)
        assert error.to_dict()["max_allowed"] == 0.0

    def test_already_processed_is_conflict(self):
        error = AlreadyProcessedError(uuid4())
        assert isinstance(error, LedgerError)
        assert error.status_code == 409


# ===== APP =====

def test_health_carries_request_id_and_security_headers(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Strict-Transport-Security" not in response.headers


def test_request_id_is_generated(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.headers["X-Request-ID"]
