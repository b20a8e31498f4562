"""
Tests para el módulo de Facturas

Cubren:
- Consolidación de gastos en la factura CLAIM abierta de la unidad
- Fusión de facturas CLAIM abiertas duplicadas
- Aplicación atómica de pagos y regla de sobrepago
- Identidad de saldo: remaining_balance = round(amount - total_paid, 2)
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import (
    InvoiceNotFoundError, InvoiceNumberCollisionError, OverpaymentError, ValidationError
)
from app.common.ledger import derive_invoice_state, round_money
from app.common.mixins import utcnow
from app.modules.auth.schemas import UserRole
from app.modules.accounting_notes.models import ExpenseSourceType, OperationalExpense
from app.modules.invoices.models import Invoice, InvoiceType, Payment
from app.modules.invoices.service import ClaimInvoiceConsolidator, InvoiceService, PaymentService
from app.modules.units.models import OwnerAssociation


def _fresh_invoice(session_factory, invoice_id):
    with session_factory() as session:
        return session.get(Invoice, invoice_id)


def _open_claims(session_factory, unit_id):
    with session_factory() as session:
        return session.query(Invoice).filter(
            Invoice.unit_id == unit_id,
            Invoice.type == InvoiceType.CLAIM,
            Invoice.is_paid.is_(False)
        ).all()


# ===== CONSOLIDACIÓN =====

class TestClaimInvoiceConsolidator:

    def test_creates_invoice_when_none_open(self, db_session, session_factory, unit):
        invoice, created = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("250.00"))
        db_session.commit()

        assert created is True
        assert invoice.invoice_number.startswith("CLM-")
        assert invoice.invoice_number.endswith("-U-101")

        stored = _fresh_invoice(session_factory, invoice.id)
        assert stored.type == InvoiceType.CLAIM
        assert stored.amount == Decimal("250.00")
        assert stored.remaining_balance == Decimal("250.00")
        assert stored.total_paid == Decimal("0.00")
        assert stored.is_paid is False

    def test_creates_placeholder_owner_association(self, db_session, unit):
        invoice, _ = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("10.00"))
        db_session.commit()

        owner = db_session.query(OwnerAssociation).filter(OwnerAssociation.unit_id == unit.id).one()
        assert owner.name == "Owner - Apartamento 101"
        assert invoice.owner_association_id == owner.id

    def test_reuses_existing_owner_association(self, db_session, unit):
        owner = OwnerAssociation(unit_id=unit.id, name="Junta Torre Norte", phone="3001234567", email="")
        db_session.add(owner)
        db_session.commit()

        invoice, _ = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("10.00"))
        db_session.commit()
        assert invoice.owner_association_id == owner.id
        assert db_session.query(OwnerAssociation).count() == 1

    def test_increments_open_invoice(self, db_session, session_factory, unit):
        consolidator = ClaimInvoiceConsolidator(db_session)
        first, _ = consolidator.consolidate(unit, Decimal("250.00"))
        db_session.commit()

        second, created = consolidator.consolidate(unit, Decimal("100.00"))
        db_session.commit()

        assert created is False
        assert second.id == first.id
        stored = _fresh_invoice(session_factory, first.id)
        assert stored.amount == Decimal("350.00")
        assert stored.remaining_balance == Decimal("350.00")
        assert stored.is_paid is False

    def test_paid_invoice_is_not_reused(self, db_session, unit, make_invoice):
        paid = make_invoice("100.00", total_paid="100.00", is_paid=True)

        invoice, created = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("40.00"))
        db_session.commit()

        assert created is True
        assert invoice.id != paid.id

    def test_management_service_invoices_are_ignored(self, db_session, unit, make_invoice):
        monthly = make_invoice("80.00", type=InvoiceType.MANAGEMENT_SERVICE)

        invoice, created = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("40.00"))
        db_session.commit()

        assert created is True
        assert invoice.id != monthly.id

    def test_units_do_not_share_invoices(self, db_session, unit, other_unit):
        consolidator = ClaimInvoiceConsolidator(db_session)
        first, _ = consolidator.consolidate(unit, Decimal("10.00"))
        second, created = consolidator.consolidate(other_unit, Decimal("20.00"))
        db_session.commit()

        assert created is True
        assert first.id != second.id

    def test_merges_duplicate_open_invoices(self, db_session, session_factory, unit, make_invoice, accountant_id):
        older = make_invoice("100.00", total_paid="50.00", issued_at=utcnow() - timedelta(days=2))
        newer = make_invoice("200.00", total_paid="50.00", issued_at=utcnow() - timedelta(days=1))
        expense = OperationalExpense(
            description="Pintura pasillo",
            amount=Decimal("100.00"),
            source_type=ExpenseSourceType.OFFICE_FUND,
            unit_id=unit.id,
            claim_invoice_id=older.id,
            recorded_by_user_id=accountant_id
        )
        payment = Payment(invoice_id=older.id, amount=Decimal("50.00"))
        db_session.add_all([expense, payment])
        db_session.commit()

        invoice, created = ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("10.00"))
        db_session.commit()

        assert created is False
        assert invoice.id == newer.id

        open_claims = _open_claims(session_factory, unit.id)
        assert [i.id for i in open_claims] == [newer.id]

        merged = open_claims[0]
        assert merged.amount == Decimal("310.00")
        assert merged.total_paid == Decimal("100.00")
        assert merged.remaining_balance == Decimal("210.00")

        with session_factory() as session:
            assert session.get(Invoice, older.id) is None
            assert session.get(OperationalExpense, expense.id).claim_invoice_id == newer.id
            assert session.get(Payment, payment.id).invoice_id == newer.id

    def test_invoice_number_collision_is_fatal(self, db_session, unit, make_invoice, monkeypatch):
        existing = make_invoice("100.00", total_paid="100.00", is_paid=True)
        monkeypatch.setattr(
            ClaimInvoiceConsolidator, "generate_invoice_number",
            lambda self, unit: existing.invoice_number
        )

        with pytest.raises(InvoiceNumberCollisionError) as exc_info:
            ClaimInvoiceConsolidator(db_session).consolidate(unit, Decimal("10.00"))
        db_session.rollback()

        assert exc_info.value.invoice_number == existing.invoice_number
        assert db_session.query(Invoice).count() == 1


# ===== PAGOS =====

class TestPaymentService:

    def test_round_trip_full_payment(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("1000.00")
        service = PaymentService(db_session)

        service.apply_payment(invoice.id, Decimal("300.00"))
        partial = _fresh_invoice(session_factory, invoice.id)
        assert partial.total_paid == Decimal("300.00")
        assert partial.remaining_balance == Decimal("700.00")
        assert partial.is_paid is False

        service.apply_payment(invoice.id, Decimal("700.00"))
        stored = _fresh_invoice(session_factory, invoice.id)
        assert stored.total_paid == Decimal("1000.00")
        assert stored.remaining_balance == Decimal("0.00")
        assert stored.is_paid is True

    @pytest.mark.parametrize("extra", ["0.01", "50.00"])
    def test_payment_on_paid_invoice_fails(self, db_session, session_factory, make_invoice, extra):
        invoice = make_invoice("1000.00")
        service = PaymentService(db_session)
        service.apply_payment(invoice.id, Decimal("300.00"))
        service.apply_payment(invoice.id, Decimal("700.00"))

        with pytest.raises(OverpaymentError) as exc_info:
            service.apply_payment(invoice.id, Decimal(extra))

        assert exc_info.value.max_allowed == Decimal("0.00")
        stored = _fresh_invoice(session_factory, invoice.id)
        assert stored.total_paid == Decimal("1000.00")
        with session_factory() as session:
            assert session.query(Payment).filter(Payment.invoice_id == invoice.id).count() == 2

    def test_overpayment_reports_remaining_balance(self, db_session, make_invoice):
        invoice = make_invoice("100.00")
        with pytest.raises(OverpaymentError) as exc_info:
            PaymentService(db_session).apply_payment(invoice.id, Decimal("150.00"))
        assert exc_info.value.max_allowed == Decimal("100.00")
        assert exc_info.value.to_dict()["error"] == "OVERPAYMENT"

    def test_payment_landing_on_tolerance_edge_is_rejected(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("100.00")
        service = PaymentService(db_session)

        with pytest.raises(OverpaymentError) as exc_info:
            service.apply_payment(invoice.id, Decimal("100.01"))
        assert exc_info.value.max_allowed == Decimal("100.00")

        service.apply_payment(invoice.id, Decimal("100.00"))
        stored = _fresh_invoice(session_factory, invoice.id)
        assert stored.total_paid == Decimal("100.00")
        assert stored.remaining_balance == Decimal("0.00")
        assert stored.is_paid is True

    @pytest.mark.parametrize("amount", ["0", "-5.00", "0.004"])
    def test_non_positive_amount_is_rejected(self, db_session, make_invoice, amount):
        invoice = make_invoice("100.00")
        with pytest.raises(ValidationError) as exc_info:
            PaymentService(db_session).apply_payment(invoice.id, Decimal(amount))
        assert not isinstance(exc_info.value, OverpaymentError)

    def test_unknown_invoice(self, db_session):
        with pytest.raises(InvoiceNotFoundError):
            PaymentService(db_session).apply_payment(uuid4(), Decimal("10.00"))

    def test_balance_identity_holds_after_each_payment(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("250.75")
        service = PaymentService(db_session)

        for amount in ["10.10", "0.25", "100.00", "40.40"]:
            service.apply_payment(invoice.id, Decimal(amount))
            stored = _fresh_invoice(session_factory, invoice.id)
            remaining, is_paid = derive_invoice_state(stored.amount, stored.total_paid)
            assert stored.remaining_balance == remaining
            assert stored.is_paid is is_paid

        assert round_money(stored.total_paid) == Decimal("150.75")

    def test_list_payments_most_recent_first(self, db_session, make_invoice):
        invoice = make_invoice("100.00")
        service = PaymentService(db_session)
        first = service.apply_payment(invoice.id, Decimal("10.00"))
        second = service.apply_payment(invoice.id, Decimal("20.00"))

        listing = service.list_payments(invoice.id)
        assert listing.total == 2
        assert [p.id for p in listing.items] == [second.id, first.id]


def test_invoice_detail_includes_payments(db_session, make_invoice):
    invoice = make_invoice("100.00")
    PaymentService(db_session).apply_payment(invoice.id, Decimal("25.00"))

    detail = InvoiceService(db_session).get_invoice_detail(invoice.id)
    assert len(detail.payments) == 1
    assert detail.remaining_balance == Decimal("75.00")


# ===== API =====

class TestInvoiceEndpoints:

    def test_apply_payment(self, client, auth_headers, make_invoice):
        invoice = make_invoice("1000.00")
        headers = auth_headers(UserRole.ACCOUNTANT)

        response = client.post(f"/invoices/{invoice.id}/payments", headers=headers, json={"amount": "300.00"})
        assert response.status_code == 201

        response = client.get(f"/invoices/{invoice.id}", headers=headers)
        assert response.status_code == 200
        data = response.json()
        assert Decimal(str(data["total_paid"])) == Decimal("300.00")
        assert Decimal(str(data["remaining_balance"])) == Decimal("700.00")
        assert data["is_paid"] is False
        assert len(data["payments"]) == 1

    def test_overpayment_is_400_with_max_allowed(self, client, auth_headers, make_invoice):
        invoice = make_invoice("100.00")
        response = client.post(
            f"/invoices/{invoice.id}/payments",
            headers=auth_headers(UserRole.ADMIN),
            json={"amount": "100.50"}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "OVERPAYMENT"
        assert body["max_allowed"] == 100.0

    def test_project_manager_cannot_pay(self, client, auth_headers, make_invoice):
        invoice = make_invoice("100.00")
        response = client.post(
            f"/invoices/{invoice.id}/payments",
            headers=auth_headers(UserRole.PROJECT_MANAGER),
            json={"amount": "10.00"}
        )
        assert response.status_code == 403

    def test_missing_token(self, client, make_invoice):
        invoice = make_invoice("100.00")
        response = client.get(f"/invoices/{invoice.id}")
        assert response.status_code in (401, 403)

    def test_unknown_invoice_is_404(self, client, auth_headers):
        response = client.get(f"/invoices/{uuid4()}/payments", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 404
        assert response.json()["error"] == "INVOICE_NOT_FOUND"
