"""
Tests para las rutinas de mantenimiento de facturas

- reconcile_all: corrige drift desde los pagos y es idempotente
- repair_overpayments: elimina el pago más reciente hasta quedar en tolerancia
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from app.common.exceptions import PermissionDeniedError
from app.common.mixins import utcnow
from app.modules.auth.schemas import UserRole
from app.modules.invoices.models import Invoice, InvoiceType, Payment
from app.modules.invoices.service import PaymentService
from app.modules.reconciliation.service import ReconciliationService


def _add_payments(db_session, invoice, amounts):
    """Pagos cargados por fuera de apply_payment (p.ej. una importación masiva)"""
    base = utcnow() - timedelta(hours=1)
    payments = [
        Payment(invoice_id=invoice.id, amount=Decimal(amount), created_at=base + timedelta(minutes=i))
        for i, amount in enumerate(amounts)
    ]
    db_session.add_all(payments)
    db_session.commit()
    return payments


def _fresh(session_factory, invoice_id):
    with session_factory() as session:
        return session.get(Invoice, invoice_id)


# ===== RECONCILIACIÓN =====

class TestReconcileAll:

    def test_fixes_drift_from_payments(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["200.00", "100.00"])

        report = ReconciliationService(db_session).reconcile_all()

        assert report.fixed_invoices == 1
        item = report.discrepancies[0]
        assert item.invoice_id == invoice.id
        assert item.total_paid_before == Decimal("0.00")
        assert item.total_paid_after == Decimal("300.00")
        assert item.remaining_balance_before == Decimal("500.00")
        assert item.remaining_balance_after == Decimal("200.00")
        assert item.payment_count == 2

        stored = _fresh(session_factory, invoice.id)
        assert stored.total_paid == Decimal("300.00")
        assert stored.remaining_balance == Decimal("200.00")
        assert stored.is_paid is False

    def test_marks_fully_paid_invoice(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("100.00")
        _add_payments(db_session, invoice, ["60.00", "40.00"])

        ReconciliationService(db_session).reconcile_all()

        stored = _fresh(session_factory, invoice.id)
        assert stored.remaining_balance == Decimal("0.00")
        assert stored.is_paid is True

    def test_second_run_is_a_no_op(self, db_session, make_invoice):
        invoice = make_invoice("500.00")
        make_invoice("80.00", type=InvoiceType.MANAGEMENT_SERVICE)
        _add_payments(db_session, invoice, ["125.00"])
        service = ReconciliationService(db_session)

        first = service.reconcile_all()
        second = service.reconcile_all()

        assert first.fixed_invoices == 1
        assert second.total_invoices == 2
        assert second.fixed_invoices == 0
        assert second.discrepancies == []

    def test_consistent_invoices_are_not_flagged(self, db_session, make_invoice):
        make_invoice("100.00")
        report = ReconciliationService(db_session).reconcile_all()
        assert report.total_invoices == 1
        assert report.items[0].discrepancy is False
        assert report.discrepancies == []

    def test_dry_run_changes_nothing(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["200.00"])

        report = ReconciliationService(db_session).reconcile_all(dry_run=True)

        assert report.dry_run is True
        assert report.fixed_invoices == 0
        assert len(report.discrepancies) == 1
        assert report.discrepancies[0].total_paid_after == Decimal("200.00")
        assert _fresh(session_factory, invoice.id).total_paid == Decimal("0.00")


# ===== SOBREPAGOS =====

class TestRepairOverpayments:

    def test_deletes_most_recent_payment(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00", total_paid="650.00")
        first, second, last = _add_payments(db_session, invoice, ["300.00", "200.00", "150.00"])

        report = ReconciliationService(db_session).repair_overpayments(UserRole.ADMIN)

        assert report.fixed_invoices == 1
        assert report.deleted_payments == 1
        fix = report.fixes[0]
        assert fix.deleted_payment_ids == [last.id]
        assert fix.total_paid_before == Decimal("650.00")
        assert fix.total_paid_after == Decimal("500.00")
        assert fix.overpayment == Decimal("150.00")
        assert fix.is_paid_after is True

        stored = _fresh(session_factory, invoice.id)
        assert stored.total_paid == Decimal("500.00")
        assert stored.remaining_balance == Decimal("0.00")
        assert stored.is_paid is True
        with session_factory() as session:
            remaining_ids = {p.id for p in session.query(Payment).filter(Payment.invoice_id == invoice.id)}
        assert remaining_ids == {first.id, second.id}

    def test_keeps_deleting_until_within_tolerance(self, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00")
        payments = _add_payments(db_session, invoice, ["400.00", "100.00", "100.00", "100.00"])

        report = ReconciliationService(db_session).repair_overpayments(UserRole.ADMIN)

        fix = report.fixes[0]
        assert fix.deleted_payment_ids == [payments[3].id, payments[2].id]
        assert fix.total_paid_after == Decimal("500.00")
        assert _fresh(session_factory, invoice.id).total_paid == Decimal("500.00")

    def test_rounding_noise_is_tolerated(self, db_session, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["500.01"])

        report = ReconciliationService(db_session).repair_overpayments(UserRole.ADMIN)
        assert report.fixed_invoices == 0

    def test_only_claim_invoices_are_repaired(self, db_session, session_factory, make_invoice):
        monthly = make_invoice("100.00", type=InvoiceType.MANAGEMENT_SERVICE)
        _add_payments(db_session, monthly, ["100.00", "50.00"])

        report = ReconciliationService(db_session).repair_overpayments(UserRole.ADMIN)

        assert report.fixed_invoices == 0
        with session_factory() as session:
            assert session.query(Payment).filter(Payment.invoice_id == monthly.id).count() == 2

    def test_repair_is_idempotent(self, db_session, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["300.00", "200.00", "150.00"])
        service = ReconciliationService(db_session)

        service.repair_overpayments(UserRole.ADMIN)
        again = service.repair_overpayments(UserRole.ADMIN)

        assert again.fixed_invoices == 0
        assert again.deleted_payments == 0

    @pytest.mark.parametrize("role", [UserRole.ACCOUNTANT, UserRole.PROJECT_MANAGER, "ACCOUNTANT"])
    def test_requires_admin(self, db_session, make_invoice, role):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["650.00"])

        with pytest.raises(PermissionDeniedError):
            ReconciliationService(db_session).repair_overpayments(role)


# ===== API =====

class TestMaintenanceEndpoints:

    def test_get_is_a_dry_run(self, client, auth_headers, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["100.00"])

        response = client.get("/admin/fix-invoices", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is True
        assert len(body["discrepancies"]) == 1
        assert _fresh(session_factory, invoice.id).total_paid == Decimal("0.00")

    def test_post_fixes_invoices(self, client, auth_headers, db_session, session_factory, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["100.00"])

        response = client.post("/admin/fix-invoices", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 200
        assert response.json()["fixed_invoices"] == 1
        assert _fresh(session_factory, invoice.id).total_paid == Decimal("100.00")

    def test_fix_overpayments(self, client, auth_headers, db_session, make_invoice):
        invoice = make_invoice("500.00")
        _add_payments(db_session, invoice, ["300.00", "200.00", "150.00"])

        response = client.post("/admin/fix-overpayments", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 200
        assert response.json()["deleted_payments"] == 1

    @pytest.mark.parametrize("method, path", [
        ("get", "/admin/fix-invoices"),
        ("post", "/admin/fix-invoices"),
        ("post", "/admin/fix-overpayments"),
    ])
    def test_accountant_is_forbidden(self, client, auth_headers, method, path):
        response = getattr(client, method)(path, headers=auth_headers(UserRole.ACCOUNTANT))
        assert response.status_code == 403


# ===== CONCURRENCIA =====

class TestConcurrentMaintenance:

    def test_payment_committed_mid_reconcile_is_kept(self, db_session, session_factory, make_invoice, monkeypatch):
        invoice = make_invoice("1000.00")
        original = ReconciliationService._payment_totals
        calls = {"count": 0}

        def totals_then_pay(self, invoice_ids=None):
            totals = original(self, invoice_ids)
            calls["count"] += 1
            if calls["count"] == 1:
                with session_factory() as other:
                    PaymentService(other).apply_payment(invoice.id, Decimal("300.00"))
            return totals

        monkeypatch.setattr(ReconciliationService, "_payment_totals", totals_then_pay)

        report = ReconciliationService(db_session).reconcile_all()

        assert calls["count"] == 2
        assert report.fixed_invoices == 0
        assert report.discrepancies == []
        stored = _fresh(session_factory, invoice.id)
        assert stored.total_paid == Decimal("300.00")
        assert stored.remaining_balance == Decimal("700.00")
        assert stored.is_paid is False

    def test_concurrent_repairs_delete_once(self, db_session, session_factory, make_invoice, monkeypatch):
        invoice = make_invoice("500.00", total_paid="650.00")
        first, second, _ = _add_payments(db_session, invoice, ["300.00", "200.00", "150.00"])
        original = ReconciliationService._plan_overpayment_fix
        calls = {"count": 0}

        def plan_then_compete(self, target):
            fix = original(self, target)
            calls["count"] += 1
            if calls["count"] == 1:
                with session_factory() as other:
                    ReconciliationService(other).repair_overpayments(UserRole.ADMIN)
            return fix

        monkeypatch.setattr(ReconciliationService, "_plan_overpayment_fix", plan_then_compete)

        report = ReconciliationService(db_session).repair_overpayments(UserRole.ADMIN)

        assert report.fixed_invoices == 0
        assert report.deleted_payments == 0
        stored = _fresh(session_factory, invoice.id)
        assert stored.total_paid == Decimal("500.00")
        assert stored.is_paid is True
        with session_factory() as session:
            remaining_ids = {p.id for p in session.query(Payment).filter(Payment.invoice_id == invoice.id)}
        assert remaining_ids == {first.id, second.id}
