"""
Tests para el módulo de Notas Contables

Tests comprehensivos que cubren:
- Conversión OFFICE_FUND / PM_ADVANCE y consolidación en la factura CLAIM
- Resolución de la fuente de financiación (argumento → pista guardada → default)
- Errores tipados: NotFound, AlreadyProcessed, MissingUnit, PmAdvance*
- Conversión at-most-once frente a una sesión concurrente
- Rechazo, eliminación y creación de notas
- Endpoints y mapeo de errores a status HTTP

Las carreras se reproducen de forma determinista: una segunda sesión completa
su conversión justo cuando la primera entra a la consolidación.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import (
    AccountingNoteNotFoundError, AlreadyProcessedError, MissingUnitError,
    PermissionDeniedError, PMAdvanceInsufficientError, PMAdvanceNotFoundError,
    PMAdvanceRequiredError, UnitNotFoundError, ValidationError
)
from app.modules.auth.schemas import UserRole
from app.modules.accounting_notes.models import (
    AccountingNote, AccountingNoteStatus, ExpenseSourceType, OperationalExpense
)
from app.modules.accounting_notes.schemas import AccountingNoteCreate
from app.modules.accounting_notes.service import AccountingNoteService
from app.modules.invoices.models import Invoice
from app.modules.invoices.service import ClaimInvoiceConsolidator, PaymentService
from app.modules.pm_advances.models import PMAdvance
from app.modules.units.models import OperationalUnit


def _snapshot(session_factory, note_id, advance_id=None):
    """Estado persistido: nota, gastos, facturas y saldo del anticipo"""
    with session_factory() as session:
        note = session.get(AccountingNote, note_id)
        advance = session.get(PMAdvance, advance_id) if advance_id else None
        return {
            "status": note.status if note else None,
            "converted_to_expense_id": note.converted_to_expense_id if note else None,
            "expenses": session.query(OperationalExpense).all(),
            "invoices": session.query(Invoice).all(),
            "remaining": advance.remaining_amount if advance else None,
        }


def _race_on_consolidate(monkeypatch, competitor):
    """La primera llamada a consolidate ejecuta ``competitor`` antes de continuar"""
    original = ClaimInvoiceConsolidator.consolidate
    calls = {"count": 0}

    def racing_consolidate(self, unit, amount):
        calls["count"] += 1
        if calls["count"] == 1:
            competitor()
        return original(self, unit, amount)

    monkeypatch.setattr(ClaimInvoiceConsolidator, "consolidate", racing_consolidate)
    return calls


# ===== ESCENARIOS DE CONVERSIÓN =====

class TestConvertNote:

    def test_office_fund_conversion_creates_invoice(self, db_session, session_factory, make_note, accountant_id):
        note = make_note("250.00", source_type=ExpenseSourceType.OFFICE_FUND)

        result = AccountingNoteService(db_session).convert_note(note.id, accountant_id)

        assert result.invoice_created is True
        assert result.invoice.amount == Decimal("250.00")
        assert result.invoice.remaining_balance == Decimal("250.00")
        assert result.note.status == "CONVERTED"
        assert result.note.converted_at is not None

        state = _snapshot(session_factory, note.id)
        assert len(state["expenses"]) == 1
        expense = state["expenses"][0]
        assert expense.source_type == ExpenseSourceType.OFFICE_FUND
        assert expense.amount == Decimal("250.00")
        assert expense.claim_invoice_id == result.invoice.id
        assert expense.recorded_by_user_id == accountant_id
        assert expense.pm_advance_id is None
        assert expense.converted_from_note_id == note.id
        assert state["status"] == AccountingNoteStatus.CONVERTED
        assert state["converted_to_expense_id"] == expense.id

    def test_second_note_consolidates(self, db_session, session_factory, make_note, accountant_id):
        service = AccountingNoteService(db_session)
        first = service.convert_note(make_note("250.00").id, accountant_id)
        second = service.convert_note(make_note("100.00").id, accountant_id)

        assert second.invoice_created is False
        assert second.invoice.id == first.invoice.id
        assert second.invoice.amount == Decimal("350.00")
        assert second.invoice.remaining_balance == Decimal("350.00")

        with session_factory() as session:
            assert session.query(Invoice).count() == 1
            assert session.query(OperationalExpense).count() == 2

    def test_pm_advance_insufficient_leaves_no_trace(self, db_session, session_factory, make_note, make_advance, accountant_id):
        advance = make_advance("50.00")
        note = make_note("80.00")

        with pytest.raises(PMAdvanceInsufficientError) as exc_info:
            AccountingNoteService(db_session).convert_note(
                note.id, accountant_id,
                requested_source_type=ExpenseSourceType.PM_ADVANCE,
                requested_pm_advance_id=advance.id
            )

        assert exc_info.value.remaining == Decimal("50.00")
        assert exc_info.value.needed == Decimal("80.00")
        state = _snapshot(session_factory, note.id, advance.id)
        assert state["status"] == AccountingNoteStatus.PENDING
        assert state["expenses"] == []
        assert state["invoices"] == []
        assert state["remaining"] == Decimal("50.00")

    def test_pm_advance_conversion_deducts_advance(self, db_session, session_factory, make_note, make_advance, accountant_id):
        advance = make_advance("100.00")
        note = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)

        result = AccountingNoteService(db_session).convert_note(note.id, accountant_id)

        assert result.expense.source_type == "PM_ADVANCE"
        assert result.expense.pm_advance_id == advance.id
        state = _snapshot(session_factory, note.id, advance.id)
        assert state["remaining"] == Decimal("20.00")

    def test_reserve_is_the_authority_over_precheck(self, db_session, session_factory, make_note, make_advance, accountant_id, monkeypatch):
        advance = make_advance("50.00")
        note = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)
        monkeypatch.setattr(AccountingNoteService, "_precheck_advance", lambda self, advance_id, amount: None)

        with pytest.raises(PMAdvanceInsufficientError) as exc_info:
            AccountingNoteService(db_session).convert_note(note.id, accountant_id)

        assert exc_info.value.remaining == Decimal("50.00")
        state = _snapshot(session_factory, note.id, advance.id)
        assert state["status"] == AccountingNoteStatus.PENDING
        assert state["expenses"] == []
        assert state["invoices"] == []
        assert state["remaining"] == Decimal("50.00")

    def test_explicit_source_overrides_stored_hint(self, db_session, session_factory, make_note, make_advance, accountant_id):
        advance = make_advance("100.00")
        note = make_note("30.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)

        result = AccountingNoteService(db_session).convert_note(
            note.id, accountant_id, requested_source_type=ExpenseSourceType.OFFICE_FUND
        )

        assert result.expense.source_type == "OFFICE_FUND"
        assert result.expense.pm_advance_id is None
        assert result.note.pm_advance_id is None
        assert _snapshot(session_factory, note.id, advance.id)["remaining"] == Decimal("100.00")

    def test_defaults_to_office_fund(self, db_session, make_note, accountant_id):
        note = make_note("30.00", source_type=None)
        result = AccountingNoteService(db_session).convert_note(note.id, accountant_id)
        assert result.expense.source_type == "OFFICE_FUND"
        assert result.note.source_type == "OFFICE_FUND"

    def test_pm_advance_required(self, db_session, session_factory, make_note, accountant_id):
        note = make_note("30.00")
        with pytest.raises(PMAdvanceRequiredError):
            AccountingNoteService(db_session).convert_note(
                note.id, accountant_id, requested_source_type="PM_ADVANCE"
            )
        assert _snapshot(session_factory, note.id)["status"] == AccountingNoteStatus.PENDING

    def test_pm_advance_not_found(self, db_session, make_note, accountant_id):
        note = make_note("30.00")
        with pytest.raises(PMAdvanceNotFoundError):
            AccountingNoteService(db_session).convert_note(
                note.id, accountant_id,
                requested_source_type=ExpenseSourceType.PM_ADVANCE,
                requested_pm_advance_id=uuid4()
            )

    def test_unknown_source_type_is_a_validation_error(self, db_session, session_factory, make_note, accountant_id):
        note = make_note("30.00")
        with pytest.raises(ValidationError) as exc_info:
            AccountingNoteService(db_session).convert_note(
                note.id, accountant_id, requested_source_type="PETTY_CASH"
            )
        assert exc_info.value.payload["source_type"] == "PETTY_CASH"
        state = _snapshot(session_factory, note.id)
        assert state["status"] == AccountingNoteStatus.PENDING
        assert state["expenses"] == []

    def test_already_processed(self, db_session, session_factory, make_note, accountant_id):
        note = make_note("250.00")
        service = AccountingNoteService(db_session)
        service.convert_note(note.id, accountant_id)

        with pytest.raises(AlreadyProcessedError):
            service.convert_note(note.id, accountant_id)

        state = _snapshot(session_factory, note.id)
        assert len(state["expenses"]) == 1
        assert state["invoices"][0].amount == Decimal("250.00")

    def test_missing_unit(self, db_session, make_note, accountant_id):
        note = make_note("30.00", note_unit=None)
        with pytest.raises(MissingUnitError):
            AccountingNoteService(db_session).convert_note(note.id, accountant_id)

    def test_note_not_found(self, db_session, accountant_id):
        with pytest.raises(AccountingNoteNotFoundError):
            AccountingNoteService(db_session).convert_note(uuid4(), accountant_id)

    def test_paid_invoice_gets_replaced(self, db_session, make_note, accountant_id):
        service = AccountingNoteService(db_session)
        first = service.convert_note(make_note("250.00").id, accountant_id)
        PaymentService(db_session).apply_payment(first.invoice.id, Decimal("250.00"))

        second = service.convert_note(make_note("100.00").id, accountant_id)

        assert second.invoice_created is True
        assert second.invoice.id != first.invoice.id
        assert second.invoice.amount == Decimal("100.00")


# ===== CONCURRENCIA =====

class TestConcurrentConversion:

    def test_note_converted_by_competing_session(self, db_session, session_factory, make_note, accountant_id, monkeypatch):
        note = make_note("250.00")

        def competitor():
            with session_factory() as other:
                AccountingNoteService(other).convert_note(note.id, uuid4())

        calls = _race_on_consolidate(monkeypatch, competitor)

        with pytest.raises(AlreadyProcessedError):
            AccountingNoteService(db_session).convert_note(note.id, accountant_id)

        assert calls["count"] == 2
        state = _snapshot(session_factory, note.id)
        assert state["status"] == AccountingNoteStatus.CONVERTED
        assert len(state["expenses"]) == 1
        assert state["converted_to_expense_id"] == state["expenses"][0].id
        assert len(state["invoices"]) == 1
        assert state["invoices"][0].amount == Decimal("250.00")
        assert state["invoices"][0].remaining_balance == Decimal("250.00")

    def test_advance_drained_by_competing_session(self, db_session, session_factory, make_note, make_advance, accountant_id, monkeypatch):
        advance = make_advance("100.00")
        note = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)
        rival = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)

        def competitor():
            with session_factory() as other:
                AccountingNoteService(other).convert_note(rival.id, uuid4())

        _race_on_consolidate(monkeypatch, competitor)

        with pytest.raises(PMAdvanceInsufficientError) as exc_info:
            AccountingNoteService(db_session).convert_note(note.id, accountant_id)

        assert exc_info.value.remaining == Decimal("20.00")
        assert exc_info.value.needed == Decimal("80.00")

        state = _snapshot(session_factory, note.id, advance.id)
        assert state["status"] == AccountingNoteStatus.PENDING
        assert state["remaining"] == Decimal("20.00")
        assert len(state["expenses"]) == 1
        assert state["expenses"][0].converted_from_note_id == rival.id
        assert state["invoices"][0].amount == Decimal("80.00")

    def test_repeated_conversions_yield_one_success(self, session_factory, make_note, accountant_id):
        note = make_note("40.00")
        outcomes = []
        for _ in range(4):
            with session_factory() as session:
                try:
                    AccountingNoteService(session).convert_note(note.id, accountant_id)
                    outcomes.append("converted")
                except AlreadyProcessedError:
                    outcomes.append("already_processed")

        assert outcomes == ["converted"] + ["already_processed"] * 3
        assert len(_snapshot(session_factory, note.id)["expenses"]) == 1


# ===== RECHAZO / ELIMINACIÓN =====

class TestRejectAndDelete:

    def test_reject_pending_note(self, db_session, session_factory, make_note):
        note = make_note("30.00")
        rejected = AccountingNoteService(db_session).reject_note(note.id)

        assert rejected.status == AccountingNoteStatus.REJECTED
        assert rejected.converted_at is not None
        state = _snapshot(session_factory, note.id)
        assert state["expenses"] == []
        assert state["invoices"] == []

    def test_rejected_note_cannot_be_converted_or_rejected(self, db_session, make_note, accountant_id):
        note = make_note("30.00")
        service = AccountingNoteService(db_session)
        service.reject_note(note.id)

        with pytest.raises(AlreadyProcessedError):
            service.reject_note(note.id)
        with pytest.raises(AlreadyProcessedError):
            service.convert_note(note.id, accountant_id)

    def test_reject_unknown_note(self, db_session):
        with pytest.raises(AccountingNoteNotFoundError):
            AccountingNoteService(db_session).reject_note(uuid4())

    def test_admin_deletes_pending_note(self, db_session, session_factory, make_note):
        note = make_note("30.00")
        AccountingNoteService(db_session).delete_note(note.id, UserRole.ADMIN)
        with session_factory() as session:
            assert session.get(AccountingNote, note.id) is None

    def test_non_admin_cannot_delete(self, db_session, make_note):
        note = make_note("30.00")
        with pytest.raises(PermissionDeniedError):
            AccountingNoteService(db_session).delete_note(note.id, UserRole.ACCOUNTANT)

    def test_converted_note_is_never_deleted(self, db_session, session_factory, make_note, accountant_id):
        note = make_note("30.00")
        service = AccountingNoteService(db_session)
        service.convert_note(note.id, accountant_id)

        with pytest.raises(AlreadyProcessedError):
            service.delete_note(note.id, "ADMIN")
        assert _snapshot(session_factory, note.id)["status"] == AccountingNoteStatus.CONVERTED


# ===== CREACIÓN / CONSULTA =====

class TestCreateNote:

    def _payload(self, project, unit, **overrides):
        data = {
            "project_id": project.id,
            "unit_id": unit.id,
            "description": "Reparación de tubería",
            "amount": Decimal("120.50"),
        }
        data.update(overrides)
        return AccountingNoteCreate(**data)

    def test_create_pending_note(self, db_session, project, unit, pm_id):
        note = AccountingNoteService(db_session).create_note(self._payload(project, unit), pm_id)
        assert note.status == AccountingNoteStatus.PENDING
        assert note.source_type == ExpenseSourceType.OFFICE_FUND
        assert note.created_by_user_id == pm_id
        assert note.converted_to_expense_id is None

    def test_blank_description(self, db_session, project, unit, pm_id):
        with pytest.raises(ValidationError):
            AccountingNoteService(db_session).create_note(self._payload(project, unit, description="   "), pm_id)

    @pytest.mark.parametrize("amount", ["0", "-10.00"])
    def test_non_positive_amount(self, db_session, project, unit, pm_id, amount):
        with pytest.raises(ValidationError):
            AccountingNoteService(db_session).create_note(
                self._payload(project, unit, amount=Decimal(amount)), pm_id
            )

    def test_unknown_unit(self, db_session, project, unit, pm_id):
        with pytest.raises(UnitNotFoundError):
            AccountingNoteService(db_session).create_note(self._payload(project, unit, unit_id=uuid4()), pm_id)

    def test_unit_from_other_project(self, db_session, project, unit, pm_id):
        with pytest.raises(ValidationError):
            AccountingNoteService(db_session).create_note(self._payload(project, unit, project_id=uuid4()), pm_id)

    def test_pm_advance_source_requires_advance(self, db_session, project, unit, pm_id):
        with pytest.raises(ValidationError):
            AccountingNoteService(db_session).create_note(
                self._payload(project, unit, source_type="PM_ADVANCE"), pm_id
            )
        with pytest.raises(PMAdvanceNotFoundError):
            AccountingNoteService(db_session).create_note(
                self._payload(project, unit, source_type="PM_ADVANCE", pm_advance_id=uuid4()), pm_id
            )

    def test_list_filters_by_status(self, db_session, make_note, accountant_id):
        pending = make_note("10.00")
        converted = make_note("20.00")
        service = AccountingNoteService(db_session)
        service.convert_note(converted.id, accountant_id)

        listing = service.list_notes(status=AccountingNoteStatus.PENDING)
        assert listing.total == 1
        assert listing.items[0].id == pending.id


# ===== API =====

class TestAccountingNoteEndpoints:

    def test_create_and_convert(self, client, auth_headers, project, unit):
        response = client.post("/accounting-notes/", headers=auth_headers(UserRole.PROJECT_MANAGER), json={
            "project_id": str(project.id),
            "unit_id": str(unit.id),
            "description": "Cambio de cerradura",
            "amount": "250.00"
        })
        assert response.status_code == 201
        note = response.json()
        assert note["status"] == "PENDING"

        headers = auth_headers(UserRole.ACCOUNTANT)
        response = client.post(f"/accounting-notes/{note['id']}/convert-to-expense", headers=headers)
        assert response.status_code == 200
        result = response.json()
        assert result["invoice_created"] is True
        assert result["note"]["status"] == "CONVERTED"
        assert result["note"]["converted_to_expense"]["id"] == result["expense"]["id"]
        assert Decimal(str(result["invoice"]["amount"])) == Decimal("250.00")

        response = client.post(f"/accounting-notes/{note['id']}/convert-to-expense", headers=headers)
        assert response.status_code == 409
        assert response.json()["error"] == "ACCOUNTING_NOTE_ALREADY_PROCESSED"

    def test_accountant_cannot_create_notes(self, client, auth_headers, project, unit):
        response = client.post("/accounting-notes/", headers=auth_headers(UserRole.ACCOUNTANT), json={
            "project_id": str(project.id),
            "unit_id": str(unit.id),
            "description": "Cambio de cerradura",
            "amount": "10.00"
        })
        assert response.status_code == 403

    def test_project_manager_cannot_convert(self, client, auth_headers, make_note):
        note = make_note("10.00")
        response = client.post(
            f"/accounting-notes/{note.id}/convert-to-expense",
            headers=auth_headers(UserRole.PROJECT_MANAGER)
        )
        assert response.status_code == 403

    def test_insufficient_advance_is_400(self, client, auth_headers, make_note, make_advance):
        advance = make_advance("50.00")
        note = make_note("80.00")
        response = client.post(
            f"/accounting-notes/{note.id}/convert-to-expense",
            headers=auth_headers(UserRole.ADMIN),
            json={"source_type": "PM_ADVANCE", "pm_advance_id": str(advance.id)}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ACCOUNTING_NOTE_PM_ADVANCE_INSUFFICIENT"
        assert body["remaining"] == 50.0
        assert body["needed"] == 80.0

    def test_missing_advance_id_is_400(self, client, auth_headers, make_note):
        note = make_note("80.00")
        response = client.post(
            f"/accounting-notes/{note.id}/convert-to-expense",
            headers=auth_headers(UserRole.ADMIN),
            json={"source_type": "PM_ADVANCE"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ACCOUNTING_NOTE_PM_ADVANCE_REQUIRED"

    def test_unknown_note_is_404(self, client, auth_headers):
        response = client.get(f"/accounting-notes/{uuid4()}", headers=auth_headers(UserRole.ACCOUNTANT))
        assert response.status_code == 404
        assert response.json()["error"] == "ACCOUNTING_NOTE_NOT_FOUND"

    def test_reject(self, client, auth_headers, make_note):
        note = make_note("10.00")
        response = client.post(f"/accounting-notes/{note.id}/reject", headers=auth_headers(UserRole.ACCOUNTANT))
        assert response.status_code == 200
        assert response.json()["status"] == "REJECTED"

    def test_delete_requires_admin(self, client, auth_headers, make_note):
        note = make_note("10.00")
        response = client.delete(f"/accounting-notes/{note.id}", headers=auth_headers(UserRole.ACCOUNTANT))
        assert response.status_code == 403

        response = client.delete(f"/accounting-notes/{note.id}", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 204

        response = client.get(f"/accounting-notes/{note.id}", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 404

    def test_list_notes(self, client, auth_headers, make_note):
        make_note("10.00")
        make_note("20.00")
        response = client.get("/accounting-notes/?status=PENDING", headers=auth_headers(UserRole.PROJECT_MANAGER))
        assert response.status_code == 200
        assert response.json()["total"] == 2


def test_unit_lookup_is_by_note(db_session, other_unit, make_note, accountant_id):
    note = make_note("15.00", note_unit=other_unit)
    result = AccountingNoteService(db_session).convert_note(note.id, accountant_id)
    assert result.invoice.unit_id == other_unit.id
    assert db_session.get(OperationalUnit, other_unit.id).code in result.invoice.invoice_number
