"""
Tests para el módulo de Anticipos de PM

Cubren:
- Reserva atómica (UPDATE condicional) y no-negatividad del saldo
- Emisión y corrección administrativa
- Resumen de consumo
- Endpoints y permisos
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import PMAdvanceNotFoundError, ProjectNotFoundError, ValidationError
from app.modules.auth.schemas import UserRole
from app.modules.accounting_notes.models import ExpenseSourceType
from app.modules.accounting_notes.service import AccountingNoteService
from app.modules.pm_advances.models import PMAdvance
from app.modules.pm_advances.schemas import PMAdvanceCreate, PMAdvanceUpdate
from app.modules.pm_advances.service import PMAdvanceLedger, PMAdvanceService


def _remaining(session_factory, advance_id):
    with session_factory() as session:
        return session.get(PMAdvance, advance_id).remaining_amount


# ===== RESERVA =====

class TestReserve:

    def test_reserve_decrements_when_funds_suffice(self, db_session, session_factory, make_advance):
        advance = make_advance("100.00")
        assert PMAdvanceLedger(db_session).reserve(advance.id, Decimal("80.00")) is True
        db_session.commit()
        assert _remaining(session_factory, advance.id) == Decimal("20.00")

    def test_reserve_exact_balance(self, db_session, session_factory, make_advance):
        advance = make_advance("100.00")
        assert PMAdvanceLedger(db_session).reserve(advance.id, Decimal("100.00")) is True
        db_session.commit()
        assert _remaining(session_factory, advance.id) == Decimal("0.00")

    def test_reserve_fails_without_touching_balance(self, db_session, session_factory, make_advance):
        advance = make_advance("100.00", remaining="50.00")
        assert PMAdvanceLedger(db_session).reserve(advance.id, Decimal("80.00")) is False
        db_session.commit()
        assert _remaining(session_factory, advance.id) == Decimal("50.00")

    def test_reserve_unknown_advance(self, db_session):
        assert PMAdvanceLedger(db_session).reserve(uuid4(), Decimal("1.00")) is False

    def test_reserve_does_not_commit(self, db_session, session_factory, make_advance):
        advance = make_advance("100.00")
        PMAdvanceLedger(db_session).reserve(advance.id, Decimal("30.00"))
        db_session.rollback()
        assert _remaining(session_factory, advance.id) == Decimal("100.00")

    def test_balance_never_goes_negative(self, db_session, session_factory, make_advance):
        advance = make_advance("100.00")
        ledger = PMAdvanceLedger(db_session)
        results = [ledger.reserve(advance.id, Decimal("30.00")) for _ in range(5)]
        db_session.commit()

        assert results == [True, True, True, False, False]
        remaining = _remaining(session_factory, advance.id)
        assert Decimal("0") <= remaining <= Decimal("100.00")
        assert remaining == Decimal("10.00")


# ===== EMISIÓN / CORRECCIÓN =====

class TestPMAdvanceService:

    def test_issue_advance(self, db_session, project):
        staff_id = uuid4()
        advance = PMAdvanceService(db_session).issue_advance(PMAdvanceCreate(
            staff_id=staff_id, project_id=project.id, amount=Decimal("500"), notes="  Caja de obra  "
        ))
        assert advance.amount == Decimal("500.00")
        assert advance.remaining_amount == Decimal("500.00")
        assert advance.notes == "Caja de obra"

    def test_issue_advance_unknown_project(self, db_session):
        with pytest.raises(ProjectNotFoundError):
            PMAdvanceService(db_session).issue_advance(PMAdvanceCreate(
                staff_id=uuid4(), project_id=uuid4(), amount=Decimal("10")
            ))

    def test_correct_amount_keeps_spent(self, db_session, make_advance):
        advance = make_advance("100.00", remaining="40.00")
        corrected = PMAdvanceService(db_session).correct_advance(
            advance.id, PMAdvanceUpdate(amount=Decimal("150.00"))
        )
        assert corrected.amount == Decimal("150.00")
        assert corrected.remaining_amount == Decimal("90.00")

    def test_correct_amount_below_spent_fails(self, db_session, make_advance):
        advance = make_advance("100.00", remaining="40.00")
        with pytest.raises(ValidationError) as exc_info:
            PMAdvanceService(db_session).correct_advance(
                advance.id, PMAdvanceUpdate(amount=Decimal("50.00"))
            )
        assert exc_info.value.payload["spent"] == Decimal("60.00")

    def test_correct_clears_project_and_notes(self, db_session, make_advance):
        advance = make_advance("100.00")
        corrected = PMAdvanceService(db_session).correct_advance(
            advance.id, PMAdvanceUpdate(clear_project=True, notes="   ")
        )
        assert corrected.project_id is None
        assert corrected.notes is None

    def test_correct_without_fields(self, db_session, make_advance):
        advance = make_advance("100.00")
        with pytest.raises(ValidationError):
            PMAdvanceService(db_session).correct_advance(advance.id, PMAdvanceUpdate())

    def test_correct_unknown_advance(self, db_session):
        with pytest.raises(PMAdvanceNotFoundError):
            PMAdvanceService(db_session).correct_advance(uuid4(), PMAdvanceUpdate(notes="x"))

    @staticmethod
    def _convert_after_read(monkeypatch, session_factory, note_id):
        """Una conversión de otra sesión entra justo después de leer el anticipo"""
        original = PMAdvanceService.get_advance_by_id

        def get_then_convert(self, advance_id):
            advance = original(self, advance_id)
            with session_factory() as other:
                AccountingNoteService(other).convert_note(note_id, uuid4())
            return advance

        monkeypatch.setattr(PMAdvanceService, "get_advance_by_id", get_then_convert)

    def test_correction_keeps_concurrent_reservation(self, db_session, session_factory, make_advance, make_note, monkeypatch):
        advance = make_advance("100.00")
        note = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)
        self._convert_after_read(monkeypatch, session_factory, note.id)

        corrected = PMAdvanceService(db_session).correct_advance(
            advance.id, PMAdvanceUpdate(amount=Decimal("150.00"))
        )

        assert corrected.amount == Decimal("150.00")
        assert corrected.remaining_amount == Decimal("70.00")
        assert _remaining(session_factory, advance.id) == Decimal("70.00")

    def test_correction_below_concurrent_spend_fails(self, db_session, session_factory, make_advance, make_note, monkeypatch):
        advance = make_advance("100.00")
        note = make_note("80.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)
        self._convert_after_read(monkeypatch, session_factory, note.id)

        with pytest.raises(ValidationError) as exc_info:
            PMAdvanceService(db_session).correct_advance(
                advance.id, PMAdvanceUpdate(amount=Decimal("50.00"))
            )

        assert exc_info.value.payload["spent"] == Decimal("80.00")
        with session_factory() as session:
            stored = session.get(PMAdvance, advance.id)
            assert stored.amount == Decimal("100.00")
            assert stored.remaining_amount == Decimal("20.00")


# ===== RESUMEN =====

def test_summary_reflects_converted_expenses(db_session, make_advance, make_note, accountant_id):
    advance = make_advance("200.00")
    note = make_note("50.00", source_type=ExpenseSourceType.PM_ADVANCE, pm_advance_id=advance.id)
    AccountingNoteService(db_session).convert_note(note.id, accountant_id)

    summary = PMAdvanceService(db_session).get_advance(advance.id)
    assert summary.total_spent == Decimal("50.00")
    assert summary.remaining_amount == Decimal("150.00")
    assert summary.percentage_used == Decimal("25.00")
    assert summary.percentage_remaining == Decimal("75.00")


def test_list_filters_by_staff(db_session, make_advance):
    staff_id = uuid4()
    make_advance("100.00", staff_id=staff_id)
    make_advance("300.00")

    listing = PMAdvanceService(db_session).list_advances(staff_id=staff_id)
    assert listing.total == 1
    assert listing.items[0].staff_id == staff_id


# ===== API =====

class TestPMAdvanceEndpoints:

    def test_issue_and_fetch(self, client, auth_headers, project):
        headers = auth_headers(UserRole.ACCOUNTANT)
        response = client.post("/pm-advances/", headers=headers, json={
            "staff_id": str(uuid4()),
            "project_id": str(project.id),
            "amount": "250.00"
        })
        assert response.status_code == 201
        advance_id = response.json()["id"]

        response = client.get(f"/pm-advances/{advance_id}", headers=headers)
        assert response.status_code == 200
        assert Decimal(str(response.json()["remaining_amount"])) == Decimal("250.00")

    def test_project_manager_cannot_issue(self, client, auth_headers):
        response = client.post("/pm-advances/", headers=auth_headers(UserRole.PROJECT_MANAGER), json={
            "staff_id": str(uuid4()),
            "amount": "10.00"
        })
        assert response.status_code == 403

    def test_patch_below_spent_is_rejected(self, client, auth_headers, make_advance):
        advance = make_advance("100.00", remaining="10.00")
        response = client.patch(
            f"/pm-advances/{advance.id}",
            headers=auth_headers(UserRole.ADMIN),
            json={"amount": "50.00"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_unknown_advance_is_404(self, client, auth_headers):
        response = client.get(f"/pm-advances/{uuid4()}", headers=auth_headers(UserRole.ADMIN))
        assert response.status_code == 404
        assert response.json()["error"] == "PM_ADVANCE_NOT_FOUND"
