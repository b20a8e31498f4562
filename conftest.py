"""Pytest configuration and fixtures."""

import os

# Set test environment variables before importing settings
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.main import app
from app.database.database import Base, build_engine, get_db
from app.modules.auth.schemas import UserRole
from app.modules.auth.utils import create_access_token
from app.modules.units.models import Project, OperationalUnit
from app.modules.pm_advances.models import PMAdvance
from app.modules.invoices.models import Invoice, InvoiceType
from app.modules.accounting_notes.models import AccountingNote, AccountingNoteStatus


@pytest.fixture
def engine(tmp_path):
    """SQLite en archivo: cada sesión usa su propia conexión, como en producción"""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# ===== DATOS BASE =====

@pytest.fixture
def project(db_session):
    project = Project(name="Torre Norte")
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def unit(db_session, project):
    unit = OperationalUnit(project_id=project.id, code="U-101", name="Apartamento 101")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture
def other_unit(db_session, project):
    unit = OperationalUnit(project_id=project.id, code="U-102", name="Apartamento 102")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture
def pm_id():
    return uuid4()


@pytest.fixture
def accountant_id():
    return uuid4()


@pytest.fixture
def make_note(db_session, unit, project, pm_id):
    """Factory de notas PENDING insertadas directamente"""
    def _make_note(amount="250.00", source_type=None, pm_advance_id=None, note_unit=unit, description="Cambio de bombillos"):
        note = AccountingNote(
            unit_id=note_unit.id if note_unit is not None else None,
            project_id=project.id,
            description=description,
            amount=Decimal(amount),
            status=AccountingNoteStatus.PENDING,
            source_type=source_type,
            pm_advance_id=pm_advance_id,
            created_by_user_id=pm_id
        )
        db_session.add(note)
        db_session.commit()
        return note
    return _make_note


@pytest.fixture
def make_advance(db_session, project):
    def _make_advance(amount="100.00", remaining=None, staff_id=None):
        advance = PMAdvance(
            staff_id=staff_id or uuid4(),
            project_id=project.id,
            amount=Decimal(amount),
            remaining_amount=Decimal(remaining if remaining is not None else amount)
        )
        db_session.add(advance)
        db_session.commit()
        return advance
    return _make_advance


@pytest.fixture
def make_invoice(db_session, unit):
    """Factory de facturas CLAIM abiertas con números únicos"""
    def _make_invoice(amount="1000.00", invoice_unit=unit, total_paid="0.00", **kwargs):
        amount = Decimal(amount)
        total_paid = Decimal(total_paid)
        invoice = Invoice(
            invoice_number=f"CLM-TEST-{uuid4().hex[:8]}",
            type=kwargs.pop("type", InvoiceType.CLAIM),
            unit_id=invoice_unit.id,
            amount=amount,
            total_paid=total_paid,
            remaining_balance=amount - total_paid,
            is_paid=kwargs.pop("is_paid", False),
            **kwargs
        )
        db_session.add(invoice)
        db_session.commit()
        return invoice
    return _make_invoice


# ===== API =====

@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Headers Bearer para un rol; devuelve también el user_id del token"""
    def _auth_headers(role: UserRole, user_id=None):
        token = create_access_token(user_id or uuid4(), role.value)
        return {"Authorization": f"Bearer {token}"}
    return _auth_headers
