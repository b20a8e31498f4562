"""
Modelos SQLAlchemy para notas contables y gastos operativos

- AccountingNote: reclamo de gasto operativo sin revisar (PENDING) que el
  contador convierte (CONVERTED) o rechaza (REJECTED). Nunca vuelve a PENDING.
- OperationalExpense: registro financiero creado exactamente una vez por
  conversión exitosa; inmutable, ligado a una factura CLAIM y, si se financió
  con un anticipo, a un PMAdvance.
"""

from app.database.database import Base
from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, Enum, Text, Uuid, CheckConstraint
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin
import enum


class AccountingNoteStatus(enum.Enum):
    """Estados de una nota contable"""
    PENDING = "PENDING"       # Inicial
    CONVERTED = "CONVERTED"   # Terminal: convertida en gasto operativo
    REJECTED = "REJECTED"     # Terminal: sin efectos financieros


class ExpenseSourceType(enum.Enum):
    """Fuente de financiación del gasto"""
    OFFICE_FUND = "OFFICE_FUND"   # Caja de la oficina (default)
    PM_ADVANCE = "PM_ADVANCE"     # Anticipo entregado al PM


class AccountingNote(Base, BaseMixin):
    __tablename__ = "accounting_notes"

    unit_id = Column(Uuid, ForeignKey("operational_units.id"), nullable=True, index=True)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=True, index=True)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    status = Column(Enum(AccountingNoteStatus), nullable=False, default=AccountingNoteStatus.PENDING, index=True)

    # Pistas guardadas al crear la nota; se confirman al convertir
    source_type = Column(Enum(ExpenseSourceType), nullable=True)
    pm_advance_id = Column(Uuid, ForeignKey("pm_advances.id"), nullable=True, index=True)

    created_by_user_id = Column(Uuid, nullable=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    converted_to_expense_id = Column(Uuid, ForeignKey("operational_expenses.id", use_alter=True), nullable=True)

    # Relationships
    unit = relationship("OperationalUnit")
    project = relationship("Project")
    pm_advance = relationship("PMAdvance")
    converted_to_expense = relationship("OperationalExpense", foreign_keys=[converted_to_expense_id])

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_accounting_note_amount_positive"),
    )


class OperationalExpense(Base, BaseMixin):
    __tablename__ = "operational_expenses"

    description = Column(Text, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    source_type = Column(Enum(ExpenseSourceType), nullable=False)
    unit_id = Column(Uuid, ForeignKey("operational_units.id"), nullable=False, index=True)
    claim_invoice_id = Column(Uuid, ForeignKey("invoices.id"), nullable=False, index=True)
    pm_advance_id = Column(Uuid, ForeignKey("pm_advances.id"), nullable=True, index=True)
    recorded_by_user_id = Column(Uuid, nullable=False)
    converted_from_note_id = Column(Uuid, ForeignKey("accounting_notes.id"), nullable=True, index=True)

    # Relationships
    unit = relationship("OperationalUnit")
    claim_invoice = relationship("Invoice", back_populates="operational_expenses")
    pm_advance = relationship("PMAdvance", back_populates="operational_expenses")
    converted_from_note = relationship("AccountingNote", foreign_keys=[converted_from_note_id])
