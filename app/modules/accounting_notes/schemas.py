"""
Esquemas Pydantic para notas contables y su conversión en gastos operativos
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from datetime import datetime
from enum import Enum

from app.common.ledger import round_money
from app.modules.invoices.schemas import InvoiceOut


# ===== ENUMS =====

class AccountingNoteStatus(str, Enum):
    PENDING = "PENDING"
    CONVERTED = "CONVERTED"
    REJECTED = "REJECTED"


class ExpenseSourceType(str, Enum):
    OFFICE_FUND = "OFFICE_FUND"
    PM_ADVANCE = "PM_ADVANCE"


def _enum_value(v):
    return getattr(v, "value", v)


# ===== ACCOUNTING NOTE SCHEMAS =====

class AccountingNoteCreate(BaseModel):
    project_id: UUID = Field(..., description="Proyecto de la unidad")
    unit_id: UUID = Field(..., description="Unidad operativa a la que se carga el gasto")
    description: str = Field(..., description="Descripción del gasto")
    amount: Decimal = Field(..., description="Monto del gasto (> 0)")
    source_type: ExpenseSourceType = ExpenseSourceType.OFFICE_FUND
    pm_advance_id: Optional[UUID] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return round_money(v)


class ConvertNoteRequest(BaseModel):
    """Parámetros opcionales: si se omiten se usan las pistas guardadas en la nota"""
    source_type: Optional[ExpenseSourceType] = None
    pm_advance_id: Optional[UUID] = None


class OperationalExpenseOut(BaseModel):
    id: UUID
    description: str
    amount: Decimal
    source_type: ExpenseSourceType
    unit_id: UUID
    claim_invoice_id: UUID
    pm_advance_id: Optional[UUID] = None
    recorded_by_user_id: UUID
    converted_from_note_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("source_type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return _enum_value(v)


class AccountingNoteOut(BaseModel):
    id: UUID
    unit_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    description: str
    amount: Decimal
    status: AccountingNoteStatus
    source_type: Optional[ExpenseSourceType] = None
    pm_advance_id: Optional[UUID] = None
    created_by_user_id: UUID
    converted_at: Optional[datetime] = None
    converted_to_expense_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("status", "source_type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return _enum_value(v)


class AccountingNoteDetail(AccountingNoteOut):
    converted_to_expense: Optional[OperationalExpenseOut] = None


class AccountingNoteList(BaseModel):
    items: List[AccountingNoteOut]
    total: int
    limit: int
    offset: int


class ConversionResult(BaseModel):
    """Resultado de una conversión: nota, factura y gasto ya confirmados"""
    note: AccountingNoteDetail
    invoice: InvoiceOut
    expense: OperationalExpenseOut
    invoice_created: bool
