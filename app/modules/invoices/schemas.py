"""
Esquemas Pydantic para facturas y pagos
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from datetime import datetime
from enum import Enum

from app.common.ledger import round_money


class InvoiceType(str, Enum):
    CLAIM = "CLAIM"
    MANAGEMENT_SERVICE = "MANAGEMENT_SERVICE"


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., description="Monto del pago")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        # El signo se valida en el servicio (ValidationError tipado)
        return round_money(v)


class PaymentOut(BaseModel):
    id: UUID
    invoice_id: UUID
    amount: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class InvoiceExpenseOut(BaseModel):
    id: UUID
    description: str
    amount: Decimal
    source_type: str
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("source_type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class InvoiceOut(BaseModel):
    id: UUID
    invoice_number: str
    type: InvoiceType
    unit_id: UUID
    owner_association_id: Optional[UUID] = None
    amount: Decimal
    total_paid: Decimal
    remaining_balance: Decimal
    is_paid: bool
    issued_at: datetime

    class Config:
        from_attributes = True

    @field_validator("type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class InvoiceDetail(InvoiceOut):
    payments: List[PaymentOut] = []
    operational_expenses: List[InvoiceExpenseOut] = []


class PaymentList(BaseModel):
    items: List[PaymentOut]
    total: int
