"""
Esquemas Pydantic para los reportes de mantenimiento de facturas
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import List
from uuid import UUID

from app.modules.invoices.schemas import InvoiceType


class InvoiceReconciliationItem(BaseModel):
    """Estado de una factura antes y después de recalcular desde sus pagos"""
    invoice_id: UUID
    invoice_number: str
    type: InvoiceType
    amount: Decimal
    payment_count: int
    total_paid_before: Decimal
    total_paid_after: Decimal
    remaining_balance_before: Decimal
    remaining_balance_after: Decimal
    is_paid_before: bool
    is_paid_after: bool
    discrepancy: bool = Field(..., description="True si algún valor guardado difería de lo recalculado")

    @field_validator("type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class RepairReport(BaseModel):
    dry_run: bool = False
    total_invoices: int
    fixed_invoices: int
    items: List[InvoiceReconciliationItem]
    discrepancies: List[InvoiceReconciliationItem]


class OverpaymentFix(BaseModel):
    invoice_id: UUID
    invoice_number: str
    amount: Decimal
    total_paid_before: Decimal
    total_paid_after: Decimal
    overpayment: Decimal
    remaining_balance_after: Decimal
    is_paid_after: bool
    payment_count: int
    deleted_payment_ids: List[UUID]


class OverpaymentRepairReport(BaseModel):
    total_invoices_checked: int
    fixed_invoices: int
    deleted_payments: int
    fixes: List[OverpaymentFix]
