from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import datetime

from app.common.ledger import round_money


class PMAdvanceCreate(BaseModel):
    staff_id: UUID = Field(..., description="Staff que recibe el anticipo")
    project_id: Optional[UUID] = Field(None, description="Proyecto al que se limita el anticipo")
    amount: Decimal = Field(..., gt=0, description="Monto entregado")
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return round_money(v)


class PMAdvanceUpdate(BaseModel):
    """Corrección administrativa de un anticipo"""
    amount: Optional[Decimal] = Field(None, gt=0)
    project_id: Optional[UUID] = None
    clear_project: bool = False
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return round_money(v) if v is not None else v


class PMAdvanceOut(BaseModel):
    id: UUID
    staff_id: UUID
    project_id: Optional[UUID] = None
    amount: Decimal
    remaining_amount: Decimal
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PMAdvanceSummary(PMAdvanceOut):
    total_spent: Decimal
    percentage_used: Decimal
    percentage_remaining: Decimal


class PMAdvanceList(BaseModel):
    items: List[PMAdvanceSummary]
    total: int
