"""
Modelos SQLAlchemy para facturas de unidades y sus pagos

- Invoice: factura CLAIM (acumula gastos operativos convertidos) o
  MANAGEMENT_SERVICE (cuota mensual, fuera del motor de conversión)
- Payment: pagos aplicados, append-only

Invariantes:
- remaining_balance = round(amount - total_paid, 2)
- is_paid = remaining_balance <= 0.01
- A lo sumo una factura CLAIM abierta (is_paid = false) por unidad
"""

from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Numeric, Enum, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin, utcnow
import enum


class InvoiceType(enum.Enum):
    """Tipos de factura"""
    CLAIM = "CLAIM"                             # Reclamo de gastos operativos
    MANAGEMENT_SERVICE = "MANAGEMENT_SERVICE"   # Cuota de administración mensual


class Invoice(Base, BaseMixin):
    __tablename__ = "invoices"

    invoice_number = Column(String(100), nullable=False, unique=True, index=True)
    type = Column(Enum(InvoiceType), nullable=False, index=True)
    unit_id = Column(Uuid, ForeignKey("operational_units.id"), nullable=False, index=True)
    owner_association_id = Column(Uuid, ForeignKey("owner_associations.id"), nullable=True)

    amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_paid = Column(Numeric(15, 2), nullable=False, default=0)
    remaining_balance = Column(Numeric(15, 2), nullable=False, default=0)
    is_paid = Column(Boolean, nullable=False, default=False, index=True)

    issued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    unit = relationship("OperationalUnit")
    owner_association = relationship("OwnerAssociation")
    payments = relationship("Payment", back_populates="invoice", order_by="Payment.created_at")
    operational_expenses = relationship("OperationalExpense", back_populates="claim_invoice")


class Payment(Base, BaseMixin):
    """Pago aplicado a una factura"""
    __tablename__ = "payments"

    invoice_id = Column(Uuid, ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)  # Debe ser > 0

    invoice = relationship("Invoice", back_populates="payments")
