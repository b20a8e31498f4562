from fastapi import APIRouter, Depends, status
from uuid import UUID

from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.invoices.service import InvoiceService, PaymentService
from app.modules.invoices.schemas import InvoiceDetail, PaymentCreate, PaymentOut, PaymentList

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.get("/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(
    invoice_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """
    Obtener una factura con sus pagos y gastos operativos
    """
    service = InvoiceService(db)
    return service.get_invoice_detail(invoice_id)


@router.post("/{invoice_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def apply_payment(
    invoice_id: UUID,
    payment_data: PaymentCreate,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """
    Registrar un pago sobre una factura

    Rechaza montos no positivos y pagos que excedan el saldo (tolerancia 0.01);
    el error de sobrepago informa el máximo permitido.
    """
    service = PaymentService(db)
    return service.apply_payment(invoice_id, payment_data.amount)


@router.get("/{invoice_id}/payments", response_model=PaymentList)
def list_invoice_payments(
    invoice_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """Listar pagos de una factura, más recientes primero"""
    service = PaymentService(db)
    return service.list_payments(invoice_id)
