from fastapi import APIRouter, Depends

from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.reconciliation.service import ReconciliationService
from app.modules.reconciliation.schemas import RepairReport, OverpaymentRepairReport

router = APIRouter(prefix="/admin", tags=["Maintenance"])


@router.get("/fix-invoices", response_model=RepairReport)
def analyze_invoices(
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_admin())
):
    """Análisis de solo lectura: facturas cuyo estado guardado difiere de sus pagos"""
    service = ReconciliationService(db)
    return service.reconcile_all(dry_run=True)


@router.post("/fix-invoices", response_model=RepairReport)
def fix_invoices(
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_admin())
):
    """Recalcular total_paid, remaining_balance e is_paid de todas las facturas"""
    service = ReconciliationService(db)
    return service.reconcile_all()


@router.post("/fix-overpayments", response_model=OverpaymentRepairReport)
def fix_overpayments(
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_admin())
):
    """Eliminar pagos en exceso de facturas CLAIM sobrecobradas"""
    service = ReconciliationService(db)
    return service.repair_overpayments(auth_context.user_role)
