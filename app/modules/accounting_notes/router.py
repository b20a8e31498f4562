"""
Routers FastAPI para notas contables

- Creación por PMs desde campo (o admin)
- Bandeja del contador con filtros
- Conversión a gasto operativo y rechazo (contador / admin)
- Eliminación de notas pendientes (solo admin)

La autorización por rol se resuelve aquí; los servicios asumen un actor ya validado.
"""

from fastapi import APIRouter, Depends, status, Query
from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import UserRole
from app.modules.accounting_notes.service import AccountingNoteService
from app.modules.accounting_notes.schemas import (
    AccountingNoteCreate, AccountingNoteOut, AccountingNoteDetail, AccountingNoteList,
    AccountingNoteStatus, ConvertNoteRequest, ConversionResult
)

router = APIRouter(prefix="/accounting-notes", tags=["Accounting Notes"])


@router.post("/", response_model=AccountingNoteOut, status_code=status.HTTP_201_CREATED)
def create_accounting_note(
    note_data: AccountingNoteCreate,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_role([UserRole.PROJECT_MANAGER, UserRole.ADMIN]))
):
    """
    Crear una nota contable PENDING

    Si la fuente es PM_ADVANCE se debe indicar un anticipo existente.
    """
    service = AccountingNoteService(db)
    return service.create_note(note_data, auth_context.user_id)


@router.get("/", response_model=AccountingNoteList)
def list_accounting_notes(
    db: db_dependency,
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status: Optional[AccountingNoteStatus] = Query(None, description="Filtrar por estado"),
    project_id: Optional[UUID] = Query(None, description="Filtrar por proyecto"),
    auth_context = Depends(AuthDependencies.require_role([UserRole.ADMIN, UserRole.ACCOUNTANT, UserRole.PROJECT_MANAGER]))
):
    """Listar notas contables, más recientes primero"""
    service = AccountingNoteService(db)
    return service.list_notes(status=status, project_id=project_id, limit=limit, offset=offset)


@router.get("/{note_id}", response_model=AccountingNoteDetail)
def get_accounting_note(
    note_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_role([UserRole.ADMIN, UserRole.ACCOUNTANT, UserRole.PROJECT_MANAGER]))
):
    service = AccountingNoteService(db)
    return service.get_note(note_id)


@router.post("/{note_id}/convert-to-expense", response_model=ConversionResult)
def convert_accounting_note(
    note_id: UUID,
    db: db_dependency,
    conversion_data: Optional[ConvertNoteRequest] = None,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """
    Convertir una nota en gasto operativo

    El gasto se acumula en la factura CLAIM abierta de la unidad (o se crea una).
    `invoice_created` indica si se emitió una factura nueva. Con fuente
    PM_ADVANCE se descuenta el anticipo de forma atómica.
    """
    conversion_data = conversion_data or ConvertNoteRequest()
    service = AccountingNoteService(db)
    return service.convert_note(
        note_id,
        auth_context.user_id,
        requested_source_type=conversion_data.source_type,
        requested_pm_advance_id=conversion_data.pm_advance_id
    )


@router.post("/{note_id}/reject", response_model=AccountingNoteOut)
def reject_accounting_note(
    note_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """Rechazar una nota pendiente (sin efectos financieros)"""
    service = AccountingNoteService(db)
    return service.reject_note(note_id)


@router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_accounting_note(
    note_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_admin())
):
    """Eliminar una nota pendiente. Las notas convertidas nunca se eliminan."""
    service = AccountingNoteService(db)
    service.delete_note(note_id, auth_context.user_role)
