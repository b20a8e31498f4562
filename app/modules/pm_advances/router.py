from fastapi import APIRouter, Depends, status, Query
from typing import Optional
from uuid import UUID

from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.pm_advances.service import PMAdvanceService
from app.modules.pm_advances.schemas import (
    PMAdvanceCreate, PMAdvanceUpdate, PMAdvanceOut, PMAdvanceSummary, PMAdvanceList
)

router = APIRouter(prefix="/pm-advances", tags=["PM Advances"])


@router.post("/", response_model=PMAdvanceOut, status_code=status.HTTP_201_CREATED)
def issue_pm_advance(
    advance_data: PMAdvanceCreate,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """Emitir un anticipo de efectivo a un PM"""
    service = PMAdvanceService(db)
    return service.issue_advance(advance_data)


@router.get("/", response_model=PMAdvanceList)
def list_pm_advances(
    db: db_dependency,
    project_id: Optional[UUID] = Query(None, description="Filtrar por proyecto"),
    staff_id: Optional[UUID] = Query(None, description="Filtrar por staff"),
    auth_context = Depends(AuthDependencies.require_finance())
):
    """Listar anticipos con resumen de consumo"""
    service = PMAdvanceService(db)
    return service.list_advances(project_id=project_id, staff_id=staff_id)


@router.get("/{advance_id}", response_model=PMAdvanceSummary)
def get_pm_advance(
    advance_id: UUID,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    service = PMAdvanceService(db)
    return service.get_advance(advance_id)


@router.patch("/{advance_id}", response_model=PMAdvanceOut)
def correct_pm_advance(
    advance_id: UUID,
    update_data: PMAdvanceUpdate,
    db: db_dependency,
    auth_context = Depends(AuthDependencies.require_finance())
):
    """
    Corrección administrativa de un anticipo

    Cambiar el monto conserva lo ya gastado; no se permite un monto menor a lo gastado.
    """
    service = PMAdvanceService(db)
    return service.correct_advance(advance_id, update_data)
