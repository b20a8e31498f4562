"""
Servicios para anticipos de PM

- PMAdvanceLedger: primitiva de reserva atómica usada dentro de la conversión
  de notas contables. Nunca hace commit: corre en la transacción del llamador.
- PMAdvanceService: emisión, corrección administrativa y consulta de
  anticipos con su resumen de consumo.
"""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from app.common.exceptions import PMAdvanceNotFoundError, ProjectNotFoundError, ValidationError
from app.common.ledger import round_money
from app.modules.pm_advances.models import PMAdvance
from app.modules.pm_advances.schemas import (
    PMAdvanceCreate, PMAdvanceUpdate, PMAdvanceSummary, PMAdvanceList
)
from app.modules.units.models import Project

logger = logging.getLogger(__name__)


class PMAdvanceLedger:
    """Garantiza que el gasto acumulado contra un anticipo no supere lo emitido."""

    def __init__(self, db: Session):
        self.db = db

    def reserve(self, advance_id: UUID, amount: Decimal) -> bool:
        """
        Descontar ``amount`` del saldo del anticipo solo si alcanza.

        Es un UPDATE condicional evaluado por la base de datos: dos conversiones
        concurrentes no pueden pasar ambas un chequeo obsoleto. Cero filas
        afectadas significa fondos insuficientes (o anticipo inexistente),
        aunque un pre-chequeo previo haya pasado.
        """
        amount = round_money(amount)
        result = self.db.execute(
            update(PMAdvance)
            .where(
                PMAdvance.id == advance_id,
                PMAdvance.remaining_amount >= amount
            )
            .values(remaining_amount=PMAdvance.remaining_amount - amount)
            .execution_options(synchronize_session=False)
        )
        reserved = result.rowcount == 1
        if reserved:
            logger.info(f"Reserved {amount} from PM advance {advance_id}")
        else:
            logger.warning(f"PM advance {advance_id} could not cover {amount}")
        return reserved


class PMAdvanceService:
    """Servicio para gestión de anticipos de PM"""

    def __init__(self, db: Session):
        self.db = db

    def get_advance_by_id(self, advance_id: UUID) -> PMAdvance:
        advance = self.db.query(PMAdvance).filter(
            PMAdvance.id == advance_id
        ).populate_existing().first()
        if not advance:
            raise PMAdvanceNotFoundError(advance_id)
        return advance

    def _require_project(self, project_id: UUID) -> Project:
        project = self.db.get(Project, project_id)
        if not project:
            raise ProjectNotFoundError(project_id)
        return project

    def issue_advance(self, advance_data: PMAdvanceCreate) -> PMAdvance:
        """Emitir un nuevo anticipo: el saldo inicial es el monto completo"""
        if advance_data.project_id:
            self._require_project(advance_data.project_id)

        notes = (advance_data.notes or "").strip() or None
        advance = PMAdvance(
            staff_id=advance_data.staff_id,
            project_id=advance_data.project_id,
            amount=advance_data.amount,
            remaining_amount=advance_data.amount,
            notes=notes
        )
        try:
            self.db.add(advance)
            self.db.commit()
            self.db.refresh(advance)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error issuing PM advance for staff {advance_data.staff_id}: {e}")
            raise

        logger.info(f"Issued PM advance {advance.id} of {advance.amount} to staff {advance.staff_id}")
        return advance

    def _apply_amount_correction(self, advance_id: UUID, new_amount: Decimal) -> None:
        spent = PMAdvance.amount - PMAdvance.remaining_amount
        result = self.db.execute(
            update(PMAdvance)
            .where(
                PMAdvance.id == advance_id,
                spent <= new_amount
            )
            .values(amount=new_amount, remaining_amount=new_amount - spent)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = self.db.query(PMAdvance.amount, PMAdvance.remaining_amount).filter(
            PMAdvance.id == advance_id
        ).first()
        self.db.rollback()
        if current is None:
            raise PMAdvanceNotFoundError(advance_id)
        spent_now = round_money(round_money(current.amount) - round_money(current.remaining_amount))
        raise ValidationError(
            f"El monto no puede ser menor a lo ya gastado ({spent_now})",
            spent=spent_now
        )

    def correct_advance(self, advance_id: UUID, update_data: PMAdvanceUpdate) -> PMAdvance:
        """
        Corrección administrativa directa.

        Cambiar el monto conserva lo ya gastado: remaining = nuevo monto - gastado.
        Es el único camino por el que el saldo puede aumentar. Lo gastado se
        calcula dentro del mismo UPDATE, así una reserva concurrente nunca se pierde.
        """
        fields = update_data.model_fields_set
        if not fields:
            raise ValidationError("No se enviaron campos para actualizar")

        advance = self.get_advance_by_id(advance_id)
        if not update_data.clear_project and update_data.project_id is not None:
            self._require_project(update_data.project_id)

        if update_data.amount is not None:
            self._apply_amount_correction(advance_id, update_data.amount)

        if update_data.clear_project:
            advance.project_id = None
        elif update_data.project_id is not None:
            advance.project_id = update_data.project_id

        if "notes" in fields:
            advance.notes = (update_data.notes or "").strip() or None

        try:
            self.db.commit()
            self.db.refresh(advance)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error correcting PM advance {advance_id}: {e}")
            raise

        logger.info(f"Corrected PM advance {advance_id}: amount={advance.amount}, remaining={advance.remaining_amount}")
        return advance

    def summarize(self, advance: PMAdvance) -> PMAdvanceSummary:
        """Resumen de consumo a partir de los gastos operativos vinculados"""
        from app.modules.accounting_notes.models import OperationalExpense

        total_spent = self.db.query(
            func.coalesce(func.sum(OperationalExpense.amount), 0)
        ).filter(OperationalExpense.pm_advance_id == advance.id).scalar()
        total_spent = round_money(total_spent)

        amount = round_money(advance.amount)
        if amount == 0:
            used = remaining = Decimal("0.00")
        else:
            used = round_money(total_spent / amount * 100)
            remaining = round_money(round_money(advance.remaining_amount) / amount * 100)

        return PMAdvanceSummary(
            id=advance.id,
            staff_id=advance.staff_id,
            project_id=advance.project_id,
            amount=amount,
            remaining_amount=round_money(advance.remaining_amount),
            notes=advance.notes,
            created_at=advance.created_at,
            total_spent=total_spent,
            percentage_used=used,
            percentage_remaining=remaining
        )

    def get_advance(self, advance_id: UUID) -> PMAdvanceSummary:
        return self.summarize(self.get_advance_by_id(advance_id))

    def list_advances(
        self,
        project_id: Optional[UUID] = None,
        staff_id: Optional[UUID] = None
    ) -> PMAdvanceList:
        """Listar anticipos con filtros, más recientes primero"""
        query = self.db.query(PMAdvance)
        if project_id:
            query = query.filter(PMAdvance.project_id == project_id)
        if staff_id:
            query = query.filter(PMAdvance.staff_id == staff_id)

        advances: List[PMAdvance] = query.order_by(PMAdvance.created_at.desc()).all()
        return PMAdvanceList(
            items=[self.summarize(advance) for advance in advances],
            total=len(advances)
        )
