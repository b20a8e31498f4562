"""
Servicios de negocio para notas contables

La conversión de una nota en gasto operativo es la operación central del
ledger. Dentro de UNA transacción, en este orden:

1. Consolidación en la factura CLAIM abierta de la unidad (o creación)
2. Creación del OperationalExpense ligado a la factura (y al anticipo)
3. Reserva atómica en el anticipo de PM, si aplica
4. Transición condicional PENDING → CONVERTED de la nota
5. Backfill de converted_from_note_id en el gasto

Cualquier error revierte todo: nunca queda un gasto sin su descuento de
anticipo ni una factura incrementada sin gasto. La garantía at-most-once la
da el UPDATE condicional del paso 4, no el pre-chequeo de estado.
"""

from decimal import Decimal
from typing import Optional, Tuple, Union
from uuid import UUID
import logging

from sqlalchemy import delete, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import SQLAlchemyError

from app.common.exceptions import (
    AccountingNoteNotFoundError, AlreadyProcessedError, LedgerError, MissingUnitError,
    PermissionDeniedError, PMAdvanceInsufficientError, PMAdvanceNotFoundError,
    PMAdvanceRequiredError, UnitNotFoundError, ValidationError
)
from app.common.ledger import round_money
from app.common.mixins import utcnow
from app.modules.accounting_notes.models import (
    AccountingNote, AccountingNoteStatus, ExpenseSourceType, OperationalExpense
)
from app.modules.accounting_notes.schemas import (
    AccountingNoteCreate, AccountingNoteList, ConversionResult
)
from app.modules.auth.schemas import UserRole
from app.modules.invoices.service import ClaimInvoiceConsolidator
from app.modules.pm_advances.models import PMAdvance
from app.modules.pm_advances.service import PMAdvanceLedger
from app.modules.units.models import OperationalUnit

logger = logging.getLogger(__name__)

# Política: sin indicación explícita ni pista guardada, el gasto sale de la caja de la oficina
DEFAULT_SOURCE_TYPE = ExpenseSourceType.OFFICE_FUND

SourceTypeLike = Union[ExpenseSourceType, str, None]


def _as_source_type(value: SourceTypeLike) -> Optional[ExpenseSourceType]:
    if value is None:
        return None
    raw = getattr(value, "value", value)
    try:
        return ExpenseSourceType(raw)
    except ValueError:
        allowed = [source.value for source in ExpenseSourceType]
        raise ValidationError(f"Fuente de gasto inválida: {raw}", source_type=raw, allowed=allowed)


class AccountingNoteService:
    """Máquina de estados de notas contables: PENDING → CONVERTED | REJECTED"""

    def __init__(self, db: Session):
        self.db = db

    # ===== CONSULTAS =====

    def get_note(self, note_id: UUID) -> AccountingNote:
        note = self.db.query(AccountingNote).options(
            selectinload(AccountingNote.unit),
            selectinload(AccountingNote.converted_to_expense)
        ).filter(AccountingNote.id == note_id).populate_existing().first()

        if not note:
            raise AccountingNoteNotFoundError(note_id)
        return note

    def list_notes(
        self,
        status: Optional[AccountingNoteStatus] = None,
        project_id: Optional[UUID] = None,
        limit: int = 100,
        offset: int = 0
    ) -> AccountingNoteList:
        """Bandeja del contador: notas más recientes primero"""
        query = self.db.query(AccountingNote)
        if status:
            query = query.filter(AccountingNote.status == AccountingNoteStatus(getattr(status, "value", status)))
        if project_id:
            query = query.filter(AccountingNote.project_id == project_id)

        total = query.count()
        notes = query.order_by(AccountingNote.created_at.desc()).offset(offset).limit(limit).all()
        return AccountingNoteList(items=notes, total=total, limit=limit, offset=offset)

    # ===== CREACIÓN =====

    def create_note(self, note_data: AccountingNoteCreate, actor_id: UUID) -> AccountingNote:
        """Registrar una nota PENDING (solicitud de gasto o cierre de trabajo técnico)"""
        description = (note_data.description or "").strip()
        if not description:
            raise ValidationError("La descripción es obligatoria")

        amount = round_money(note_data.amount)
        if amount <= 0:
            raise ValidationError("El monto debe ser mayor a cero", amount=amount)

        unit = self.db.get(OperationalUnit, note_data.unit_id)
        if not unit:
            raise UnitNotFoundError(note_data.unit_id)
        if unit.project_id != note_data.project_id:
            raise ValidationError(
                "La unidad no pertenece al proyecto indicado",
                unit_id=note_data.unit_id,
                project_id=note_data.project_id
            )

        source_type = _as_source_type(note_data.source_type) or DEFAULT_SOURCE_TYPE
        pm_advance_id = None
        if source_type == ExpenseSourceType.PM_ADVANCE:
            if not note_data.pm_advance_id:
                raise ValidationError("pm_advance_id es obligatorio cuando la fuente es PM_ADVANCE")
            if not self.db.get(PMAdvance, note_data.pm_advance_id):
                raise PMAdvanceNotFoundError(note_data.pm_advance_id)
            pm_advance_id = note_data.pm_advance_id

        note = AccountingNote(
            project_id=note_data.project_id,
            unit_id=note_data.unit_id,
            description=description,
            amount=amount,
            status=AccountingNoteStatus.PENDING,
            source_type=source_type,
            pm_advance_id=pm_advance_id,
            created_by_user_id=actor_id
        )
        try:
            self.db.add(note)
            self.db.commit()
            self.db.refresh(note)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error creating accounting note for unit {note_data.unit_id}: {e}")
            raise

        logger.info(f"Created accounting note {note.id} ({amount}, {source_type.value}) for unit {unit.code}")
        return note

    # ===== CONVERSIÓN =====

    def resolve_funding(
        self,
        note: AccountingNote,
        requested_source_type: SourceTypeLike = None,
        requested_pm_advance_id: Optional[UUID] = None
    ) -> Tuple[ExpenseSourceType, Optional[UUID]]:
        """
        Resolución en tres niveles: argumento explícito → pista guardada → default.

        El anticipo solo se resuelve cuando la fuente es PM_ADVANCE.
        """
        source_type = (
            _as_source_type(requested_source_type)
            or note.source_type
            or DEFAULT_SOURCE_TYPE
        )
        if source_type != ExpenseSourceType.PM_ADVANCE:
            return source_type, None

        pm_advance_id = requested_pm_advance_id or note.pm_advance_id
        if not pm_advance_id:
            raise PMAdvanceRequiredError(note.id)
        return source_type, pm_advance_id

    def _precheck_advance(self, pm_advance_id: UUID, amount: Decimal) -> None:
        """Chequeo rápido para feedback temprano; la autoridad es PMAdvanceLedger.reserve"""
        current = self.db.query(PMAdvance.remaining_amount).filter(
            PMAdvance.id == pm_advance_id
        ).first()
        if current is None:
            raise PMAdvanceNotFoundError(pm_advance_id)
        remaining = round_money(current.remaining_amount)
        if remaining < amount:
            raise PMAdvanceInsufficientError(remaining=remaining, needed=amount)

    def convert_note(
        self,
        note_id: UUID,
        actor_id: UUID,
        requested_source_type: SourceTypeLike = None,
        requested_pm_advance_id: Optional[UUID] = None
    ) -> ConversionResult:
        """Convertir una nota PENDING en gasto operativo + factura CLAIM"""
        note = self.get_note(note_id)

        unit = note.unit
        if unit is None:
            raise MissingUnitError(note_id)

        if note.status != AccountingNoteStatus.PENDING:
            raise AlreadyProcessedError(note_id)

        amount = round_money(note.amount)
        source_type, pm_advance_id = self.resolve_funding(note, requested_source_type, requested_pm_advance_id)

        if source_type == ExpenseSourceType.PM_ADVANCE:
            self._precheck_advance(pm_advance_id, amount)

        try:
            invoice, invoice_created = ClaimInvoiceConsolidator(self.db).consolidate(unit, amount)

            expense = OperationalExpense(
                description=note.description,
                amount=amount,
                source_type=source_type,
                unit_id=unit.id,
                claim_invoice_id=invoice.id,
                pm_advance_id=pm_advance_id,
                recorded_by_user_id=actor_id,
                converted_from_note_id=None
            )
            self.db.add(expense)
            self.db.flush()

            if source_type == ExpenseSourceType.PM_ADVANCE:
                if not PMAdvanceLedger(self.db).reserve(pm_advance_id, amount):
                    current = self.db.query(PMAdvance.remaining_amount).filter(
                        PMAdvance.id == pm_advance_id
                    ).scalar()
                    raise PMAdvanceInsufficientError(remaining=round_money(current), needed=amount)

            result = self.db.execute(
                update(AccountingNote)
                .where(
                    AccountingNote.id == note.id,
                    AccountingNote.status == AccountingNoteStatus.PENDING
                )
                .values(
                    status=AccountingNoteStatus.CONVERTED,
                    converted_at=utcnow(),
                    converted_to_expense_id=expense.id,
                    source_type=source_type,
                    pm_advance_id=pm_advance_id
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning(f"Accounting note {note_id} was converted by a concurrent request")
                raise AlreadyProcessedError(note_id)

            expense.converted_from_note_id = note.id
            self.db.commit()
        except LedgerError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error converting accounting note {note_id}: {e}")
            raise

        self.db.refresh(invoice)
        self.db.refresh(expense)
        note = self.get_note(note_id)

        logger.info(
            f"Converted accounting note {note_id} into expense {expense.id} "
            f"on invoice {invoice.invoice_number} ({'created' if invoice_created else 'updated'})"
        )
        return ConversionResult(
            note=note,
            invoice=invoice,
            expense=expense,
            invoice_created=invoice_created
        )

    # ===== RECHAZO / ELIMINACIÓN =====

    def reject_note(self, note_id: UUID) -> AccountingNote:
        """PENDING → REJECTED sin efectos financieros; converted_at registra el rechazo"""
        try:
            result = self.db.execute(
                update(AccountingNote)
                .where(
                    AccountingNote.id == note_id,
                    AccountingNote.status == AccountingNoteStatus.PENDING
                )
                .values(status=AccountingNoteStatus.REJECTED, converted_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Distinguir "no existe" de "ya procesada"
                self.get_note(note_id)
                raise AlreadyProcessedError(note_id)
            self.db.commit()
        except LedgerError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error rejecting accounting note {note_id}: {e}")
            raise

        logger.info(f"Rejected accounting note {note_id}")
        return self.get_note(note_id)

    def delete_note(self, note_id: UUID, actor_role: Union[UserRole, str]) -> None:
        """Eliminación física, solo ADMIN y solo notas PENDING"""
        if UserRole(getattr(actor_role, "value", actor_role)) != UserRole.ADMIN:
            raise PermissionDeniedError("Solo un administrador puede eliminar notas contables")

        note = self.get_note(note_id)
        try:
            result = self.db.execute(
                delete(AccountingNote)
                .where(
                    AccountingNote.id == note_id,
                    AccountingNote.status == AccountingNoteStatus.PENDING
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyProcessedError(note_id)
            self.db.expunge(note)
            self.db.commit()
        except LedgerError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error deleting accounting note {note_id}: {e}")
            raise

        logger.info(f"Deleted pending accounting note {note_id}")
