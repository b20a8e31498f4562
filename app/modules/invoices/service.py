"""
Servicios de negocio para facturas de unidades

Implementa:
- ClaimInvoiceConsolidator: enruta el monto de un gasto operativo hacia la
  única factura CLAIM abierta de la unidad, o crea una nueva
- InvoiceService: consultas de facturas
- PaymentService: aplicación atómica de pagos

Los saldos de las facturas solo se modifican con UPDATE condicionales
evaluados por la base de datos; nunca con "leer, validar en Python, escribir".
"""

from decimal import Decimal
from typing import List, Tuple
from uuid import UUID
import logging
import time

from sqlalchemy import delete, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.config import settings
from app.common.exceptions import (
    InvoiceNotFoundError, InvoiceNumberCollisionError, LedgerError,
    OverpaymentError, ValidationError
)
from app.common.ledger import PAID_TOLERANCE, derive_invoice_state, round_money
from app.modules.invoices.models import Invoice, InvoiceType, Payment
from app.modules.invoices.schemas import PaymentList
from app.modules.units.models import OperationalUnit, OwnerAssociation

logger = logging.getLogger(__name__)


class ClaimInvoiceConsolidator:
    """
    Busca-o-crea la factura CLAIM abierta de una unidad e incrementa sus totales.

    Corre dentro de la transacción activa del llamador y nunca hace commit:
    cualquier fallo aquí aborta la conversión completa.
    """

    def __init__(self, db: Session):
        self.db = db

    def consolidate(self, unit: OperationalUnit, amount: Decimal) -> Tuple[Invoice, bool]:
        """Devuelve ``(invoice, created)``"""
        amount = round_money(amount)

        open_invoices = self.db.query(Invoice).filter(
            Invoice.unit_id == unit.id,
            Invoice.type == InvoiceType.CLAIM,
            Invoice.is_paid.is_(False)
        ).order_by(Invoice.issued_at.desc()).populate_existing().all()

        if open_invoices:
            target = open_invoices[0]
            if len(open_invoices) > 1:
                target = self._merge_duplicates(target, open_invoices[1:])

            result = self.db.execute(
                update(Invoice)
                .where(Invoice.id == target.id, Invoice.is_paid.is_(False))
                .values(
                    amount=Invoice.amount + amount,
                    remaining_balance=Invoice.remaining_balance + amount
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.refresh(target)
                logger.info(f"Claim invoice {target.invoice_number} increased by {amount}")
                return target, False

            # Pagada entre la lectura y el UPDATE: se emite una nueva
            logger.warning(f"Claim invoice {target.invoice_number} was settled concurrently; minting a new one")

        return self._create_claim_invoice(unit, amount), True

    def _merge_duplicates(self, target: Invoice, duplicates: List[Invoice]) -> Invoice:
        """Fusionar facturas CLAIM abiertas extra en ``target`` (la más reciente)"""
        from app.modules.accounting_notes.models import OperationalExpense

        amount_increment = Decimal("0")
        paid_increment = Decimal("0")
        duplicate_ids = []

        for duplicate in duplicates:
            logger.warning(
                f"Merging duplicate open claim invoice {duplicate.invoice_number} "
                f"into {target.invoice_number}"
            )
            amount_increment += round_money(duplicate.amount)
            paid_increment += round_money(duplicate.total_paid)
            duplicate_ids.append(duplicate.id)

        self.db.execute(
            update(OperationalExpense)
            .where(OperationalExpense.claim_invoice_id.in_(duplicate_ids))
            .values(claim_invoice_id=target.id)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Payment)
            .where(Payment.invoice_id.in_(duplicate_ids))
            .values(invoice_id=target.id)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(Invoice)
            .where(Invoice.id.in_(duplicate_ids))
            .execution_options(synchronize_session=False)
        )
        for duplicate in duplicates:
            self.db.expunge(duplicate)

        target.amount = round_money(target.amount + amount_increment)
        target.total_paid = round_money(target.total_paid + paid_increment)
        target.remaining_balance, target.is_paid = derive_invoice_state(target.amount, target.total_paid)
        self.db.flush()
        return target

    def _ensure_owner_association(self, unit: OperationalUnit) -> OwnerAssociation:
        owner_association = self.db.query(OwnerAssociation).filter(
            OwnerAssociation.unit_id == unit.id
        ).first()
        if not owner_association:
            owner_association = OwnerAssociation(
                unit_id=unit.id,
                name=f"Owner - {unit.name}",
                phone="",
                email=""
            )
            self.db.add(owner_association)
            self.db.flush()
            logger.info(f"Created placeholder owner association for unit {unit.code}")
        return owner_association

    def generate_invoice_number(self, unit: OperationalUnit) -> str:
        return f"{settings.CLAIM_INVOICE_PREFIX}-{int(time.time() * 1000)}-{unit.code}"

    def _create_claim_invoice(self, unit: OperationalUnit, amount: Decimal) -> Invoice:
        owner_association = self._ensure_owner_association(unit)
        invoice_number = self.generate_invoice_number(unit)

        invoice = Invoice(
            invoice_number=invoice_number,
            type=InvoiceType.CLAIM,
            unit_id=unit.id,
            owner_association_id=owner_association.id,
            amount=amount,
            total_paid=Decimal("0.00"),
            remaining_balance=amount,
            is_paid=False
        )
        self.db.add(invoice)
        try:
            self.db.flush()
        except IntegrityError as e:
            # Sin reintento: una colisión indica un defecto de reloj o de códigos
            logger.error(f"Invoice number collision for unit {unit.code}: {invoice_number}")
            raise InvoiceNumberCollisionError(invoice_number) from e

        logger.info(f"Created claim invoice {invoice_number} for unit {unit.code} ({amount})")
        return invoice


class InvoiceService:
    """Consultas de facturas"""

    def __init__(self, db: Session):
        self.db = db

    def get_invoice_by_id(self, invoice_id: UUID) -> Invoice:
        invoice = self.db.get(Invoice, invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def get_invoice_detail(self, invoice_id: UUID) -> Invoice:
        """Factura con pagos y gastos operativos vinculados"""
        invoice = self.db.query(Invoice).options(
            selectinload(Invoice.payments),
            selectinload(Invoice.operational_expenses)
        ).filter(Invoice.id == invoice_id).populate_existing().first()
        if not invoice:
            raise InvoiceNotFoundError(invoice_id)
        return invoice


class PaymentService:
    """Aplicación de pagos a facturas"""

    def __init__(self, db: Session):
        self.db = db

    def apply_payment(self, invoice_id: UUID, amount: Decimal) -> Payment:
        """
        Registrar un pago.

        En una sola transacción: incremento condicional de total_paid (falla si
        excede el monto de la factura más la tolerancia), inserción del pago y
        derivación de remaining_balance / is_paid con las primitivas del ledger.
        """
        amount = round_money(amount)
        if amount <= 0:
            raise ValidationError("El monto del pago debe ser mayor a cero", amount=amount)

        invoice = InvoiceService(self.db).get_invoice_by_id(invoice_id)

        try:
            result = self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.total_paid + amount < Invoice.amount + PAID_TOLERANCE
                )
                .values(total_paid=Invoice.total_paid + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.refresh(invoice)
                raise OverpaymentError(max_allowed=round_money(invoice.remaining_balance))

            payment = Payment(invoice_id=invoice_id, amount=amount)
            self.db.add(payment)
            self.db.flush()

            self.db.refresh(invoice)
            invoice.total_paid = round_money(invoice.total_paid)
            invoice.remaining_balance, invoice.is_paid = derive_invoice_state(invoice.amount, invoice.total_paid)

            self.db.commit()
            self.db.refresh(payment)
        except LedgerError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error applying payment to invoice {invoice_id}: {e}")
            raise

        logger.info(
            f"Applied payment {payment.id} of {amount} to invoice {invoice.invoice_number} "
            f"(remaining={invoice.remaining_balance}, paid={invoice.is_paid})"
        )
        return payment

    def list_payments(self, invoice_id: UUID) -> PaymentList:
        InvoiceService(self.db).get_invoice_by_id(invoice_id)
        payments = self.db.query(Payment).filter(
            Payment.invoice_id == invoice_id
        ).order_by(Payment.created_at.desc()).all()
        return PaymentList(items=payments, total=len(payments))
