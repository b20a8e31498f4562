"""
Rutinas de mantenimiento de facturas

- reconcile_all: recalcula total_paid desde los pagos (fuente de verdad) y
  corrige el drift de remaining_balance / is_paid
- repair_overpayments: elimina pagos en exceso de facturas CLAIM sobrecobradas

Ninguna escribe un saldo leído antes sin verificarlo: el estado recalculado se
guarda con un UPDATE condicional sobre amount, total_paid y la cantidad de
pagos tal como se leyeron. Si otra transacción tocó la factura en el medio, se
vuelve a leer y se recalcula. Ambas son idempotentes.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from app.common.exceptions import PermissionDeniedError
from app.common.ledger import derive_invoice_state, exceeds_tolerance, round_money
from app.modules.auth.schemas import UserRole
from app.modules.invoices.models import Invoice, InvoiceType, Payment
from app.modules.reconciliation.schemas import (
    InvoiceReconciliationItem, OverpaymentFix, OverpaymentRepairReport, RepairReport
)

logger = logging.getLogger(__name__)

# Intentos por factura cuando una escritura concurrente invalida la lectura
MAX_FIX_ATTEMPTS = 3
HALF_CENT = Decimal("0.005")


class ReconciliationService:
    def __init__(self, db: Session):
        self.db = db

    def _payment_totals(self, invoice_ids: Optional[Iterable[UUID]] = None) -> Dict[UUID, Tuple[Decimal, int]]:
        """Suma y cantidad de pagos por factura (SUM ... GROUP BY)"""
        query = self.db.query(
            Payment.invoice_id,
            func.coalesce(func.sum(Payment.amount), 0),
            func.count(Payment.id)
        ).group_by(Payment.invoice_id)
        if invoice_ids is not None:
            query = query.filter(Payment.invoice_id.in_(list(invoice_ids)))
        return {
            invoice_id: (round_money(total), count)
            for invoice_id, total, count in query.all()
        }

    def _read_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).populate_existing().first()

    def _write_state(
        self,
        invoice_id: UUID,
        expected_amount: Decimal,
        expected_total_paid: Decimal,
        payment_count: int,
        total_paid: Decimal,
        remaining: Decimal,
        is_paid: bool
    ) -> bool:
        """
        Compare-and-set del estado derivado de una factura.

        Solo escribe si amount, total_paid y la cantidad de pagos siguen como
        se leyeron. Cero filas afectadas significa que otra transacción
        (un pago, una consolidación u otra reparación) cambió la factura.
        """
        current_count = select(func.count(Payment.id)).where(
            Payment.invoice_id == invoice_id
        ).scalar_subquery()
        result = self.db.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.amount.between(expected_amount - HALF_CENT, expected_amount + HALF_CENT),
                Invoice.total_paid.between(expected_total_paid - HALF_CENT, expected_total_paid + HALF_CENT),
                current_count == payment_count
            )
            .values(total_paid=total_paid, remaining_balance=remaining, is_paid=is_paid)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ===== RECONCILIACIÓN =====

    def _compare(self, invoice: Invoice, totals: Dict[UUID, Tuple[Decimal, int]]) -> InvoiceReconciliationItem:
        total_paid, payment_count = totals.get(invoice.id, (Decimal("0.00"), 0))
        remaining, is_paid = derive_invoice_state(invoice.amount, total_paid)

        stored_total = round_money(invoice.total_paid)
        stored_remaining = round_money(invoice.remaining_balance)
        stored_is_paid = bool(invoice.is_paid)

        return InvoiceReconciliationItem(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            type=invoice.type,
            amount=round_money(invoice.amount),
            payment_count=payment_count,
            total_paid_before=stored_total,
            total_paid_after=total_paid,
            remaining_balance_before=stored_remaining,
            remaining_balance_after=remaining,
            is_paid_before=stored_is_paid,
            is_paid_after=is_paid,
            discrepancy=(
                stored_total != total_paid
                or stored_remaining != remaining
                or stored_is_paid != is_paid
            )
        )

    def _fix_invoice(self, item: InvoiceReconciliationItem) -> Tuple[InvoiceReconciliationItem, bool]:
        for _ in range(MAX_FIX_ATTEMPTS):
            if not item.discrepancy:
                return item, False

            fixed = self._write_state(
                item.invoice_id,
                expected_amount=item.amount,
                expected_total_paid=item.total_paid_before,
                payment_count=item.payment_count,
                total_paid=item.total_paid_after,
                remaining=item.remaining_balance_after,
                is_paid=item.is_paid_after
            )
            if fixed:
                logger.info(
                    f"Fixed invoice {item.invoice_number}: "
                    f"total_paid {item.total_paid_before} -> {item.total_paid_after}, "
                    f"remaining {item.remaining_balance_before} -> {item.remaining_balance_after}, "
                    f"is_paid {item.is_paid_before} -> {item.is_paid_after}"
                )
                return item, True

            logger.warning(f"Invoice {item.invoice_number} changed while reconciling, re-reading")
            invoice = self._read_invoice(item.invoice_id)
            if invoice is None:
                return item, False
            item = self._compare(invoice, self._payment_totals([invoice.id]))

        if item.discrepancy:
            logger.warning(
                f"Invoice {item.invoice_number} kept changing, left for the next run"
            )
        return item, False

    def reconcile_all(self, dry_run: bool = False) -> RepairReport:
        """
        Recalcular los totales de todas las facturas desde sus pagos.

        Solo escribe las facturas cuyo total_paid, remaining_balance o is_paid
        difiere del valor recalculado. Con ``dry_run`` no modifica nada.
        """
        items: List[InvoiceReconciliationItem] = []
        fixed_count = 0

        try:
            totals = self._payment_totals()
            invoices = self.db.query(Invoice).order_by(Invoice.issued_at.desc()).populate_existing().all()
            for invoice in invoices:
                item = self._compare(invoice, totals)
                if item.discrepancy and not dry_run:
                    item, fixed = self._fix_invoice(item)
                    fixed_count += int(fixed)
                items.append(item)

            if not dry_run:
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error reconciling invoices: {e}")
            raise

        discrepancies = [item for item in items if item.discrepancy]
        if not dry_run:
            logger.info(f"Reconciled {len(items)} invoices, fixed {fixed_count}")

        return RepairReport(
            dry_run=dry_run,
            total_invoices=len(items),
            fixed_invoices=fixed_count,
            items=items,
            discrepancies=discrepancies
        )

    # ===== SOBREPAGOS =====

    def _plan_overpayment_fix(self, invoice: Invoice) -> Optional[OverpaymentFix]:
        """Pagos a eliminar, del más reciente hacia atrás, hasta quedar en tolerancia"""
        payments = self.db.query(Payment.id, Payment.amount).filter(
            Payment.invoice_id == invoice.id
        ).order_by(Payment.created_at.desc()).all()

        total_before = round_money(sum((round_money(p.amount) for p in payments), Decimal("0")))
        if not exceeds_tolerance(total_before, invoice.amount):
            return None

        total_paid = total_before
        deleted_ids = []
        pending = list(payments)
        while pending and exceeds_tolerance(total_paid, invoice.amount):
            last_payment = pending.pop(0)
            total_paid = round_money(total_paid - round_money(last_payment.amount))
            deleted_ids.append(last_payment.id)

        remaining, is_paid = derive_invoice_state(invoice.amount, total_paid)
        return OverpaymentFix(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=round_money(invoice.amount),
            total_paid_before=total_before,
            total_paid_after=total_paid,
            overpayment=round_money(total_before - round_money(invoice.amount)),
            remaining_balance_after=remaining,
            is_paid_after=is_paid,
            payment_count=len(payments),
            deleted_payment_ids=deleted_ids
        )

    def _apply_overpayment_fix(self, fix: OverpaymentFix, stored_total_paid: Decimal) -> bool:
        deleted = self.db.execute(
            delete(Payment)
            .where(
                Payment.invoice_id == fix.invoice_id,
                Payment.id.in_(fix.deleted_payment_ids)
            )
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != len(fix.deleted_payment_ids):
            return False

        return self._write_state(
            fix.invoice_id,
            expected_amount=fix.amount,
            expected_total_paid=stored_total_paid,
            payment_count=fix.payment_count - len(fix.deleted_payment_ids),
            total_paid=fix.total_paid_after,
            remaining=fix.remaining_balance_after,
            is_paid=fix.is_paid_after
        )

    def _repair_invoice(self, invoice_id: UUID) -> Optional[OverpaymentFix]:
        """Reparar una factura en su propia transacción; reintenta si cambió entre lectura y escritura"""
        for _ in range(MAX_FIX_ATTEMPTS):
            invoice = self._read_invoice(invoice_id)
            if invoice is None:
                return None

            fix = self._plan_overpayment_fix(invoice)
            if fix is None:
                return None

            try:
                if self._apply_overpayment_fix(fix, round_money(invoice.total_paid)):
                    self.db.commit()
                    logger.warning(
                        f"Removed {len(fix.deleted_payment_ids)} payments from overpaid invoice "
                        f"{fix.invoice_number} (paid {fix.total_paid_before} on {fix.amount})"
                    )
                    return fix
                self.db.rollback()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Error repairing overpaid invoice {invoice_id}: {e}")
                raise

            logger.warning(f"Invoice {fix.invoice_number} changed while repairing, re-reading")

        logger.warning(f"Invoice {invoice_id} kept changing, left for the next run")
        return None

    def repair_overpayments(self, actor_role: Union[UserRole, str]) -> OverpaymentRepairReport:
        """
        Eliminar pagos en exceso de facturas CLAIM.

        Para cada factura con suma de pagos > amount + 0.01 se elimina el pago
        más reciente, repetidamente, hasta quedar dentro de la tolerancia.
        Cada factura se repara en su propia transacción.
        Operación destructiva: solo ADMIN.
        """
        if UserRole(getattr(actor_role, "value", actor_role)) != UserRole.ADMIN:
            raise PermissionDeniedError("Solo un administrador puede reparar sobrepagos")

        claim_invoices = self.db.query(Invoice.id, Invoice.amount).filter(
            Invoice.type == InvoiceType.CLAIM
        ).all()
        totals = self._payment_totals()
        overpaid_ids = [
            row.id for row in claim_invoices
            if exceeds_tolerance(totals.get(row.id, (Decimal("0.00"), 0))[0], row.amount)
        ]

        fixes: List[OverpaymentFix] = []
        for invoice_id in overpaid_ids:
            fix = self._repair_invoice(invoice_id)
            if fix is not None:
                fixes.append(fix)

        return OverpaymentRepairReport(
            total_invoices_checked=len(claim_invoices),
            fixed_invoices=len(fixes),
            deleted_payments=sum(len(fix.deleted_payment_ids) for fix in fixes),
            fixes=fixes
        )
