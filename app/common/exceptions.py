"""
Taxonomía de errores del ledger

Cada error lleva un ``code`` estable, el ``status_code`` HTTP equivalente y un
``payload`` estructurado para que la capa que llama pueda decidir el mensaje
sin comparar strings. ``app.main`` los traduce a respuestas JSON.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import status


class LedgerError(Exception):
    """Base de todos los errores de negocio del ledger."""

    code = "LEDGER_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Error de ledger"

    def __init__(self, message: Optional[str] = None, **payload: Any):
        self.message = message or self.message
        self.payload: Dict[str, Any] = payload
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        for key, value in self.payload.items():
            if isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, UUID):
                value = str(value)
            body[key] = value
        return body


# ===== NOT FOUND =====

class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    message = "Registro no encontrado"


class AccountingNoteNotFoundError(NotFoundError):
    code = "ACCOUNTING_NOTE_NOT_FOUND"

    def __init__(self, note_id: UUID):
        super().__init__("Nota contable no encontrada", note_id=note_id)
        self.note_id = note_id


class PMAdvanceNotFoundError(NotFoundError):
    code = "PM_ADVANCE_NOT_FOUND"

    def __init__(self, pm_advance_id: UUID):
        super().__init__("Anticipo de PM no encontrado", pm_advance_id=pm_advance_id)
        self.pm_advance_id = pm_advance_id


class InvoiceNotFoundError(NotFoundError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: UUID):
        super().__init__("Factura no encontrada", invoice_id=invoice_id)
        self.invoice_id = invoice_id


class UnitNotFoundError(NotFoundError):
    code = "UNIT_NOT_FOUND"

    def __init__(self, unit_id: UUID):
        super().__init__("Unidad operativa no encontrada", unit_id=unit_id)
        self.unit_id = unit_id


class ProjectNotFoundError(NotFoundError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: UUID):
        super().__init__("Proyecto no encontrado", project_id=project_id)
        self.project_id = project_id


# ===== ESTADO =====

class AlreadyProcessedError(LedgerError):
    """La nota ya salió de PENDING: carrera perdida o cliente desactualizado."""

    code = "ACCOUNTING_NOTE_ALREADY_PROCESSED"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, note_id: UUID):
        super().__init__("La nota contable ya fue procesada", note_id=note_id)
        self.note_id = note_id


class MissingUnitError(LedgerError):
    code = "ACCOUNTING_NOTE_MISSING_UNIT"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, note_id: UUID):
        super().__init__("La nota contable no tiene una unidad válida", note_id=note_id)
        self.note_id = note_id


# ===== ANTICIPOS =====

class PMAdvanceRequiredError(LedgerError):
    code = "ACCOUNTING_NOTE_PM_ADVANCE_REQUIRED"

    def __init__(self, note_id: UUID):
        super().__init__("Se requiere un anticipo de PM para notas PM_ADVANCE", note_id=note_id)
        self.note_id = note_id


class PMAdvanceInsufficientError(LedgerError):
    code = "ACCOUNTING_NOTE_PM_ADVANCE_INSUFFICIENT"

    def __init__(self, remaining: Decimal, needed: Decimal):
        super().__init__(
            f"Saldo insuficiente en el anticipo ({remaining} disponible, {needed} requerido)",
            remaining=remaining,
            needed=needed
        )
        self.remaining = remaining
        self.needed = needed


# ===== VALIDACIÓN =====

class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Datos inválidos"


class OverpaymentError(ValidationError):
    code = "OVERPAYMENT"

    def __init__(self, max_allowed: Decimal):
        super().__init__(
            f"El pago excede el monto de la factura. Máximo permitido: {max_allowed}",
            max_allowed=max_allowed
        )
        self.max_allowed = max_allowed


class InvoiceNumberCollisionError(LedgerError):
    """Número de factura repetido: defecto de reloj o de generación de códigos."""

    code = "INVOICE_NUMBER_COLLISION"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, invoice_number: str):
        super().__init__(f"Número de factura duplicado: {invoice_number}", invoice_number=invoice_number)
        self.invoice_number = invoice_number


class PermissionDeniedError(LedgerError):
    code = "PERMISSION_DENIED"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Operación restringida a administradores"
