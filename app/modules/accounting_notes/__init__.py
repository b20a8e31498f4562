"""
Módulo de Notas Contables

Una nota contable es un gasto operativo reportado (por un PM o al cerrar un
trabajo técnico) pendiente de revisión. El contador la convierte en un
OperationalExpense, que se acumula en la factura CLAIM abierta de la unidad,
o la rechaza.

ESTADOS:
- PENDING: inicial
- CONVERTED: terminal, ligada a exactamente un gasto operativo
- REJECTED: terminal, sin efectos financieros

FUENTES DE FINANCIACIÓN:
- OFFICE_FUND: caja de la oficina (default)
- PM_ADVANCE: descuenta del anticipo entregado al PM
"""

from .models import AccountingNote, AccountingNoteStatus, ExpenseSourceType, OperationalExpense

__all__ = ["AccountingNote", "AccountingNoteStatus", "ExpenseSourceType", "OperationalExpense"]
