"""
Módulo de Facturación de Unidades

Este módulo maneja las facturas de cada unidad operativa:

- Facturas CLAIM: agregan los gastos operativos convertidos desde notas
  contables; a lo sumo una abierta por unidad
- Facturas MANAGEMENT_SERVICE: cuota mensual (generación fuera de este servicio)
- Pagos: append-only, aplicados con incremento condicional de total_paid

Invariantes de saldo (ver app.common.ledger):
- remaining_balance = round(amount - total_paid, 2)
- is_paid = remaining_balance <= 0.01

Tablas principales:
- invoices: Facturas
- payments: Pagos de facturas
"""

from .models import Invoice, InvoiceType, Payment

__all__ = ["Invoice", "InvoiceType", "Payment"]
