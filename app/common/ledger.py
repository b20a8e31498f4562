"""
Primitivas monetarias compartidas por todo el ledger

Todo campo monetario persistido es la salida de ``round_money``. El estado
"pagado" de una factura se deriva únicamente con ``derive_invoice_state``:
tanto la aplicación de pagos como la reconciliación la usan, de modo que
ambos caminos nunca discrepan.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple, Union

MONEY_QUANTUM = Decimal("0.01")
PAID_TOLERANCE = Decimal("0.01")

MoneyLike = Union[Decimal, int, float, str, None]


def round_money(value: MoneyLike) -> Decimal:
    """Redondear a 2 decimales (half-up). ``None`` cuenta como cero."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        # str() evita arrastrar la representación binaria del float
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def derive_invoice_state(amount: MoneyLike, total_paid: MoneyLike) -> Tuple[Decimal, bool]:
    """
    Derivar ``(remaining_balance, is_paid)`` de una factura.

    remaining_balance = round(amount - total_paid, 2)
    is_paid = remaining_balance <= 0.01
    """
    remaining = round_money(round_money(amount) - round_money(total_paid))
    return remaining, remaining <= PAID_TOLERANCE


def exceeds_tolerance(total: MoneyLike, limit: MoneyLike) -> bool:
    """True si ``total`` supera ``limit`` por más que ruido de redondeo."""
    return round_money(total) > round_money(limit) + PAID_TOLERANCE
