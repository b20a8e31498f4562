"""
Módulo de Anticipos de PM (PM Advances)

Un anticipo es efectivo entregado a un Project Manager. Se consume únicamente
por conversiones de notas contables con fuente PM_ADVANCE, mediante una
reserva atómica (UPDATE condicional). Solo una corrección administrativa
directa puede aumentar el saldo; no existe liberación ni reembolso.
"""

from .models import PMAdvance

__all__ = ["PMAdvance"]
