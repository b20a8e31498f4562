"""
Módulo de Reconciliación

Rutinas de reparación invocadas bajo demanda por un administrador:
recalcular facturas desde sus pagos y eliminar sobrepagos en facturas CLAIM.
"""
