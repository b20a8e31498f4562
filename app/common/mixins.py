"""
Common mixins for ledger models
"""
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.sql import func
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    # Valor del lado de Python: resolución de microsegundos para ordenar por recencia
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class BaseMixin(TimestampMixin):
    """UUID primary key plus timestamps for most business models"""

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
