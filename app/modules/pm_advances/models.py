"""
Modelos SQLAlchemy para anticipos de efectivo a Project Managers (PM Advances)

Un anticipo es un fondo entregado a un PM que se consume con conversiones de
notas contables financiadas con PM_ADVANCE. Invariante: 0 <= remaining_amount <= amount.
"""

from app.database.database import Base
from sqlalchemy import Column, ForeignKey, Numeric, Text, Uuid, CheckConstraint
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin


class PMAdvance(Base, BaseMixin):
    __tablename__ = "pm_advances"

    staff_id = Column(Uuid, nullable=False, index=True)  # Miembro del staff que recibe el fondo
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=True, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    remaining_amount = Column(Numeric(15, 2), nullable=False)
    notes = Column(Text, nullable=True)

    # Relationships
    project = relationship("Project")
    operational_expenses = relationship("OperationalExpense", back_populates="pm_advance")

    __table_args__ = (
        CheckConstraint("remaining_amount >= 0", name="ck_pm_advance_remaining_non_negative"),
        CheckConstraint("remaining_amount <= amount", name="ck_pm_advance_remaining_within_amount"),
    )
