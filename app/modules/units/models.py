"""
Modelos de proyectos y unidades operativas

Solo se modela lo que el ledger necesita de estas entidades: la pertenencia
unidad → proyecto, el código de la unidad (usado en la numeración de facturas
CLAIM) y la asociación de propietarios que actúa como contacto de cobro.
"""

from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin


class Project(Base, BaseMixin):
    __tablename__ = "projects"

    name = Column(String(200), nullable=False, index=True)

    units = relationship("OperationalUnit", back_populates="project")


class OperationalUnit(Base, BaseMixin):
    """Unidad operativa (apartamento, local, etc.) dentro de un proyecto"""
    __tablename__ = "operational_units"

    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False, index=True)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(200), nullable=False)

    project = relationship("Project", back_populates="units")
    owner_association = relationship("OwnerAssociation", back_populates="unit", uselist=False)


class OwnerAssociation(Base, BaseMixin):
    """
    Contacto de cobro de una unidad

    Se crea automáticamente (placeholder) la primera vez que la unidad necesita
    una factura CLAIM. Una por unidad.
    """
    __tablename__ = "owner_associations"

    unit_id = Column(Uuid, ForeignKey("operational_units.id"), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=False, default="")
    email = Column(String(100), nullable=False, default="")

    unit = relationship("OperationalUnit", back_populates="owner_association")
