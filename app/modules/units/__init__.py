from .models import Project, OperationalUnit, OwnerAssociation

__all__ = ["Project", "OperationalUnit", "OwnerAssociation"]
