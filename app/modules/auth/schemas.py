from enum import Enum
from uuid import UUID
from pydantic import BaseModel


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    ACCOUNTANT = "ACCOUNTANT"
    PROJECT_MANAGER = "PROJECT_MANAGER"


class AuthContext(BaseModel):
    """Identidad y rol del actor ya autenticado."""
    user_id: UUID
    user_role: UserRole
