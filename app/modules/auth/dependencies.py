"""
Dependencias de autenticación para FastAPI.

El back office resuelve la sesión fuera de este servicio; aquí solo se valida
el token y se obtiene la identidad y el rol del actor.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from app.modules.auth.schemas import AuthContext, UserRole
from app.modules.auth.utils import decode_access_token

# Security scheme
security = HTTPBearer()

class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación (usuario y rol) desde token JWT.
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = decode_access_token(credentials.credentials)
            user_id = payload.get("sub")
            role = payload.get("role")
            if user_id is None or role is None:
                raise credentials_exception
            return AuthContext(user_id=UUID(user_id), user_role=UserRole(role))
        except (jwt.PyJWTError, ValueError):
            raise credentials_exception

    @staticmethod
    def require_role(allowed_roles: list[UserRole]):
        """
        Dependencia para requerir roles específicos.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if auth_context.user_role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(r.value for r in allowed_roles)}"
                )
            return auth_context
        return role_checker

    @staticmethod
    def require_admin():
        return AuthDependencies.require_role([UserRole.ADMIN])

    @staticmethod
    def require_finance():
        """Roles con acceso a conversiones y pagos."""
        return AuthDependencies.require_role([UserRole.ADMIN, UserRole.ACCOUNTANT])

# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_admin = AuthDependencies.require_admin
require_finance = AuthDependencies.require_finance
