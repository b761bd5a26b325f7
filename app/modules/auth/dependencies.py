"""
Dependencias de autenticación para FastAPI.

La gestión de usuarios y roles vive fuera de este servicio: aquí solo se
valida el token de contexto (JWT) que emite el servicio de autenticación,
con los claims sub, tenant_id y user_role.
"""
from typing import List
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import decode_context_token

# Security scheme
security = HTTPBearer()

TILL_OPERATOR_ROLES = ["owner", "admin", "seller", "cashier"]
COMPANY_ROLES = TILL_OPERATOR_ROLES + ["accountant", "viewer"]


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Contexto del usuario a partir del token.
        Si llega X-Company-ID debe coincidir con el tenant del token.
        """
        context = decode_context_token(credentials.credentials)
        if context is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token de contexto inválido o expirado",
                headers={"WWW-Authenticate": "Bearer"},
            )

        header_tenant = getattr(request.state, "tenant_id", None)
        if header_tenant and context.tenant_id and header_tenant != context.tenant_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="El token no corresponde a la empresa indicada"
            )
        return context

    @staticmethod
    def require_role(allowed_roles: List[str]):
        """Exige empresa seleccionada y uno de los roles indicados."""
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)) -> AuthContext:
            if auth_context.tenant_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="El token no incluye empresa"
                )
            if auth_context.user_role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Rol no autorizado; se requiere: {', '.join(allowed_roles)}"
                )
            return auth_context
        return role_checker

    @staticmethod
    def require_till_operator():
        """Roles que operan la caja; las capacidades finas las decide la puerta de permisos."""
        return AuthDependencies.require_role(TILL_OPERATOR_ROLES)

    @staticmethod
    def require_any_role():
        """Cualquier rol de la empresa (consultas)."""
        return AuthDependencies.require_role(COMPANY_ROLES)

