from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
import jwt
from app.core.config import settings
from app.modules.auth.schemas import AuthContext

CONTEXT_TOKEN_EXPIRE_MINUTES = 30
CONTEXT_TOKEN_TYPE = "context"


def create_context_token(user_id: UUID, tenant_id: UUID, user_role: str,
                         expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT context token with tenant information.
    Used by the auth service, local tooling and the test suite.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=CONTEXT_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "user_role": user_role,
        "exp": expire,
        "type": CONTEXT_TOKEN_TYPE,
    }
    return jwt.encode(to_encode, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


def decode_context_token(token: str) -> Optional[AuthContext]:
    """Decode a context token; None when the signature, expiry or claims are invalid."""
    try:
        payload = jwt.decode(token, settings.APP_SECRET_STRING, algorithms=[settings.ALGORITHM])
        if payload.get("type", CONTEXT_TOKEN_TYPE) != CONTEXT_TOKEN_TYPE or not payload.get("sub"):
            return None
        tenant_id = payload.get("tenant_id")
        return AuthContext(
            user_id=UUID(payload["sub"]),
            tenant_id=UUID(tenant_id) if tenant_id else None,
            user_role=payload.get("user_role")
        )
    except (jwt.PyJWTError, ValueError):
        return None
