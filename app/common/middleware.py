"""
Middleware for multi-tenant requests and response hardening
"""
from typing import Optional
from uuid import UUID
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Company-ID"


def tenant_error(detail: str) -> JSONResponse:
    return JSONResponse(content={"detail": detail}, status_code=status.HTTP_400_BAD_REQUEST)


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Resolves the company (tenant) of every API request from the
    X-Company-ID header into request.state.tenant_id.

    Auth dependencies compare it against the tenant claim of the token.
    """

    PUBLIC_PREFIXES = ("/docs", "/redoc", "/openapi.json", "/health")
    PUBLIC_PATHS = ("/",)

    def is_public(self, request: Request) -> bool:
        path = request.url.path
        return (
            request.method == "OPTIONS"
            or path in self.PUBLIC_PATHS
            or path.startswith(self.PUBLIC_PREFIXES)
        )

    @staticmethod
    def parse_tenant(raw: Optional[str]) -> Optional[UUID]:
        try:
            return UUID(raw)
        except (TypeError, ValueError):
            return None

    async def dispatch(self, request: Request, call_next):
        if self.is_public(request):
            return await call_next(request)

        raw_tenant = request.headers.get(TENANT_HEADER)
        if not raw_tenant:
            return tenant_error(f"Missing {TENANT_HEADER} header")

        tenant_id = self.parse_tenant(raw_tenant)
        if tenant_id is None:
            logger.debug(f"Rejected {request.method} {request.url.path}: malformed tenant {raw_tenant!r}")
            return tenant_error(f"Invalid {TENANT_HEADER} format. Must be a valid UUID")

        request.state.tenant_id = tenant_id
        logger.debug(f"{request.method} {request.url.path} tenant={tenant_id}")

        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers; till snapshots must never be cached"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers[name] = value
        return response
