"""
Multi-Tenant Middleware
Resolves the calling tenant from a JWT claim or the X-Tenant-ID header
"""
from fastapi import Request, HTTPException, status
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Optional
import jwt

TENANT_HEADER = "X-Tenant-ID"

PUBLIC_PATHS = ["/", "/health", "/docs", "/openapi.json", "/redoc"]


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware to attach tenant_id to request state

    Usage:
    1. Add to main.py: app.add_middleware(TenantMiddleware)
    2. Access tenant via request.state.tenant_id in endpoints

    Token signatures are checked by the upstream auth gateway, so the
    payload is only decoded here.
    """

    def __init__(self, app, api_prefix: str = "/api/v1"):
        super().__init__(app)
        self.api_prefix = api_prefix

    async def dispatch(self, request: Request, call_next):
        request.state.tenant_id = None

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        # Provider callbacks carry no tenant identity
        if request.url.path.startswith(f"{self.api_prefix}/webhooks"):
            return await call_next(request)

        tenant_id = None

        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]
            try:
                payload = jwt.decode(token, options={"verify_signature": False})
                tenant_id = payload.get("tenant_id") or (payload.get("user_metadata") or {}).get("tenant_id")
            except jwt.InvalidTokenError:
                # Invalid token - fall back to the header
                tenant_id = None

        request.state.tenant_id = tenant_id or request.headers.get(TENANT_HEADER)

        return await call_next(request)


def get_current_tenant(request: Request) -> Optional[str]:
    """Dependency to get current tenant_id from request (None if unresolved)."""
    return getattr(request.state, "tenant_id", None)


def require_tenant(request: Request) -> str:
    """
    Dependency that rejects requests without a tenant.

    Raises:
        HTTPException: 401 if no tenant could be resolved
    """
    tenant_id = get_current_tenant(request)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Tenant not identified",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return tenant_id
