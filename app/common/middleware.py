"""
Middleware for handling multi-tenancy
"""
import json

from fastapi import Request, status
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

from app.common.responses import error_response

logger = logging.getLogger(__name__)


def _error(message: str) -> Response:
    return Response(
        content=json.dumps(error_response(message, "TENANT_CONTEXT")),
        status_code=status.HTTP_400_BAD_REQUEST,
        media_type="application/json"
    )


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts tenant_id from the X-Tenant-ID header (and an
    optional store_id from X-Store-ID) and sets them on request.state for use
    in endpoint handlers
    """

    # Paths that don't require tenant context
    EXEMPT_PREFIXES = [
        "/docs",
        "/redoc",
        "/openapi.json",
        "/health",
    ]

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path == "/" or any(path.startswith(prefix) for prefix in self.EXEMPT_PREFIXES):
            return await call_next(request)

        # Skip for OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        tenant_header = request.headers.get("X-Tenant-ID")
        if not tenant_header:
            return _error("Missing X-Tenant-ID header")

        try:
            tenant_id = UUID(tenant_header)
        except ValueError:
            return _error("Invalid X-Tenant-ID format. Must be a valid UUID")
        request.state.tenant_id = tenant_id

        store_header = request.headers.get("X-Store-ID")
        request.state.store_id = None
        if store_header:
            try:
                request.state.store_id = UUID(store_header)
            except ValueError:
                return _error("Invalid X-Store-ID format. Must be a valid UUID")

        logger.debug(f"Request to {path} with tenant_id: {tenant_id}")

        response = await call_next(request)

        # Add tenant ID to response headers for debugging
        response.headers["X-Tenant-ID"] = str(tenant_id)

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers for production
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response
