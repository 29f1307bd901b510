"""
Authentication dependencies for FastAPI.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import jwt

from app.dependencies.dbDependecies import get_db
from app.modules.auth.schemas import AuthContext
from app.modules.auth.service import AuthService
from app.modules.auth.utils import verify_token

# Security scheme
security = HTTPBearer()

class AuthDependencies:
    """Reusable authentication dependencies."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: Session = Depends(get_db)
    ) -> AuthContext:
        """
        Resolve the authenticated user and their roles in the tenant selected
        by TenantMiddleware (X-Tenant-ID).
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = verify_token(credentials.credentials)
            user_id = UUID(payload.get("sub"))
        except (jwt.PyJWTError, TypeError, ValueError):
            raise credentials_exception

        tenant_id = getattr(request.state, "tenant_id", None)
        if tenant_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Tenant context not found. Ensure X-Tenant-ID header is provided."
            )

        auth_service = AuthService(db)
        if auth_service.get_active_user(user_id) is None:
            raise credentials_exception

        membership = auth_service.get_membership(tenant_id, user_id)
        if membership is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have access to this tenant"
            )

        return AuthContext(
            user_id=user_id,
            tenant_id=tenant_id,
            store_id=getattr(request.state, "store_id", None),
            roles=list(membership.roles or [])
        )

    @staticmethod
    def require_role(allowed_roles: list[str]):
        """
        Dependency requiring at least one of the given roles.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.has_any_role(allowed_roles):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"One of these roles is required: {', '.join(allowed_roles)}"
                )
            return auth_context
        return role_checker

# Dependency instances
get_auth_context = AuthDependencies.get_auth_context
require_role = AuthDependencies.require_role
