"""
Lookups of user membership and roles within a tenant.
"""
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.modules.auth.models import User, UserTenant


class AuthService:
    """Resolve users and their per-tenant role sets."""

    def __init__(self, db: Session):
        self.db = db

    def get_membership(self, tenant_id: UUID, user_id: UUID) -> Optional[UserTenant]:
        return self.db.query(UserTenant).filter(
            UserTenant.tenant_id == tenant_id,
            UserTenant.user_id == user_id,
            UserTenant.is_active == True
        ).first()

    def get_user_roles(self, tenant_id: UUID, user_id: UUID) -> List[str]:
        """Roles the user holds in the tenant; empty when not a member."""
        membership = self.get_membership(tenant_id, user_id)
        if not membership:
            return []
        return list(membership.roles or [])

    def get_active_user(self, user_id: UUID) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id, User.is_active == True).first()
