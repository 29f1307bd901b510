from pydantic import BaseModel, Field
from typing import Optional, List
from uuid import UUID
from datetime import datetime


class UserTenantOut(BaseModel):
    id: UUID
    user_id: UUID
    tenant_id: UUID
    roles: List[str]
    is_active: bool
    joined_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuthContext(BaseModel):
    """Authenticated actor for the current request."""
    user_id: UUID
    tenant_id: UUID
    store_id: Optional[UUID] = None
    roles: List[str] = Field(default_factory=list)

    def has_any_role(self, roles) -> bool:
        return bool(set(self.roles) & set(roles))
