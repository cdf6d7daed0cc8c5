"""
Master database models.

The Master database holds the tenant registry and the cross-tenant
login credentials. Tenant business data never lives here.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..core.security import utcnow


class TenantStatus:
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class TenantUserStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


def _new_id() -> str:
    return str(uuid4())


class Tenant(SQLModel, table=True):
    """
    Tenant (customer account) registry entry.

    Carries the routing coordinates of the tenant's own database.
    Never physically deleted while tenant users reference it.
    """

    __tablename__ = "tenants"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    name: str = Field(max_length=255)
    slug: str = Field(max_length=100, unique=True, index=True)
    email: str = Field(max_length=255, unique=True)
    status: str = Field(default=TenantStatus.ACTIVE, max_length=20)

    # Routing coordinates
    database_name: str = Field(max_length=128)
    database_server: Optional[str] = Field(default=None, max_length=255)

    subscription_plan: str = Field(default="basic", max_length=50)

    # Naive UTC throughout; DateTime pins the column type to match
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def is_active(self) -> bool:
        """Check if tenant may be routed to."""
        return self.status == TenantStatus.ACTIVE


class TenantUser(SQLModel, table=True):
    """
    Login credential for one user of one tenant.

    Invariant: status == locked implies locked_until is set.
    """

    __tablename__ = "tenant_users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_tenant_users_tenant_email"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, max_length=36)
    email: str = Field(index=True, max_length=255)
    password_hash: str = Field(max_length=255)
    is_owner: bool = Field(default=False)
    status: str = Field(default=TenantUserStatus.ACTIVE, max_length=20)

    failed_login_attempts: int = Field(default=0, ge=0)
    locked_until: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_login: Optional[datetime] = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
