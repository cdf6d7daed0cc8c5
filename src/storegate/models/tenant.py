"""
Per-tenant database models.

Every tenant database carries the same identity tables: users, their
server-side sessions, stores and store assignments. The single-tenant
(legacy) database uses the same layout.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..core.security import utcnow


def _new_id() -> str:
    return str(uuid4())


class User(SQLModel, table=True):
    """
    Tenant-local user with role and permission overrides.

    In multi-tenant mode the password lives on the Master TenantUser row
    and password_hash stays empty. permissions holds the JSON-encoded
    global override map, or NULL for role defaults.
    """

    __tablename__ = "users"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    email: str = Field(index=True, unique=True, max_length=255)
    password_hash: Optional[str] = Field(default=None, max_length=255)
    display_name: str = Field(default="", max_length=255)
    role: str = Field(default="salesperson", max_length=50)
    permissions: Optional[str] = None
    status: str = Field(default="active", max_length=20)

    # Only consulted by the single-tenant login path
    locked_until: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_login: Optional[datetime] = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def is_active(self) -> bool:
        return self.status == "active"


class Session(SQLModel, table=True):
    """
    Server-side session backing a signed token.

    Checked on every authenticated request so that logout and
    deactivation take effect before the token expires.
    """

    __tablename__ = "sessions"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    token: str = Field(max_length=255)
    expires_at: datetime = Field(sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Store(SQLModel, table=True):
    """Physical store of the tenant."""

    __tablename__ = "stores"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    name: str = Field(max_length=255)
    code: str = Field(max_length=50)
    status: str = Field(default="active", max_length=20)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class UserStore(SQLModel, table=True):
    """
    Assignment of a user to a store.

    role_override replaces the user's role inside this store;
    permissions_override is a JSON override map scoped to this store.
    """

    __tablename__ = "user_stores"
    __table_args__ = (UniqueConstraint("user_id", "store_id", name="uq_user_stores_user_store"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    store_id: str = Field(foreign_key="stores.id", index=True, max_length=36)
    role_override: Optional[str] = Field(default=None, max_length=50)
    permissions_override: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
