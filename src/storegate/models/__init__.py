"""
SQLModel database models.

Master and tenant tables share one metadata object; MASTER_TABLES and
TENANT_TABLES select which tables belong in which database.
"""

from .master import Tenant, TenantStatus, TenantUser, TenantUserStatus
from .tenant import Session, Store, User, UserStore

MASTER_TABLES = [Tenant.__table__, TenantUser.__table__]
TENANT_TABLES = [User.__table__, Session.__table__, Store.__table__, UserStore.__table__]

__all__ = [
    "Tenant",
    "TenantStatus",
    "TenantUser",
    "TenantUserStatus",
    "User",
    "Session",
    "Store",
    "UserStore",
    "MASTER_TABLES",
    "TENANT_TABLES",
]
