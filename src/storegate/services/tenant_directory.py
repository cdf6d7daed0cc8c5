"""
Identity queries against one tenant database.

Shared by the login flow, the "who am I" view and per-request session
validation, for both multi-tenant and single-tenant databases (they
share a schema).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, select, update

from ..core.connection_router import TenantConnection
from ..core.exceptions import SyncIntegrityError
from ..core.security import utcnow
from ..models.tenant import Session, Store, User, UserStore
from .permissions import Role, ALL_STORE_ROLES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreAccess:
    """A store the user can reach, with any store-scoped overrides."""
    store_id: str
    store_name: str
    store_code: str
    role_override: Optional[str] = None
    permissions_override: Optional[str] = None


class TenantDirectory:
    """Users, stores and sessions of one tenant database."""

    def __init__(self, connection: TenantConnection):
        self.connection = connection

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        User whose email matches case-insensitively.

        Raises:
            SyncIntegrityError: Several rows differ only in email case
        """
        async with self.connection.session() as session:
            result = await session.execute(
                select(User).where(func.lower(User.email) == email.strip().lower()).limit(2)
            )
            users = result.scalars().all()

        if len(users) > 1:
            logger.error(
                f"Email {email} matches {len(users)} users differing only in case "
                f"(tenant={self.connection.tenant_id})"
            )
            raise SyncIntegrityError(
                f"Ambiguous email {email} in database of {self.connection.tenant_id}"
            )
        return users[0] if users else None

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.connection.session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def get_stores(self, user_id: str, role: str) -> List[StoreAccess]:
        """
        Stores the user can reach, ordered by name.

        owner/company_manager get every active store; other roles get
        their active assignments.
        """
        async with self.connection.session() as session:
            if Role.parse(role) in ALL_STORE_ROLES:
                result = await session.execute(
                    select(Store).where(Store.status == "active").order_by(Store.name)
                )
                return [
                    StoreAccess(store_id=s.id, store_name=s.name, store_code=s.code)
                    for s in result.scalars().all()
                ]

            result = await session.execute(
                select(UserStore, Store)
                .join(Store, Store.id == UserStore.store_id)
                .where(UserStore.user_id == user_id, Store.status == "active")
                .order_by(Store.name)
            )
            return [
                StoreAccess(
                    store_id=store.id,
                    store_name=store.name,
                    store_code=store.code,
                    role_override=assignment.role_override,
                    permissions_override=assignment.permissions_override,
                )
                for assignment, store in result.all()
            ]

    async def create_session(self, session_id: str, user_id: str, expires_at: datetime) -> None:
        async with self.connection.session() as session:
            session.add(
                Session(
                    id=session_id,
                    user_id=user_id,
                    token=f"session_{session_id}",
                    expires_at=expires_at,
                )
            )
            await session.commit()

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session row. Returns False if it was already gone."""
        async with self.connection.session() as session:
            result = await session.execute(delete(Session).where(Session.id == session_id))
            await session.commit()
            return result.rowcount > 0

    async def session_is_valid(self, session_id: str, user_id: str) -> bool:
        """Session exists, belongs to the user and has not expired."""
        async with self.connection.session() as session:
            result = await session.execute(
                select(Session.id).where(
                    Session.id == session_id,
                    Session.user_id == user_id,
                    Session.expires_at > utcnow(),
                )
            )
            return result.scalar_one_or_none() is not None

    async def touch_last_login(self, user_id: str) -> None:
        async with self.connection.session() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(last_login=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
