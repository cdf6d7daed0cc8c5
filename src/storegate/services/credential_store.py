"""
Master database credential store.

Implements the login state machine against TenantUsers joined with
Tenants:

1. No row                      -> invalid credentials (email not revealed)
2. Tenant not active           -> tenant suspended
3. User inactive               -> account disabled
4. locked_until in the future  -> locked (remaining minutes);
   locked_until in the past    -> lock reset, evaluation continues
5. Wrong password              -> atomic increment; threshold -> locked
6. Correct password            -> counters reset, last_login stamped

Every counter mutation is one conditional UPDATE ... RETURNING, so
concurrent attempts on the same row can neither lose an increment nor
slip past the threshold.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.connection_router import ConnectionRouter
from ..core.exceptions import (
    AccountDisabledError,
    AccountLockedError,
    InvalidCredentialsError,
    SyncIntegrityError,
    TenantSuspendedError,
)
from ..core.security import utcnow, verify_password_async
from ..models.master import Tenant, TenantStatus, TenantUser, TenantUserStatus

logger = logging.getLogger(__name__)


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    TENANT_SUSPENDED = "tenant_suspended"
    ACCOUNT_DISABLED = "disabled"
    LOCKED = "locked"


@dataclass(frozen=True)
class TenantUserRecord:
    """TenantUser joined with its Tenant."""
    id: str
    tenant_id: str
    email: str
    is_owner: bool
    status: str
    tenant_name: str
    tenant_slug: str
    tenant_status: str
    database_name: str
    database_server: Optional[str] = None
    last_login: Optional[datetime] = None


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a Master-database credential check."""
    outcome: LoginOutcome
    record: Optional[TenantUserRecord] = None
    attempts_remaining: Optional[int] = None
    lock_remaining_minutes: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.outcome == LoginOutcome.SUCCESS

    def raise_for_outcome(self) -> TenantUserRecord:
        """
        Return the record on success, raise the typed error otherwise.

        Raises:
            InvalidCredentialsError, TenantSuspendedError,
            AccountDisabledError, AccountLockedError
        """
        if self.outcome == LoginOutcome.SUCCESS:
            return self.record
        if self.outcome == LoginOutcome.TENANT_SUSPENDED:
            raise TenantSuspendedError()
        if self.outcome == LoginOutcome.ACCOUNT_DISABLED:
            raise AccountDisabledError()
        if self.outcome == LoginOutcome.LOCKED:
            raise AccountLockedError(self.lock_remaining_minutes or 0)
        raise InvalidCredentialsError(attempts_remaining=self.attempts_remaining)


def _remaining_minutes(locked_until: datetime, now: datetime) -> int:
    return max(1, math.ceil((locked_until - now).total_seconds() / 60))


def _to_record(user: TenantUser, tenant: Tenant) -> TenantUserRecord:
    return TenantUserRecord(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        is_owner=user.is_owner,
        status=user.status,
        tenant_name=tenant.name,
        tenant_slug=tenant.slug,
        tenant_status=tenant.status,
        database_name=tenant.database_name,
        database_server=tenant.database_server,
        last_login=user.last_login,
    )


class CredentialStore:
    """
    Read/write access to Master-database tenant and credential records.

    Lockout policy comes from settings (default 5 attempts, 15 minutes).
    """

    def __init__(
        self,
        router: ConnectionRouter,
        max_failed_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
    ):
        self._router = router
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration

    @classmethod
    def from_settings(cls, router: ConnectionRouter, settings) -> "CredentialStore":
        return cls(
            router,
            max_failed_attempts=settings.MAX_FAILED_LOGIN_ATTEMPTS,
            lockout_duration=timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES),
        )

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _find(
        self,
        session: AsyncSession,
        email: str,
        tenant_slug: Optional[str] = None,
    ):
        stmt = (
            select(TenantUser, Tenant)
            .join(Tenant, Tenant.id == TenantUser.tenant_id)
            .where(func.lower(TenantUser.email) == email.strip().lower())
            .order_by(TenantUser.created_at)
        )
        if tenant_slug:
            stmt = stmt.where(Tenant.slug == tenant_slug)

        result = await session.execute(stmt)
        return result.first()

    async def find_by_email(
        self,
        email: str,
        tenant_slug: Optional[str] = None,
    ) -> Optional[TenantUserRecord]:
        """
        Look up a tenant user by email.

        When the email exists in several tenants and no slug is given,
        the oldest account wins.
        """
        async with self._router.master_session() as session:
            row = await self._find(session, email, tenant_slug)
        if row is None:
            return None
        user, tenant = row
        return _to_record(user, tenant)

    async def get_tenant_user_id(self, tenant_id: str, email: str) -> Optional[str]:
        """
        Master TenantUser id for an email within one tenant.

        Raises:
            SyncIntegrityError: Several accounts differ only in email case
        """
        async with self._router.master_session() as session:
            result = await session.execute(
                select(TenantUser.id)
                .where(
                    TenantUser.tenant_id == tenant_id,
                    func.lower(TenantUser.email) == email.strip().lower(),
                )
                .limit(2)
            )
            ids = result.scalars().all()

        if len(ids) > 1:
            logger.error(f"Email {email} matches {len(ids)} Master accounts of tenant {tenant_id}")
            raise SyncIntegrityError(f"Ambiguous Master account for {email} in tenant {tenant_id}")
        return ids[0] if ids else None

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self._router.master_session() as session:
            result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
            return result.scalar_one_or_none()

    # ========================================================================
    # Login state machine
    # ========================================================================

    async def authenticate(
        self,
        email: str,
        password: str,
        tenant_slug: Optional[str] = None,
    ) -> LoginResult:
        """
        Check credentials and do lockout bookkeeping.

        Args:
            email: Login email (case-insensitive)
            password: Plain-text password
            tenant_slug: Disambiguates an email registered in several tenants

        Returns:
            LoginResult describing the outcome
        """
        async with self._router.master_session() as session:
            row = await self._find(session, email, tenant_slug)
            if row is None:
                return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

            user, tenant = row
            record = _to_record(user, tenant)

            if tenant.status != TenantStatus.ACTIVE:
                return LoginResult(LoginOutcome.TENANT_SUSPENDED, record=record)

            if user.status == TenantUserStatus.INACTIVE:
                return LoginResult(LoginOutcome.ACCOUNT_DISABLED, record=record)

            now = utcnow()
            if user.status == TenantUserStatus.LOCKED or user.locked_until is not None:
                if user.locked_until is not None and user.locked_until > now:
                    return LoginResult(
                        LoginOutcome.LOCKED,
                        record=record,
                        lock_remaining_minutes=_remaining_minutes(user.locked_until, now),
                    )
                await self._reset_expired_lock(session, user.id, now)

            if not await verify_password_async(password, user.password_hash):
                return await self._record_failure(session, record, utcnow())

            return await self._record_success(session, record, utcnow())

    async def _reset_expired_lock(self, session: AsyncSession, user_id: str, now: datetime) -> None:
        await session.execute(
            update(TenantUser)
            .where(
                TenantUser.id == user_id,
                or_(TenantUser.locked_until.is_(None), TenantUser.locked_until <= now),
            )
            .values(
                status=TenantUserStatus.ACTIVE,
                failed_login_attempts=0,
                locked_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info(f"Expired lockout cleared for tenant user {user_id}")

    async def _record_failure(
        self,
        session: AsyncSession,
        record: TenantUserRecord,
        now: datetime,
    ) -> LoginResult:
        result = await session.execute(
            update(TenantUser)
            .where(TenantUser.id == record.id)
            .values(
                failed_login_attempts=TenantUser.failed_login_attempts + 1,
                updated_at=now,
            )
            .returning(TenantUser.failed_login_attempts)
            .execution_options(synchronize_session=False)
        )
        attempts = result.scalar_one()

        if attempts < self.max_failed_attempts:
            await session.commit()
            remaining = self.max_failed_attempts - attempts
            logger.info(
                f"Failed login for tenant user {record.id} "
                f"(attempt {attempts}/{self.max_failed_attempts})"
            )
            return LoginResult(
                LoginOutcome.INVALID_CREDENTIALS,
                record=record,
                attempts_remaining=remaining,
            )

        locked_until = now + self.lockout_duration
        # Keep an existing unexpired lock window rather than extending it
        await session.execute(
            update(TenantUser)
            .where(
                TenantUser.id == record.id,
                or_(TenantUser.locked_until.is_(None), TenantUser.locked_until <= now),
            )
            .values(status=TenantUserStatus.LOCKED, locked_until=locked_until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        logger.warning(
            f"Tenant user {record.id} locked after {attempts} failed attempts "
            f"(tenant={record.tenant_id})"
        )
        return LoginResult(
            LoginOutcome.LOCKED,
            record=record,
            attempts_remaining=0,
            lock_remaining_minutes=_remaining_minutes(locked_until, now),
        )

    async def _record_success(
        self,
        session: AsyncSession,
        record: TenantUserRecord,
        now: datetime,
    ) -> LoginResult:
        # Refuses to clear a lock another attempt set after our read
        result = await session.execute(
            update(TenantUser)
            .where(
                TenantUser.id == record.id,
                TenantUser.status != TenantUserStatus.INACTIVE,
                or_(TenantUser.locked_until.is_(None), TenantUser.locked_until <= now),
            )
            .values(
                status=TenantUserStatus.ACTIVE,
                failed_login_attempts=0,
                locked_until=None,
                last_login=now,
                updated_at=now,
            )
            .returning(TenantUser.id)
            .execution_options(synchronize_session=False)
        )
        updated = result.scalar_one_or_none()
        await session.commit()

        if updated is None:
            return await self._current_state(record, now)

        return LoginResult(LoginOutcome.SUCCESS, record=record)

    async def _current_state(self, record: TenantUserRecord, now: datetime) -> LoginResult:
        """Outcome for a row that changed between our read and our write."""
        async with self._router.master_session() as session:
            result = await session.execute(
                select(TenantUser.status, TenantUser.locked_until).where(TenantUser.id == record.id)
            )
            row = result.first()

        if row is None:
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)
        status, locked_until = row
        if status == TenantUserStatus.INACTIVE:
            return LoginResult(LoginOutcome.ACCOUNT_DISABLED, record=record)
        if locked_until is not None and locked_until > now:
            return LoginResult(
                LoginOutcome.LOCKED,
                record=record,
                lock_remaining_minutes=_remaining_minutes(locked_until, now),
            )
        return LoginResult(LoginOutcome.INVALID_CREDENTIALS, record=record)
