"""
Tenant connection router.

Maps a tenant id to a live connection pool for that tenant's database,
plus one fixed connection to the Master database.

Features:
- Lazy pool creation, serialized per tenant id
- Requests for different tenants never wait on each other
- Background eviction of pools idle longer than the configured age
- Explicit lifecycle (initialize / close), both idempotent

Locking:
    _init_lock       guards master connection setup and teardown
    _creation_locks  one lock per tenant id; held across the slow connect
    _map_lock        brief; held only while the cache dict is mutated

Usage:
    router = ConnectionRouter(settings)
    await router.initialize()

    conn = await router.get_connection(tenant_id)
    async with conn.session() as session:
        ...

    await router.close()
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy import event, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .exceptions import (
    LegacyModeDisabledError,
    RouterNotInitializedError,
    TenantNotFoundError,
    TenantSuspendedError,
    TenantUnavailableError,
)
from ..models.master import Tenant, TenantStatus
from ..monitoring import metrics

logger = logging.getLogger(__name__)

LEGACY_TENANT_KEY = "__legacy__"

_DATABASE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


def _take_write_lock_on_begin(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions start with BEGIN IMMEDIATE.

    Concurrent read-then-update transactions then queue on the busy
    timeout instead of failing with "database is locked".
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@dataclass(frozen=True)
class TenantRoutingInfo:
    """Routing record of a tenant, as stored in the Master database."""
    tenant_id: str
    name: str
    slug: str
    status: str
    database_name: str
    database_server: Optional[str] = None


@dataclass
class TenantConnection:
    """A cached tenant pool and its bookkeeping."""
    tenant_id: str
    engine: AsyncEngine
    session_maker: async_sessionmaker
    info: Optional[TenantRoutingInfo]
    created_at: float
    last_access: float = field(default=0.0)

    def session(self) -> AsyncSession:
        """Open a new session on this tenant's pool."""
        return self.session_maker()


class ConnectionRouter:
    """
    Owns every database engine the process talks to.

    Constructed once by the application entry point and handed to
    services explicitly. Tests build as many independent routers as
    they like.
    """

    def __init__(
        self,
        settings: Settings,
        engine_factory: Optional[Callable[[str], AsyncEngine]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize router.

        Args:
            settings: Application settings (database URLs, pool and cache sizing)
            engine_factory: Builds an AsyncEngine from a URL (injectable for tests)
            clock: Monotonic clock used for idle tracking
        """
        self._settings = settings
        self._engine_factory = engine_factory or self._create_engine
        self._clock = clock

        self._connections: Dict[str, TenantConnection] = {}
        self._creation_locks: Dict[str, asyncio.Lock] = {}
        self._map_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

        self._master_engine: Optional[AsyncEngine] = None
        self._master_session_maker: Optional[async_sessionmaker] = None
        self._legacy: Optional[TenantConnection] = None
        # False once close() has cleared the cache; guarded by _map_lock
        self._accepting_pools = False

        self._cleanup_interval = settings.ROUTER_CLEANUP_INTERVAL_SECONDS
        self._max_idle = settings.ROUTER_MAX_IDLE_SECONDS
        self._eviction_task: Optional[asyncio.Task] = None

    # ========================================================================
    # Engine construction
    # ========================================================================

    def _create_engine(self, url: str) -> AsyncEngine:
        if url.startswith("sqlite"):
            # SQLite pools do not accept sizing arguments
            engine = create_async_engine(url, future=True)
            _take_write_lock_on_begin(engine)
            return engine

        return create_async_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_size=self._settings.TENANT_POOL_SIZE,
            max_overflow=self._settings.TENANT_POOL_MAX_OVERFLOW,
            pool_timeout=self._settings.TENANT_POOL_TIMEOUT_SECONDS,
            pool_recycle=self._settings.TENANT_POOL_RECYCLE_SECONDS,
        )

    @staticmethod
    def _session_maker(engine: AsyncEngine) -> async_sessionmaker:
        return async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @staticmethod
    async def _probe(engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    def _tenant_url(self, info: TenantRoutingInfo) -> str:
        if not _DATABASE_NAME_PATTERN.match(info.database_name or ""):
            raise TenantUnavailableError(info.tenant_id, "invalid database name")
        return self._settings.TENANT_DATABASE_URL_TEMPLATE.format(
            server=info.database_server or "",
            database=info.database_name,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def is_initialized(self) -> bool:
        return self._master_engine is not None

    async def initialize(self) -> None:
        """
        Open the Master connection and start idle eviction.

        Idempotent and safe to call concurrently; only the first caller
        opens the connection.

        Raises:
            TenantUnavailableError: If the Master database cannot be reached
        """
        async with self._init_lock:
            if self._master_engine is not None:
                return

            engine = self._engine_factory(self._settings.MASTER_DATABASE_URL)
            try:
                await self._probe(engine)
            except (SQLAlchemyError, OSError) as e:
                await engine.dispose()
                logger.error(f"Master database unreachable: {e}")
                raise TenantUnavailableError("master", str(e)) from e

            self._master_engine = engine
            self._master_session_maker = self._session_maker(engine)

            if self._settings.LEGACY_DATABASE_URL:
                legacy_engine = self._engine_factory(self._settings.LEGACY_DATABASE_URL)
                now = self._clock()
                self._legacy = TenantConnection(
                    tenant_id=LEGACY_TENANT_KEY,
                    engine=legacy_engine,
                    session_maker=self._session_maker(legacy_engine),
                    info=None,
                    created_at=now,
                    last_access=now,
                )
                logger.info("Single-tenant database configured")

            self._accepting_pools = True
            self._start_eviction()
            logger.info("Connection router initialized")

    async def close(self) -> None:
        """
        Close every tenant pool and the Master connection.

        Idempotent; repeated calls are no-ops.
        """
        async with self._init_lock:
            if self._master_engine is None:
                return

            await self._stop_eviction()

            async with self._map_lock:
                self._accepting_pools = False
                connections = list(self._connections.values())
                self._connections.clear()
                metrics.tenant_pools_active.set(0)

            for conn in connections:
                await self._dispose(conn, reason="shutdown")

            if self._legacy is not None:
                await self._legacy.engine.dispose()
                self._legacy = None

            await self._master_engine.dispose()
            self._master_engine = None
            self._master_session_maker = None

            logger.info(f"Connection router closed ({len(connections)} tenant pools released)")

    # ========================================================================
    # Master and legacy connections
    # ========================================================================

    def get_master_connection(self) -> AsyncEngine:
        """
        Get the Master database engine.

        Raises:
            RouterNotInitializedError: If initialize() has not run
        """
        if self._master_engine is None:
            raise RouterNotInitializedError()
        return self._master_engine

    def master_session(self) -> AsyncSession:
        """Open a new session on the Master database."""
        if self._master_session_maker is None:
            raise RouterNotInitializedError()
        return self._master_session_maker()

    def get_legacy_connection(self) -> TenantConnection:
        """
        Get the single-tenant database connection.

        Raises:
            RouterNotInitializedError: If initialize() has not run
            LegacyModeDisabledError: If no single-tenant database is configured
        """
        if self._master_engine is None:
            raise RouterNotInitializedError()
        if self._legacy is None:
            raise LegacyModeDisabledError()
        self._legacy.last_access = self._clock()
        return self._legacy

    # ========================================================================
    # Tenant connections
    # ========================================================================

    async def get_tenant_info(self, tenant_id: str) -> Optional[TenantRoutingInfo]:
        """
        Look up a tenant's routing record in the Master database.

        Args:
            tenant_id: Tenant ID

        Returns:
            TenantRoutingInfo if the tenant exists, None otherwise
        """
        async with self.master_session() as session:
            result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
            tenant = result.scalar_one_or_none()

        if tenant is None:
            return None

        return TenantRoutingInfo(
            tenant_id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            status=tenant.status,
            database_name=tenant.database_name,
            database_server=tenant.database_server,
        )

    async def _creation_lock(self, tenant_id: str) -> asyncio.Lock:
        async with self._map_lock:
            lock = self._creation_locks.get(tenant_id)
            if lock is None:
                lock = asyncio.Lock()
                self._creation_locks[tenant_id] = lock
            return lock

    async def get_connection(self, tenant_id: str) -> TenantConnection:
        """
        Get the connection pool for a tenant, opening it on first use.

        Concurrent first requests for the same tenant open exactly one
        pool; requests for other tenants are not blocked.

        Args:
            tenant_id: Tenant ID

        Returns:
            TenantConnection for the tenant

        Raises:
            RouterNotInitializedError: If initialize() has not run
            TenantNotFoundError: If the tenant does not exist
            TenantSuspendedError: If the tenant is not active
            TenantUnavailableError: If the tenant database cannot be reached
        """
        if self._master_engine is None:
            raise RouterNotInitializedError()

        conn = self._connections.get(tenant_id)
        if conn is not None:
            conn.last_access = self._clock()
            return conn

        lock = await self._creation_lock(tenant_id)
        async with lock:
            # Another request may have finished creating it while we waited
            conn = self._connections.get(tenant_id)
            if conn is not None:
                conn.last_access = self._clock()
                return conn

            info = await self.get_tenant_info(tenant_id)
            if info is None:
                raise TenantNotFoundError(tenant_id)
            if info.status != TenantStatus.ACTIVE:
                raise TenantSuspendedError()

            started = time.perf_counter()
            engine = self._engine_factory(self._tenant_url(info))
            try:
                await self._probe(engine)
            except (SQLAlchemyError, OSError) as e:
                await engine.dispose()
                logger.error(f"Tenant database unreachable for {tenant_id}: {e}")
                raise TenantUnavailableError(tenant_id, str(e)) from e

            now = self._clock()
            conn = TenantConnection(
                tenant_id=tenant_id,
                engine=engine,
                session_maker=self._session_maker(engine),
                info=info,
                created_at=now,
                last_access=now,
            )

            async with self._map_lock:
                closed = not self._accepting_pools
                if not closed:
                    self._connections[tenant_id] = conn
                    metrics.tenant_pools_active.set(len(self._connections))

            if closed:
                # close() ran while we were connecting
                await engine.dispose()
                logger.info(f"Discarded pool for {tenant_id} opened during shutdown")
                raise RouterNotInitializedError()

            metrics.tenant_pools_created_total.inc()
            metrics.tenant_pool_open_seconds.observe(time.perf_counter() - started)
            logger.info(
                f"Tenant pool opened: {tenant_id} "
                f"(database={info.database_name}, total={len(self._connections)})"
            )
            return conn

    async def invalidate_tenant_cache(self, tenant_id: str) -> None:
        """
        Drop the cached pool for a tenant.

        Used after the tenant record changes (e.g. suspension). Safe to
        call when nothing is cached.
        """
        lock = await self._creation_lock(tenant_id)
        async with lock:
            async with self._map_lock:
                conn = self._connections.pop(tenant_id, None)
                metrics.tenant_pools_active.set(len(self._connections))

        if conn is not None:
            await self._dispose(conn, reason="invalidated")
            logger.info(f"Tenant pool invalidated: {tenant_id}")

    def has_connection(self, tenant_id: str) -> bool:
        """Check whether a pool is cached for the tenant."""
        return tenant_id in self._connections

    def get_active_connections(self) -> List[str]:
        """Tenant ids with a cached pool."""
        return list(self._connections.keys())

    # ========================================================================
    # Idle eviction
    # ========================================================================

    async def evict_idle(self) -> int:
        """
        Close pools idle for longer than the configured max age.

        Each candidate is re-checked under its tenant lock, so a pool
        touched by get_connection since the scan is kept.

        Returns:
            Number of pools evicted
        """
        now = self._clock()
        candidates = [
            tenant_id
            for tenant_id, conn in list(self._connections.items())
            if now - conn.last_access > self._max_idle
        ]

        evicted = 0
        for tenant_id in candidates:
            lock = await self._creation_lock(tenant_id)
            async with lock:
                async with self._map_lock:
                    conn = self._connections.get(tenant_id)
                    if conn is None or self._clock() - conn.last_access <= self._max_idle:
                        continue
                    del self._connections[tenant_id]
                    metrics.tenant_pools_active.set(len(self._connections))

            await self._dispose(conn, reason="idle")
            evicted += 1

        if evicted:
            logger.info(f"Evicted {evicted} idle tenant pools (remaining={len(self._connections)})")
        return evicted

    def _start_eviction(self) -> None:
        if self._eviction_task is None:
            self._eviction_task = asyncio.create_task(self._eviction_loop())

    async def _stop_eviction(self) -> None:
        if self._eviction_task is None:
            return

        self._eviction_task.cancel()
        try:
            await self._eviction_task
        except asyncio.CancelledError:
            pass
        self._eviction_task = None

    async def _eviction_loop(self) -> None:
        logger.debug(f"Idle eviction loop started (interval={self._cleanup_interval}s)")

        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.evict_idle()
            except asyncio.CancelledError:
                logger.debug("Idle eviction loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in idle eviction loop: {e}", exc_info=True)

    async def _dispose(self, conn: TenantConnection, reason: str) -> None:
        try:
            await conn.engine.dispose()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Error closing pool for tenant {conn.tenant_id}: {e}")
        metrics.tenant_pools_evicted_total.labels(reason=reason).inc()

    # ========================================================================
    # Stats
    # ========================================================================

    def get_stats(self) -> Dict:
        """
        Get router statistics.

        Returns:
            Statistics dictionary
        """
        now = self._clock()
        return {
            "initialized": self.is_initialized,
            "legacy_mode": self._legacy is not None,
            "cached_tenants": len(self._connections),
            "max_idle_seconds": self._max_idle,
            "tenants": {
                tenant_id: {
                    "idle_seconds": round(now - conn.last_access, 1),
                    "age_seconds": round(now - conn.created_at, 1),
                }
                for tenant_id, conn in self._connections.items()
            },
        }
