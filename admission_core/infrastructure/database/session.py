"""Tenant-scoped database sessions with per-store connection pooling"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from admission_core.config import Settings, settings
from admission_core.domain.exceptions import TenantNotFoundError
from admission_core.domain.models import Tenant
from admission_core.infrastructure.database.models import Base

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    """Request-scoped binding of a tenant to its own session; never shared across requests"""

    tenant: Tenant
    session: AsyncSession

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id


@asynccontextmanager
async def unit_of_work(ctx: TenantContext) -> AsyncIterator[AsyncSession]:
    """
    Commit everything done in the block, or nothing.

    Reads issued before entering have already begun the session's
    transaction; they become part of this unit of work. Any exception,
    cancellation included, rolls back.
    """
    session = ctx.session
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


class TenantRegistry:
    """Known campuses keyed by tenant id"""

    def __init__(self, tenants: Iterable[Tenant] = ()):
        self._tenants: Dict[str, Tenant] = {}
        for tenant in tenants:
            self.register(tenant)

    def register(self, tenant: Tenant) -> None:
        self._tenants[tenant.tenant_id] = tenant

    def get(self, tenant_id: str) -> Optional[Tenant]:
        return self._tenants.get(tenant_id)

    def __iter__(self):
        return iter(self._tenants.values())

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "TenantRegistry":
        return cls(
            Tenant(
                tenant_id=entry.tenant_id,
                display_name=entry.display_name,
                database_url=entry.database_url or config.default_database_url,
                invoice_prefix=entry.invoice_prefix or "",
                enabled=entry.enabled,
            )
            for entry in config.tenants
        )


def create_store_engine(database_url: str, config: Settings = settings) -> AsyncEngine:
    """Create a pooled async engine for one physical store"""
    if database_url.startswith("sqlite"):
        # SQLite picks its own pool class
        return create_async_engine(database_url)

    # Connection pool: recycle to avoid stale connections
    return create_async_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=config.pool_recycle_seconds,
    )


class TenantContextResolver:
    """Resolves tenant ids to request-scoped TenantContexts"""

    def __init__(
        self,
        registry: TenantRegistry,
        engine_factory: Callable[[str], AsyncEngine] = create_store_engine,
    ):
        self.registry = registry
        self._engine_factory = engine_factory
        # Tenants sharing a store URL share one pool
        self._engines: Dict[str, AsyncEngine] = {}
        self._session_factories: Dict[str, async_sessionmaker] = {}

    def resolve(self, tenant_id: str) -> Tenant:
        """
        Look up an enabled tenant.

        Raises:
            TenantNotFoundError: On empty, unknown or disabled tenant ids
        """
        if not tenant_id or not tenant_id.strip():
            raise TenantNotFoundError(tenant_id)
        tenant = self.registry.get(tenant_id)
        if tenant is None or not tenant.enabled:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def engine_for(self, tenant: Tenant) -> AsyncEngine:
        engine = self._engines.get(tenant.database_url)
        if engine is None:
            engine = self._engine_factory(tenant.database_url)
            self._engines[tenant.database_url] = engine
            self._session_factories[tenant.database_url] = async_sessionmaker(
                engine, expire_on_commit=False, autoflush=False
            )
            logger.info("Opened store pool", extra={"tenant_id": tenant.tenant_id})
        return engine

    def session_factory(self, tenant: Tenant) -> async_sessionmaker:
        self.engine_for(tenant)
        return self._session_factories[tenant.database_url]

    @asynccontextmanager
    async def scope(self, tenant_id: str) -> AsyncIterator[TenantContext]:
        """Bind one request to its tenant's store; the session is closed on every exit path"""
        tenant = self.resolve(tenant_id)
        session = self.session_factory(tenant)()
        try:
            yield TenantContext(tenant=tenant, session=session)
        finally:
            await session.close()

    async def create_schema(self, tenant_id: str) -> None:
        """Create tables in the tenant's store if they do not exist"""
        engine = self.engine_for(self.resolve(tenant_id))
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
        self._session_factories.clear()
