"""
tenancy_sdk.tier3_platform.registry
────────────────────────────────────
Tenant registry — resolves a tenant id to its TenantDescriptor. One row per
clinic in the central catalog. Read-only to this library: tenants are
provisioned elsewhere.

Providers:
  - InMemoryTenantRegistry (dev/test)
  - SqlTenantRegistry (central ``tenants`` table via SQLAlchemy)
  - CachedTenantRegistry (wraps either; descriptors are immutable)
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import JSON, DateTime, String, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier0_core.data import Base, central_session_factory
from tenancy_sdk.tier0_core.errors import ConflictError, TenantNotFound
from tenancy_sdk.tier0_core.logging import get_logger
from tenancy_sdk.tier1_runtime.context import TenantDescriptor
from tenancy_sdk.tier2_reliability.cache import MemoryCache, RedisCache, get_cache

logger = get_logger(__name__)


# ── Protocol ───────────────────────────────────────────────────────────────

@runtime_checkable
class TenantRegistry(Protocol):
    """Abstract registry — swap the backing store without changing callers."""

    async def resolve(self, tenant_id: str) -> TenantDescriptor:
        """Return the descriptor or raise TenantNotFound."""
        ...

    async def resolve_many(self, tenant_ids: Iterable[str]) -> dict[str, TenantDescriptor]:
        """Return descriptors for the ids that exist; unknown ids are omitted."""
        ...


# ── In-memory provider (dev/test) ──────────────────────────────────────────

class InMemoryTenantRegistry:
    """Dict-backed registry. NOT suitable for production."""

    def __init__(self, descriptors: Iterable[TenantDescriptor] = ()) -> None:
        self._tenants: dict[str, TenantDescriptor] = {}
        self.lookups = 0
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: TenantDescriptor) -> None:
        if descriptor.id in self._tenants:
            raise ConflictError(
                user_message="Clinic already registered.",
                detail=f"Tenant {descriptor.id!r} is already registered",
            )
        self._tenants[descriptor.id] = descriptor

    def unregister(self, tenant_id: str) -> None:
        if self._tenants.pop(tenant_id, None) is None:
            raise TenantNotFound(tenant_id)

    def list_ids(self) -> list[str]:
        return list(self._tenants)

    async def resolve(self, tenant_id: str) -> TenantDescriptor:
        self.lookups += 1
        descriptor = self._tenants.get(tenant_id)
        if descriptor is None:
            raise TenantNotFound(tenant_id)
        return descriptor

    async def resolve_many(self, tenant_ids: Iterable[str]) -> dict[str, TenantDescriptor]:
        return {tid: self._tenants[tid] for tid in tenant_ids if tid in self._tenants}


# ── SQL provider ───────────────────────────────────────────────────────────

class TenantRecord(Base):
    """Central catalog row for one clinic."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    database_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    connection: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(tz=timezone.utc),
    )

    def to_descriptor(self) -> TenantDescriptor:
        params: dict[str, Any] = dict(self.connection or {})
        params.setdefault(
            "database",
            self.database_name or get_config().tenant_database_name(self.id),
        )
        return TenantDescriptor(
            id=self.id,
            connection_params=params,
            display_name=self.company_name or self.id,
        )


class SqlTenantRegistry:
    """Reads descriptors from the central ``tenants`` table."""

    def __init__(
        self,
        session_factory: Callable[[], async_sessionmaker[AsyncSession]] | None = None,
    ) -> None:
        self._session_factory = session_factory or central_session_factory

    async def resolve(self, tenant_id: str) -> TenantDescriptor:
        factory = self._session_factory()
        async with factory() as session:
            record = await session.get(TenantRecord, tenant_id)
        if record is None:
            raise TenantNotFound(tenant_id)
        return record.to_descriptor()

    async def resolve_many(self, tenant_ids: Iterable[str]) -> dict[str, TenantDescriptor]:
        ids = list(dict.fromkeys(tenant_ids))
        if not ids:
            return {}
        factory = self._session_factory()
        async with factory() as session:
            result = await session.execute(select(TenantRecord).where(TenantRecord.id.in_(ids)))
            records = {r.id: r for r in result.scalars()}
        return {tid: records[tid].to_descriptor() for tid in ids if tid in records}


# ── Caching decorator ──────────────────────────────────────────────────────

class CachedTenantRegistry:
    """
    Caches successful lookups of an inner registry. Not-found results are
    never cached, so a freshly provisioned clinic is visible immediately.
    """

    def __init__(
        self,
        inner: TenantRegistry,
        cache: MemoryCache | RedisCache | None = None,
        ttl: int | None = None,
    ) -> None:
        self._inner = inner
        self._cache = cache if cache is not None else get_cache()
        self._ttl = ttl if ttl is not None else get_config().registry_cache_ttl

    async def resolve(self, tenant_id: str) -> TenantDescriptor:
        return await self._cache.get_or_set(
            tenant_id, lambda: self._inner.resolve(tenant_id), self._ttl
        )

    async def resolve_many(self, tenant_ids: Iterable[str]) -> dict[str, TenantDescriptor]:
        ids = list(dict.fromkeys(tenant_ids))
        found: dict[str, TenantDescriptor] = {}
        missing: list[str] = []
        for tid in ids:
            cached = await self._cache.get(tid)
            if cached is None:
                missing.append(tid)
            else:
                found[tid] = cached
        if missing:
            fetched = await self._inner.resolve_many(missing)
            for tid, descriptor in fetched.items():
                await self._cache.set(tid, descriptor, self._ttl)
            found.update(fetched)
        return {tid: found[tid] for tid in ids if tid in found}

    async def invalidate(self, tenant_id: str) -> None:
        await self._cache.delete(tenant_id)
        logger.info("descriptor_invalidated", tenant_id=tenant_id)


# ── Provider registry ─────────────────────────────────────────────────────────

_registry: TenantRegistry | None = None


def get_registry() -> TenantRegistry:
    """Return the process registry: the SQL catalog behind the descriptor cache."""
    global _registry
    if _registry is None:
        _registry = CachedTenantRegistry(SqlTenantRegistry())
    return _registry


def set_registry(registry: TenantRegistry) -> None:
    """Replace the process registry (use in tests and app wiring)."""
    global _registry
    _registry = registry


def _reset_registry() -> None:
    global _registry
    _registry = None


__all__ = [
    "TenantRegistry", "InMemoryTenantRegistry", "TenantRecord",
    "SqlTenantRegistry", "CachedTenantRegistry", "get_registry", "set_registry",
]
