"""
tenancy_sdk.tier0_core.data
────────────────────────────
DB connection lifecycle and transaction boundaries for the central store
and every tenant store. ``get_session()`` always opens a session on the
store of the *active* context, so code written against it is switched
between clinics by the context stack alone.

Minimal stack: SQLAlchemy 2.x async + aiosqlite (dev/test)
Configure via: CENTRAL_DATABASE_URL, TENANT_DATABASE_URL_TEMPLATE,
               TENANCY_DATABASE_PREFIX, TENANCY_MAX_TENANT_ENGINES
"""
from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier0_core.errors import ConfigurationError
from tenancy_sdk.tier0_core.logging import get_logger
from tenancy_sdk.tier0_core.redact import scrub_string
from tenancy_sdk.tier1_runtime import context as context_stack
from tenancy_sdk.tier1_runtime.context import TenantDescriptor

logger = get_logger(__name__)

_CENTRAL_KEY = "__central__"


# ── Base model ────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Central-catalog ORM models inherit from this base."""
    pass


# ── Engine / session factory ──────────────────────────────────────────────────

# Tenant engines are kept least-recently-used first and capped at
# TENANCY_MAX_TENANT_ENGINES; the central engine is never evicted.
_central_engine: AsyncEngine | None = None
_tenant_engines: OrderedDict[str, AsyncEngine] = OrderedDict()
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}
_retired: list[AsyncEngine] = []
_disposals: set[asyncio.Task[None]] = set()
_lock = threading.Lock()


def tenant_database_url(tenant: TenantDescriptor) -> str:
    """
    Build the SQLAlchemy URL for *tenant* from its connection params:
    ``url`` wins; otherwise ``database`` (default ``<prefix><id>``) is
    filled into the configured URL template.
    """
    params = tenant.connection_params
    url = params.get("url")
    if url:
        return str(url)
    cfg = get_config()
    database = params.get("database") or cfg.tenant_database_name(tenant.id)
    return cfg.tenant_database_url_template.format(database=database)


def _create_engine(url: str) -> AsyncEngine:
    cfg = get_config()
    kwargs: dict[str, Any] = {"echo": cfg.database_echo}

    # SQLite doesn't support pool settings
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = cfg.database_pool_size
        kwargs["max_overflow"] = cfg.database_max_overflow

    try:
        return create_async_engine(url, **kwargs)
    except Exception as exc:
        raise ConfigurationError(
            user_message="Database is misconfigured.",
            detail=f"Cannot create engine for {scrub_string(url)}: {exc}",
        ) from exc


def _retire(key: str, engine: AsyncEngine) -> None:
    """Dispose an evicted engine; checked-out connections close on return."""
    _session_factories.pop(id(engine), None)
    logger.info("engine_evicted", store=key)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _retired.append(engine)
        return
    task = loop.create_task(engine.dispose())
    _disposals.add(task)
    task.add_done_callback(_disposals.discard)


def get_central_engine() -> AsyncEngine:
    """Return the engine of the central catalog, whatever context is active."""
    global _central_engine
    with _lock:
        if _central_engine is None:
            url = get_config().central_database_url
            _central_engine = _create_engine(url)
            logger.info("engine_created", store=_CENTRAL_KEY, url=scrub_string(url))
        return _central_engine


def get_tenant_engine(tenant: TenantDescriptor) -> AsyncEngine:
    """
    Return the engine of one tenant store, creating it on first use. Once
    more than TENANCY_MAX_TENANT_ENGINES tenant engines exist, the least
    recently used one is evicted and disposed.
    """
    with _lock:
        engine = _tenant_engines.get(tenant.id)
        if engine is not None:
            _tenant_engines.move_to_end(tenant.id)
            return engine
        url = tenant_database_url(tenant)
        engine = _create_engine(url)
        _tenant_engines[tenant.id] = engine
        logger.info("engine_created", store=tenant.id, url=scrub_string(url))
        while len(_tenant_engines) > get_config().max_tenant_engines:
            _retire(*_tenant_engines.popitem(last=False))
        return engine


def get_engine() -> AsyncEngine:
    """Return the engine of the store the active context targets."""
    tenant = context_stack.current_tenant()
    if tenant is None:
        return get_central_engine()
    return get_tenant_engine(tenant)


def _factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    key = id(engine)
    with _lock:
        factory = _session_factories.get(key)
        if factory is None:
            factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
            _session_factories[key] = factory
        return factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory of the active context's store."""
    return _factory_for(get_engine())


def central_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory pinned to the central catalog."""
    return _factory_for(get_central_engine())


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager that yields a transactional session on the
    active store. Commits on clean exit, rolls back on exception, always
    closes. The store is chosen when the block is entered.

    Usage:
        with context.scoped(clinic):
            async with get_session() as session:
                rows = (await session.execute(select(Appointment))).scalars().all()
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engines() -> None:
    """Dispose every engine, evicted ones included. Call on application shutdown."""
    global _central_engine
    with _lock:
        engines = list(_tenant_engines.values()) + _retired
        if _central_engine is not None:
            engines.append(_central_engine)
        _central_engine = None
        _tenant_engines.clear()
        _retired.clear()
        _session_factories.clear()
        loop = asyncio.get_running_loop()
        pending = [task for task in _disposals if task.get_loop() is loop]
    for engine in engines:
        await engine.dispose()
    if pending:
        await asyncio.gather(*pending)


def _reset() -> None:
    """For tests: forget engines and session factories without disposing."""
    global _central_engine
    with _lock:
        _central_engine = None
        _tenant_engines.clear()
        _retired.clear()
        _session_factories.clear()
        _disposals.clear()


__all__ = [
    "Base", "tenant_database_url", "get_engine", "get_central_engine",
    "get_tenant_engine", "get_session_factory", "central_session_factory",
    "get_session", "dispose_engines",
]
