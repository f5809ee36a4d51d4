"""
tenancy_sdk.tier2_reliability.cache
────────────────────────────────────
Descriptor cache for the tenant registry. Descriptors are immutable once a
clinic is provisioned, so lookups are cached with a TTL: in-process for
dev/test, Redis when several workers should share one warm cache.

Concurrent misses for the same tenant are collapsed into one registry
lookup per process. A loader that raises caches nothing, so an unknown
tenant is looked up again on the next call.

Configure via: REDIS_URL, TENANCY_REGISTRY_CACHE_TTL
"""
from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier1_runtime.context import TenantDescriptor

_KEY_PREFIX = "tenancy:descriptor:"

Loader = Callable[[], Awaitable[TenantDescriptor]]


class _SingleFlight:
    """Per-key asyncio locks, dropped once no caller is waiting on them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    async def load(
        self,
        cache: MemoryCache | RedisCache,
        tenant_id: str,
        loader: Loader,
        ttl: int | None,
    ) -> TenantDescriptor:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._waiters[tenant_id] = self._waiters.get(tenant_id, 0) + 1
        try:
            async with lock:
                hit = await cache.get(tenant_id)
                if hit is not None:
                    return hit
                descriptor = await loader()
                await cache.set(tenant_id, descriptor, ttl)
                return descriptor
        finally:
            self._waiters[tenant_id] -= 1
            if not self._waiters[tenant_id]:
                del self._waiters[tenant_id]
                self._locks.pop(tenant_id, None)


class MemoryCache:
    """In-process descriptor cache. Entries expire ``ttl`` seconds after set."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[TenantDescriptor, float | None]] = {}
        self._flight = _SingleFlight()

    async def get(self, tenant_id: str) -> TenantDescriptor | None:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        descriptor, deadline = entry
        if deadline is not None and time.monotonic() >= deadline:
            self._entries.pop(tenant_id, None)
            return None
        return descriptor

    async def set(self, tenant_id: str, descriptor: TenantDescriptor, ttl: int | None = None) -> None:
        self._entries[tenant_id] = (descriptor, time.monotonic() + ttl if ttl else None)

    async def delete(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)

    async def get_or_set(self, tenant_id: str, loader: Loader, ttl: int | None = None) -> TenantDescriptor:
        hit = await self.get(tenant_id)
        if hit is not None:
            return hit
        return await self._flight.load(self, tenant_id, loader, ttl)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _encode(descriptor: TenantDescriptor) -> str:
    return json.dumps({
        "id": descriptor.id,
        "connection_params": dict(descriptor.connection_params),
        "display_name": descriptor.display_name,
    })


def _decode(raw: str | bytes) -> TenantDescriptor:
    payload = json.loads(raw)
    return TenantDescriptor(
        id=payload["id"],
        connection_params=payload.get("connection_params") or {},
        display_name=payload.get("display_name") or "",
    )


class RedisCache:
    """Shared descriptor cache on Redis; descriptors are stored as JSON."""

    def __init__(self, url: str) -> None:
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(url)
        self._flight = _SingleFlight()

    async def get(self, tenant_id: str) -> TenantDescriptor | None:
        raw = await self._redis.get(_KEY_PREFIX + tenant_id)
        return _decode(raw) if raw else None

    async def set(self, tenant_id: str, descriptor: TenantDescriptor, ttl: int | None = None) -> None:
        await self._redis.set(_KEY_PREFIX + tenant_id, _encode(descriptor), ex=ttl or None)

    async def delete(self, tenant_id: str) -> None:
        await self._redis.delete(_KEY_PREFIX + tenant_id)

    async def get_or_set(self, tenant_id: str, loader: Loader, ttl: int | None = None) -> TenantDescriptor:
        hit = await self.get(tenant_id)
        if hit is not None:
            return hit
        return await self._flight.load(self, tenant_id, loader, ttl)

    async def clear(self) -> None:
        async for key in self._redis.scan_iter(match=_KEY_PREFIX + "*"):
            await self._redis.delete(key)


# ── Provider registry ─────────────────────────────────────────────────────────

_cache: MemoryCache | RedisCache | None = None


def get_cache() -> MemoryCache | RedisCache:
    """Redis when REDIS_URL is set, otherwise the in-process cache."""
    global _cache
    if _cache is None:
        redis_url = get_config().redis_url
        _cache = RedisCache(redis_url) if redis_url else MemoryCache()
    return _cache


def _reset_cache() -> None:
    global _cache
    _cache = None


__all__ = ["MemoryCache", "RedisCache", "get_cache"]
