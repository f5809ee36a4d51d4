"""Tests for tier2_reliability modules."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from tenancy_sdk.tier0_core.errors import TenantNotFound
from tenancy_sdk.tier1_runtime.context import TenantDescriptor
from tenancy_sdk.tier2_reliability import cache as cache_module
from tenancy_sdk.tier2_reliability.cache import MemoryCache, _decode, _encode, get_cache


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, clinics):
        cache = MemoryCache()
        await cache.set("clinic-a", clinics[0], ttl=60)
        assert await cache.get("clinic-a") == clinics[0]
        await cache.delete("clinic-a")
        assert await cache.get("clinic-a") is None

    @pytest.mark.asyncio
    async def test_entries_expire(self, clinics, monkeypatch):
        cache = MemoryCache()
        now = [1000.0]
        monkeypatch.setattr(cache_module, "time", SimpleNamespace(monotonic=lambda: now[0]))
        await cache.set("clinic-a", clinics[0], ttl=5)
        now[0] += 4
        assert await cache.get("clinic-a") is not None
        now[0] += 2
        assert await cache.get("clinic-a") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self, clinics):
        cache = MemoryCache()
        loads = 0

        async def loader():
            nonlocal loads
            loads += 1
            await asyncio.sleep(0.01)
            return clinics[1]

        results = await asyncio.gather(*(cache.get_or_set("clinic-b", loader, 60) for _ in range(10)))
        assert loads == 1
        assert all(r == clinics[1] for r in results)

    @pytest.mark.asyncio
    async def test_failed_load_caches_nothing(self, clinics):
        cache = MemoryCache()

        async def missing():
            raise TenantNotFound("clinic-new")

        with pytest.raises(TenantNotFound):
            await cache.get_or_set("clinic-new", missing, 60)
        assert len(cache) == 0

        async def found():
            return TenantDescriptor("clinic-new")

        assert (await cache.get_or_set("clinic-new", found, 60)).id == "clinic-new"

    @pytest.mark.asyncio
    async def test_clear(self, clinics):
        cache = MemoryCache()
        for c in clinics:
            await cache.set(c.id, c)
        await cache.clear()
        assert len(cache) == 0


class TestDescriptorEncoding:
    def test_json_encoding_keeps_all_fields(self):
        d = TenantDescriptor("7", {"database": "pms_7", "port": 5432}, "Riverside Clinic")
        restored = _decode(_encode(d).encode())
        assert restored == d
        assert restored.connection_params["port"] == 5432


class TestProvider:
    def test_memory_cache_without_redis(self):
        assert isinstance(get_cache(), MemoryCache)
        assert get_cache() is get_cache()
