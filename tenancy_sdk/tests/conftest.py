"""
tenancy_sdk test configuration.

All tests run against in-memory registries and throwaway SQLite files —
no external services required. Override by setting environment variables
before running pytest.
"""
from __future__ import annotations

import os

import pytest

# ── Force local providers for all tests ───────────────────────────────────
# These must be set before any tenancy_sdk modules are imported.

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_NAME", "test-service")
os.environ.setdefault("TENANCY_ERROR_BACKEND", "none")
os.environ.setdefault("CENTRAL_DATABASE_URL", "sqlite+aiosqlite:///./test_central.db")
os.environ.pop("REDIS_URL", None)


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset cached singletons and the context stack between tests.
    Each test starts in the central context with fresh providers.
    """
    import tenancy_sdk.tier0_core.config as _config
    import tenancy_sdk.tier0_core.data as _data
    import tenancy_sdk.tier1_runtime.context as _context
    import tenancy_sdk.tier2_reliability.cache as _cache
    import tenancy_sdk.tier3_platform.registry as _registry

    _config._reset_config()
    _cache._reset_cache()
    _registry._reset_registry()
    _context._reset()

    yield

    _context._reset()
    _registry._reset_registry()
    _cache._reset_cache()
    _data._reset()
    _config._reset_config()


@pytest.fixture
def clinics():
    """Three tenant descriptors: clinic-a, clinic-b, clinic-c."""
    from tenancy_sdk.tier1_runtime.context import TenantDescriptor
    return [
        TenantDescriptor("clinic-a", {"database": "pms_clinic-a"}, "Clinic A"),
        TenantDescriptor("clinic-b", {"database": "pms_clinic-b"}, "Clinic B"),
        TenantDescriptor("clinic-c", {"database": "pms_clinic-c"}, "Clinic C"),
    ]


@pytest.fixture
def registry(clinics):
    """In-memory registry seeded with the three test clinics."""
    from tenancy_sdk.tier3_platform.registry import InMemoryTenantRegistry
    return InMemoryTenantRegistry(clinics)


@pytest.fixture
def executor():
    """Executor with no default timeout and no retry."""
    from tenancy_sdk.tier3_platform.executor import ScopedExecutor
    return ScopedExecutor(timeout=None)
