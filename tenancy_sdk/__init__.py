"""
tenancy_sdk
───────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from tenancy_sdk.tier0_core.logging import get_logger
from tenancy_sdk.tier0_core.errors import (
    TenancyError,
    ValidationError,
    ContextStackUnderflow,
    TenantContextRequired,
    TenantNotFound,
    OperationFailure,
    OperationTimeout,
    AggregationTimeout,
)
from tenancy_sdk.tier0_core.config import get_config, TenancyConfig
from tenancy_sdk.tier0_core.data import get_session, get_engine, dispose_engines

from tenancy_sdk.tier1_runtime.context import (
    TenantDescriptor,
    ContextHandle,
    ContextKind,
    CENTRAL,
    push,
    pop,
    current,
    current_tenant,
    require_tenant,
    scoped,
    central,
    ensure_tenant,
)
from tenancy_sdk.tier1_runtime.retry import RetryPolicy
from tenancy_sdk.tier1_runtime.validate import PageParams

from tenancy_sdk.tier3_platform.registry import (
    TenantRegistry,
    InMemoryTenantRegistry,
    SqlTenantRegistry,
    CachedTenantRegistry,
    get_registry,
    set_registry,
)
from tenancy_sdk.tier3_platform.executor import ScopedExecutor, Outcome
from tenancy_sdk.tier3_platform.merge import Tagged, ResultMerger, Page, paginate
from tenancy_sdk.tier3_platform.aggregator import (
    AggregationRequest,
    AggregationResult,
    TenantFailure,
    CrossTenantAggregator,
    merge_tenant_ids,
)

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "TenancyError", "ValidationError", "ContextStackUnderflow",
    "TenantContextRequired", "TenantNotFound", "OperationFailure",
    "OperationTimeout", "AggregationTimeout",
    # config
    "get_config", "TenancyConfig",
    # data
    "get_session", "get_engine", "dispose_engines",
    # context
    "TenantDescriptor", "ContextHandle", "ContextKind", "CENTRAL",
    "push", "pop", "current", "current_tenant", "require_tenant",
    "scoped", "central", "ensure_tenant",
    # retry / validate
    "RetryPolicy", "PageParams",
    # registry
    "TenantRegistry", "InMemoryTenantRegistry", "SqlTenantRegistry",
    "CachedTenantRegistry", "get_registry", "set_registry",
    # executor
    "ScopedExecutor", "Outcome",
    # merge
    "Tagged", "ResultMerger", "Page", "paginate",
    # aggregator
    "AggregationRequest", "AggregationResult", "TenantFailure",
    "CrossTenantAggregator", "merge_tenant_ids",
]
