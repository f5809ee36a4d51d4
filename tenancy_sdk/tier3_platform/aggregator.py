"""
tenancy_sdk.tier3_platform.aggregator
──────────────────────────────────────
Cross-tenant aggregator — runs the same logical operation once per tenant
and collects the results, isolating failures per tenant.

A missing clinic, a raising query, or a slow tenant is recorded in
``AggregationResult.failed`` and logged at warning level; the aggregation
carries on. Only malformed input and context-stack corruption raise.

Sequential by default. With ``concurrency > 1`` each tenant runs in its own
asyncio task started with an isolated context stack; results are put back
in input order before merging.

Usage::

    aggregator = CrossTenantAggregator(get_registry(), concurrency=4)
    result = await aggregator.aggregate(AggregationRequest(
        tenant_ids=clinic_ids,
        operation=todays_appointments,
        merge_key="appointment_datetime",
        descending=True,
        flatten=True,
    ))
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier0_core.errors import (
    AggregationTimeout,
    ContextStackUnderflow,
    OperationFailure,
    TenancyError,
    ValidationError,
)
from tenancy_sdk.tier0_core.logging import get_logger
from tenancy_sdk.tier0_core.metrics import aggregations_total
from tenancy_sdk.tier1_runtime import context as context_stack
from tenancy_sdk.tier1_runtime.retry import RetryPolicy
from tenancy_sdk.tier3_platform.executor import Operation, ScopedExecutor
from tenancy_sdk.tier3_platform.merge import MergeKey, ResultMerger, Tagged
from tenancy_sdk.tier3_platform.registry import TenantRegistry

T = TypeVar("T")

_UNSET: Any = object()


# ── Data models ────────────────────────────────────────────────────────────

@dataclass
class AggregationRequest(Generic[T]):
    """
    What to run and how to combine it.

    ``operation`` takes no arguments and queries whatever store is active.
    With ``flatten`` it returns an iterable and every element is tagged on
    its own; otherwise the whole return value is one tagged result.
    ``timeout`` is the per-tenant budget (None → executor default).
    """
    tenant_ids: Sequence[str]
    operation: Operation
    merge_key: MergeKey | None = None
    descending: bool = False
    timeout: float | None = None
    flatten: bool = False
    dedupe_ids: bool = True
    dedupe: Callable[[Tagged[T]], Hashable] | None = None
    retry_attempts: int = 1

    def __post_init__(self) -> None:
        if isinstance(self.tenant_ids, str) or not isinstance(self.tenant_ids, Iterable):
            raise ValidationError(
                user_message="tenant_ids must be a sequence of tenant identifiers.",
                fields={"tenant_ids": "not a sequence"},
            )
        self.tenant_ids = list(self.tenant_ids)
        bad = [tid for tid in self.tenant_ids if not isinstance(tid, str) or not tid]
        if bad:
            raise ValidationError(
                user_message="Tenant identifiers must be non-empty strings.",
                fields={"tenant_ids": f"invalid entries: {bad!r}"},
            )
        if not callable(self.operation):
            raise ValidationError(
                user_message="Operation must be callable.",
                fields={"operation": "not callable"},
            )
        if self.retry_attempts < 1:
            raise ValidationError(
                user_message="retry_attempts must be at least 1.",
                fields={"retry_attempts": "must be >= 1"},
            )

    def unique_tenant_ids(self) -> list[str]:
        """Ids in processing order, after the de-duplication policy."""
        if not self.dedupe_ids:
            return list(self.tenant_ids)
        return list(dict.fromkeys(self.tenant_ids))


@dataclass(frozen=True)
class TenantFailure:
    tenant_id: str
    error: TenancyError

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.detail

    def to_dict(self) -> dict[str, Any]:
        return {"tenant_id": self.tenant_id, "code": self.code, "message": self.message}


@dataclass
class AggregationResult(Generic[T]):
    succeeded: list[Tagged[T]] = field(default_factory=list)
    failed: list[TenantFailure] = field(default_factory=list)
    succeeded_tenants: list[str] = field(default_factory=list)
    truncated: bool = False

    @property
    def values(self) -> list[T]:
        return [item.value for item in self.succeeded]

    @property
    def failed_tenants(self) -> list[str]:
        return [f.tenant_id for f in self.failed]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.truncated

    @property
    def all_failed(self) -> bool:
        return bool(self.failed) and not self.succeeded_tenants

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": [item.to_dict() for item in self.succeeded],
            "failed": [f.to_dict() for f in self.failed],
            "truncated": self.truncated,
        }


@dataclass
class _Branch:
    """What one tenant contributed."""
    tenant_id: str
    items: list[Tagged[Any]] | None = None
    failure: TenantFailure | None = None


# ── Helpers ────────────────────────────────────────────────────────────────

def merge_tenant_ids(*sources: Iterable[str] | None) -> list[str]:
    """
    Union of tenant-id lists from several membership sources (staff,
    practitioner, and patient links), first occurrence wins.
    """
    merged: dict[str, None] = {}
    for source in sources:
        for tenant_id in source or ():
            merged.setdefault(tenant_id, None)
    return list(merged)


# ── Aggregator ─────────────────────────────────────────────────────────────

class CrossTenantAggregator:
    """
    Args:
        registry:    Resolves tenant ids to descriptors.
        executor:    Runs each per-tenant operation (default ScopedExecutor()).
        merger:      Orders merged results (default ResultMerger()).
        concurrency: Max tenants in flight. 1 (default) is sequential.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        executor: ScopedExecutor | None = None,
        merger: ResultMerger | None = None,
        concurrency: int | None = None,
        logger: Any = None,
    ) -> None:
        self._registry = registry
        self._executor = executor or ScopedExecutor()
        self._merger = merger or ResultMerger()
        self._concurrency = get_config().max_concurrency if concurrency is None else concurrency
        if self._concurrency < 1:
            raise ValidationError(
                user_message="concurrency must be at least 1.",
                fields={"concurrency": "must be >= 1"},
            )
        self._log = logger or get_logger(__name__)

    async def aggregate(
        self,
        request: AggregationRequest[T],
        *,
        deadline: float | None = _UNSET,
    ) -> AggregationResult[T]:
        """
        Run ``request.operation`` in every requested tenant.

        Args:
            request:  The aggregation to perform.
            deadline: Overall time budget in seconds. Defaults to
                      TENANCY_AGGREGATION_TIMEOUT; None means unbounded. When
                      it passes, in-flight tenants are cancelled, everything
                      collected so far is returned with ``truncated=True``, and
                      unfinished tenants are recorded as AggregationTimeout.
        """
        if not isinstance(request, AggregationRequest):
            raise ValidationError(
                user_message="An aggregation request is required.",
                detail=f"expected AggregationRequest, got {type(request).__name__}",
            )
        limit = get_config().aggregation_timeout if deadline is _UNSET else deadline
        tenant_ids = request.unique_tenant_ids()
        if not tenant_ids:
            return AggregationResult()

        if self._concurrency == 1:
            branches, truncated = await self._run_sequential(request, tenant_ids, limit)
        else:
            branches, truncated = await self._run_parallel(request, tenant_ids, limit)

        result: AggregationResult[T] = AggregationResult(truncated=truncated)
        for branch in branches:
            if branch.failure is not None:
                result.failed.append(branch.failure)
            else:
                result.succeeded.extend(branch.items or [])
                result.succeeded_tenants.append(branch.tenant_id)

        if request.merge_key is not None or request.dedupe is not None:
            result.succeeded = self._merger.merge(
                result.succeeded,
                request.merge_key,
                descending=request.descending,
                dedupe=request.dedupe,
            )

        state = "truncated" if truncated else ("all_failed" if result.all_failed else "completed")
        aggregations_total(state=state).inc()
        self._log.info(
            "aggregation_completed",
            tenants=len(tenant_ids),
            succeeded=len(result.succeeded_tenants),
            failed=len(result.failed),
            records=len(result.succeeded),
            truncated=truncated,
        )
        return result

    def aggregate_sync(
        self,
        request: AggregationRequest[T],
        *,
        deadline: float | None = _UNSET,
    ) -> AggregationResult[T]:
        """
        Blocking wrapper for callers without a running event loop.

        Runs aggregate() on a fresh loop, so per-operation timeouts and the
        deadline are enforced exactly as on the async path: an overrunning
        operation is recorded as OperationTimeout or AggregationTimeout.
        A synchronous operation cannot be interrupted, though. Its worker
        thread keeps running, and this call only returns once every such
        thread has finished, because the loop waits for its default
        executor on shutdown. Operations that may hang should be async.
        """
        return asyncio.run(self.aggregate(request, deadline=deadline))

    # ── Per-tenant work ────────────────────────────────────────────────────

    async def _run_one(self, request: AggregationRequest[Any], tenant_id: str) -> _Branch:
        try:
            descriptor = await self._registry.resolve(tenant_id)
        except ContextStackUnderflow:
            raise
        except TenancyError as exc:
            return self._failed(tenant_id, exc)
        except Exception as exc:
            # Catalog or cache outage for this id only.
            failure = OperationFailure(
                tenant_id,
                detail=f"Registry lookup failed: {str(exc) or type(exc).__name__}",
                error_type=type(exc).__name__,
            )
            failure.__cause__ = exc
            return self._failed(tenant_id, failure)

        options: dict[str, Any] = {}
        if request.retry_attempts > 1:
            options["retry"] = RetryPolicy(max_attempts=request.retry_attempts)
        if request.timeout is not None:
            options["timeout"] = request.timeout
        outcome = await self._executor.run_in(descriptor, request.operation, **options)
        if not outcome.ok:
            return self._failed(tenant_id, outcome.error)

        if request.flatten:
            try:
                records = list(() if outcome.value is None else outcome.value)
            except TypeError as exc:
                return self._failed(
                    tenant_id,
                    ValidationError(
                        user_message="Operation result is not iterable.",
                        detail=f"flatten=True but operation returned {type(outcome.value).__name__}: {exc}",
                    ),
                )
            return _Branch(tenant_id, items=[Tagged(tenant_id, r) for r in records])
        return _Branch(tenant_id, items=[Tagged(tenant_id, outcome.value)])

    def _failed(self, tenant_id: str, error: TenancyError) -> _Branch:
        self._log.warning(
            "tenant_operation_failed",
            tenant_id=tenant_id,
            error_code=error.code,
            error=error.detail,
        )
        return _Branch(tenant_id, failure=TenantFailure(tenant_id, error))

    def _timed_out(self, tenant_id: str, limit: float | None) -> _Branch:
        return _Branch(tenant_id, failure=TenantFailure(tenant_id, AggregationTimeout(tenant_id, limit)))

    # ── Scheduling ─────────────────────────────────────────────────────────

    async def _run_sequential(
        self,
        request: AggregationRequest[Any],
        tenant_ids: list[str],
        limit: float | None,
    ) -> tuple[list[_Branch], bool]:
        branches: list[_Branch] = []
        try:
            async with asyncio.timeout(limit):
                for tenant_id in tenant_ids:
                    branches.append(await self._run_one(request, tenant_id))
        except TimeoutError:
            pending = tenant_ids[len(branches):]
            self._log.warning(
                "aggregation_truncated",
                deadline=limit,
                completed=len(branches),
                abandoned=pending,
            )
            branches.extend(self._timed_out(tid, limit) for tid in pending)
            return branches, True
        return branches, False

    async def _run_parallel(
        self,
        request: AggregationRequest[Any],
        tenant_ids: list[str],
        limit: float | None,
    ) -> tuple[list[_Branch], bool]:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def branch(tenant_id: str) -> _Branch:
            async with semaphore:
                return await self._run_one(request, tenant_id)

        tasks = [
            asyncio.create_task(branch(tid), context=context_stack.isolated())
            for tid in tenant_ids
        ]
        try:
            done, pending = await asyncio.wait(tasks, timeout=limit)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        branches: list[_Branch] = []
        abandoned: list[str] = []
        for tenant_id, task in zip(tenant_ids, tasks):
            if task in done:
                # Re-raises ContextStackUnderflow from a misbehaving branch.
                branches.append(task.result())
            else:
                abandoned.append(tenant_id)
                branches.append(self._timed_out(tenant_id, limit))

        if abandoned:
            self._log.warning(
                "aggregation_truncated",
                deadline=limit,
                completed=len(done),
                abandoned=abandoned,
            )
        return branches, bool(abandoned)


__all__ = [
    "AggregationRequest", "AggregationResult", "TenantFailure",
    "CrossTenantAggregator", "merge_tenant_ids",
]
