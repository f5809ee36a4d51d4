"""
tenancy_sdk.tier3_platform.executor
────────────────────────────────────
Scoped executor — runs one unit of work against exactly one data context
and guarantees the previous context is restored on every exit path.

Failures of the work itself come back as data (an Outcome carrying a
TenancyError); only context-stack corruption and cancellation propagate.

Usage::

    executor = ScopedExecutor(timeout=5.0)
    outcome = await executor.run_in(clinic, load_todays_appointments)
    if outcome.ok:
        rows = outcome.value
"""
from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier0_core.errors import (
    ContextStackUnderflow,
    OperationFailure,
    OperationTimeout,
    TenancyError,
    ValidationError,
)
from tenancy_sdk.tier0_core.metrics import operation_duration, operations_total
from tenancy_sdk.tier1_runtime import context as context_stack
from tenancy_sdk.tier1_runtime.context import CENTRAL, ContextHandle, TenantDescriptor
from tenancy_sdk.tier1_runtime.retry import NO_RETRY, RetryPolicy, call_with_retry

T = TypeVar("T")

Operation = Callable[[], Any]

_UNSET: Any = object()


@dataclass
class Outcome(Generic[T]):
    """Result of one scoped run: a value, or the error that replaced it."""
    value: T | None = None
    error: TenancyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def _target_id(context: Any) -> str | None:
    if isinstance(context, TenantDescriptor):
        return context.id
    if isinstance(context, ContextHandle):
        return context.tenant_id
    return None


def _as_failure(exc: Exception, tenant_id: str | None) -> TenancyError:
    if isinstance(exc, TenancyError):
        return exc
    failure = OperationFailure(
        tenant_id,
        detail=str(exc) or type(exc).__name__,
        error_type=type(exc).__name__,
    )
    failure.__cause__ = exc
    return failure


async def _invoke(operation: Operation) -> Any:
    """
    Call *operation*. Coroutine functions are awaited in the current task;
    plain callables run in a worker thread that inherits a copy of the
    current context (so they see the pushed tenant).
    """
    if inspect.iscoroutinefunction(operation):
        return await operation()
    result = await asyncio.to_thread(operation)
    if inspect.isawaitable(result):
        return await result
    return result


class ScopedExecutor:
    """
    Run operations inside a pushed context.

    Args:
        timeout: Default per-operation time budget in seconds. None means
                 the configured TENANCY_OPERATION_TIMEOUT (unbounded if unset).
        retry:   Default retry policy. Per-tenant failures are terminal
                 unless a policy with max_attempts > 1 is given.
    """

    def __init__(
        self,
        timeout: float | None = _UNSET,
        retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self._timeout = get_config().operation_timeout if timeout is _UNSET else timeout
        self._retry = retry

    @property
    def timeout(self) -> float | None:
        return self._timeout

    async def run_in(
        self,
        context: TenantDescriptor | ContextHandle | Any,
        operation: Operation,
        *,
        timeout: float | None = _UNSET,
        retry: RetryPolicy | None = None,
    ) -> Outcome[Any]:
        """
        Push *context*, run *operation*, always restore the previous context.

        Raises:
            ValidationError:       *operation* is not callable.
            ContextStackUnderflow: the operation left the stack unbalanced
                                   (the caller's context is restored first).
            asyncio.CancelledError: propagated after the context is restored.
        """
        if not callable(operation):
            raise ValidationError(
                user_message="Operation must be callable.",
                fields={"operation": "not callable"},
            )
        limit = self._timeout if timeout is _UNSET else timeout
        policy = retry or self._retry
        tenant_id = _target_id(context)

        start = time.monotonic()
        handle = context_stack.push(context)
        try:
            cm = asyncio.timeout(limit)
            try:
                async with cm:
                    value = await call_with_retry(lambda: _invoke(operation), policy)
                outcome: Outcome[Any] = Outcome(value=value)
            except ContextStackUnderflow:
                raise
            except TimeoutError as exc:
                if cm.expired():
                    outcome = Outcome(error=OperationTimeout(tenant_id, limit))
                else:
                    outcome = Outcome(error=_as_failure(exc, tenant_id))
            except Exception as exc:
                outcome = Outcome(error=_as_failure(exc, tenant_id))
        finally:
            context_stack.unwind(handle)
            operation_duration().observe(time.monotonic() - start)

        operations_total(outcome="ok" if outcome.ok else outcome.error.code).inc()
        return outcome

    def run_in_sync(
        self,
        context: TenantDescriptor | ContextHandle | Any,
        operation: Callable[[], T],
    ) -> Outcome[T]:
        """
        Same contract as run_in for synchronous callers: the operation runs
        inline on the calling thread. No timeout applies here, neither the
        executor default nor TENANCY_OPERATION_TIMEOUT; use run_in (or
        CrossTenantAggregator.aggregate_sync) when the wait must be bounded.
        """
        if not callable(operation):
            raise ValidationError(
                user_message="Operation must be callable.",
                fields={"operation": "not callable"},
            )
        if inspect.iscoroutinefunction(operation):
            raise ValidationError(
                user_message="Use run_in() for async operations.",
                fields={"operation": "coroutine function"},
            )
        tenant_id = _target_id(context)

        start = time.monotonic()
        handle = context_stack.push(context)
        try:
            try:
                outcome: Outcome[T] = Outcome(value=operation())
            except ContextStackUnderflow:
                raise
            except Exception as exc:
                outcome = Outcome(error=_as_failure(exc, tenant_id))
        finally:
            context_stack.unwind(handle)
            operation_duration().observe(time.monotonic() - start)

        operations_total(outcome="ok" if outcome.ok else outcome.error.code).inc()
        return outcome

    async def run_central(self, operation: Operation, **kwargs: Any) -> Outcome[Any]:
        """Run *operation* against the central store."""
        return await self.run_in(CENTRAL, operation, **kwargs)


__all__ = ["Outcome", "ScopedExecutor"]
