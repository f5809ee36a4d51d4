"""
tenancy_sdk.tier1_runtime.retry
────────────────────────────────
Opt-in retry/backoff for per-tenant operations, with jitter.
Backed by Tenacity. Per-tenant failures are terminal by default
(max_attempts=1); callers that know their errors are transient raise it.

Usage:
    value = await call_with_retry(load_schedule, RetryPolicy(max_attempts=3))
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from tenancy_sdk.tier0_core.errors import (
    ContextStackUnderflow,
    NotFoundError,
    TenantContextRequired,
    ValidationError,
)
from tenancy_sdk.tier0_core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

# Errors that are NEVER retried regardless of policy
_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    ContextStackUnderflow,
    TenantContextRequired,
    ValidationError,
    NotFoundError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    min_wait: float = 0.1
    max_wait: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError(
                user_message="max_attempts must be at least 1.",
                fields={"max_attempts": "must be >= 1"},
            )

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 1


NO_RETRY = RetryPolicy()


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the exception should be retried."""
    if not isinstance(exc, Exception):
        return False
    return not isinstance(exc, _NON_RETRYABLE)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = NO_RETRY,
) -> T:
    """
    Await ``fn()`` up to ``policy.max_attempts`` times with exponential
    backoff plus jitter. The last error is re-raised unchanged.
    """
    if not policy.enabled:
        return await fn()

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(min=policy.min_wait, max=policy.max_wait)
        + wait_random(0, policy.jitter),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover


def _log_retry(retry_state: Any) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "tenant_operation_retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
        error_type=type(exc).__name__ if exc else None,
    )


__all__ = ["RetryPolicy", "NO_RETRY", "call_with_retry"]
