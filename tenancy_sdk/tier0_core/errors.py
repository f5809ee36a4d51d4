"""
tenancy_sdk.tier0_core.errors
──────────────────────────────
Error taxonomy for tenant context switching and cross-tenant aggregation.
Raising a TenancyError here automatically reports it if an error backend
is configured.

Two families:
  - invariant violations (ContextStackUnderflow, ValidationError): raised
    to the caller, never swallowed
  - per-tenant failures (TenantNotFound, OperationFailure, OperationTimeout,
    AggregationTimeout): carried as data in AggregationResult.failed

Select backend via: TENANCY_ERROR_BACKEND=sentry|otel|none
"""
from __future__ import annotations

from typing import Any

from tenancy_sdk.tier0_core.config import get_config


# ── Base error ────────────────────────────────────────────────────────────────

class TenancyError(Exception):
    """
    Base class for all tenancy errors.

    ``code`` is stable and snake_case; ``user_message`` is safe to show on a
    dashboard; ``detail`` is for logs only. ``tenant_id`` names the clinic
    the error belongs to, or is None for central / caller errors.
    """

    status_code: int = 500
    code: str = "tenancy_error"
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        code: str | None = None,
        user_message: str | None = None,
        detail: str | None = None,
        *,
        tenant_id: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or type(self).code
        self.user_message = user_message or type(self).default_message
        self.detail = detail or self.user_message
        self.tenant_id = tenant_id
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    @property
    def per_tenant(self) -> bool:
        return self.tenant_id is not None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.user_message}
        if self.tenant_id is not None:
            body["tenant_id"] = self.tenant_id
        return {"error": body}


# ── Caller errors ─────────────────────────────────────────────────────────────

class ValidationError(TenancyError):
    """Malformed input handed to the library (e.g. a null request)."""
    status_code = 422
    code = "validation_error"
    default_message = "Validation failed."

    def __init__(
        self,
        code: str | None = None,
        user_message: str | None = None,
        fields: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.fields = dict(fields or {})
        super().__init__(code, user_message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.fields:
            payload["error"]["fields"] = self.fields
        return payload


class ConfigurationError(TenancyError):
    """Database URL or template cannot be used."""
    code = "configuration_error"
    default_message = "Tenancy is misconfigured."


class ConflictError(TenancyError):
    """Registry state conflict, e.g. a tenant id registered twice."""
    status_code = 409
    code = "conflict"
    default_message = "Conflicting tenant registration."


class NotFoundError(TenancyError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


# ── Context errors ────────────────────────────────────────────────────────────

class ContextStackUnderflow(TenancyError):
    """
    Mismatched push/pop on the context stack. This is a programming error:
    it always propagates and is reported at error level.
    """
    code = "context_stack_underflow"
    default_message = "Tenant context stack is unbalanced."

    def __init__(self, user_message: str | None = None, detail: str | None = None, **metadata: Any) -> None:
        super().__init__(None, user_message, detail, **metadata)


class TenantContextRequired(TenancyError):
    """A tenant-only operation ran while the central context was active."""
    code = "tenant_context_required"
    default_message = "This operation requires a clinic context."


# ── Per-tenant failures ───────────────────────────────────────────────────────

class TenantNotFound(NotFoundError):
    """Tenant id is absent from the central registry."""
    code = "tenant_not_found"
    default_message = "Clinic not found."

    def __init__(self, tenant_id: str, **metadata: Any) -> None:
        super().__init__(
            detail=f"Tenant {tenant_id!r} is not registered",
            tenant_id=tenant_id,
            **metadata,
        )


class OperationFailure(TenancyError):
    """The caller-supplied operation raised while running in a tenant."""
    status_code = 502
    code = "operation_failed"
    default_message = "Some clinic data could not be loaded."

    def __init__(
        self,
        tenant_id: str | None,
        detail: str,
        error_type: str | None = None,
        **metadata: Any,
    ) -> None:
        self.error_type = error_type
        super().__init__(detail=detail, tenant_id=tenant_id, error_type=error_type, **metadata)


class OperationTimeout(OperationFailure):
    """The operation did not finish within its per-tenant time budget."""
    status_code = 504
    code = "operation_timeout"

    def __init__(self, tenant_id: str | None, timeout: float, **metadata: Any) -> None:
        self.timeout = timeout
        super().__init__(
            tenant_id,
            detail=f"Operation exceeded {timeout}s",
            error_type="TimeoutError",
            timeout=timeout,
            **metadata,
        )


class AggregationTimeout(TenancyError):
    """The overall aggregation deadline passed before this tenant finished."""
    status_code = 504
    code = "aggregation_timeout"
    default_message = "Some clinic data could not be loaded in time."

    def __init__(self, tenant_id: str, deadline: float | None, **metadata: Any) -> None:
        self.deadline = deadline
        super().__init__(
            detail=f"Aggregation deadline of {deadline}s reached before tenant {tenant_id!r} completed",
            tenant_id=tenant_id,
            deadline=deadline,
            **metadata,
        )


# ── Error capture backend ─────────────────────────────────────────────────────

_backend_override: str | None = None


def _backend() -> str:
    if _backend_override is not None:
        return _backend_override
    return get_config().error_backend.lower()


def _capture(error: TenancyError) -> None:
    """Send error to configured backend. Called automatically by TenancyError.__init__."""
    backend = _backend()
    if backend == "sentry":
        _capture_sentry(error)
    elif backend == "otel":
        _capture_otel(error)


def _capture_sentry(error: TenancyError) -> None:
    # Per-tenant and caller errors are sent as warnings, invariant breaks as exceptions.
    try:
        import sentry_sdk
    except ImportError:
        return
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("error_code", error.code)
        if error.tenant_id is not None:
            scope.set_tag("tenant_id", error.tenant_id)
        if error.per_tenant or error.status_code < 500:
            scope.set_context("tenancy", dict(error.metadata))
            sentry_sdk.capture_message(error.detail, level="warning")
        else:
            sentry_sdk.capture_exception(error)


def _capture_otel(error: TenancyError) -> None:
    try:
        from opentelemetry import trace
    except ImportError:
        return
    span = trace.get_current_span()
    attributes = {"tenancy.error_code": error.code}
    if error.tenant_id is not None:
        attributes["tenancy.tenant_id"] = error.tenant_id
    span.record_exception(error, attributes=attributes)
    if not error.per_tenant:
        span.set_status(trace.StatusCode.ERROR, error.detail)


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry and route TenancyErrors to it. Call once at startup."""
    global _backend_override
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    _backend_override = "sentry"


__all__ = [
    "TenancyError", "ValidationError", "ConfigurationError", "ConflictError",
    "NotFoundError", "ContextStackUnderflow", "TenantContextRequired",
    "TenantNotFound", "OperationFailure", "OperationTimeout",
    "AggregationTimeout", "configure_sentry",
]
