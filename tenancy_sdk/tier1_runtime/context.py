"""
tenancy_sdk.tier1_runtime.context
──────────────────────────────────
The context stack — single source of truth for which data store (central
or one tenant) every query implicitly targets.

Uses Python contextvars for async-safe, framework-agnostic storage: each
asyncio task, and each worker thread started through asyncio.to_thread,
works on its own copy, so a tenant switch in one request can never leak
into a concurrent one. The stack itself is an immutable linked list of
ContextHandle nodes; push and pop are O(1) and copies are free.

The active tenant is mirrored into structlog contextvars on every switch,
so log lines emitted inside a tenant block carry ``tenant_id``.
"""
from __future__ import annotations

import contextvars
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from tenancy_sdk.tier0_core.errors import (
    ContextStackUnderflow,
    TenantContextRequired,
    ValidationError,
)
from tenancy_sdk.tier0_core.logging import bind_context, get_logger, unbind_context
from tenancy_sdk.tier0_core.metrics import context_switches
from tenancy_sdk.tier0_core.redact import redact_dict

logger = get_logger(__name__)


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TenantDescriptor:
    """
    One row of the central tenant catalog. Immutable; owned by the registry.

    ``connection_params`` is opaque to the context stack. The data layer
    understands ``url`` (full SQLAlchemy URL) or ``database`` (name filled
    into the configured URL template).
    """
    id: str
    connection_params: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = ""

    def __post_init__(self) -> None:
        if not self.id or not isinstance(self.id, str):
            raise ValidationError(
                user_message="Tenant id must be a non-empty string.",
                fields={"id": "required"},
            )
        object.__setattr__(
            self, "connection_params", MappingProxyType(dict(self.connection_params))
        )
        if not self.display_name:
            object.__setattr__(self, "display_name", self.id)

    def __repr__(self) -> str:
        params = redact_dict(self.connection_params)
        return (
            f"TenantDescriptor(id={self.id!r}, display_name={self.display_name!r}, "
            f"connection_params={params!r})"
        )

    def __hash__(self) -> int:
        return hash(self.id)

    def __reduce__(self) -> tuple:
        return (
            self.__class__,
            (self.id, dict(self.connection_params), self.display_name),
        )


class ContextKind(Enum):
    CENTRAL = "central"
    TENANT = "tenant"


@dataclass(frozen=True, repr=False, eq=False)
class ContextHandle:
    """A node of the context stack. ``previous`` is None at the bottom."""
    kind: ContextKind
    tenant: TenantDescriptor | None = None
    previous: ContextHandle | None = None
    depth: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "depth", self.previous.depth + 1 if self.previous is not None else 1
        )
        if self.kind is ContextKind.TENANT and self.tenant is None:
            raise ValidationError(user_message="A tenant context needs a tenant descriptor.")
        if self.kind is ContextKind.CENTRAL and self.tenant is not None:
            raise ValidationError(user_message="The central context cannot carry a tenant.")

    @property
    def is_central(self) -> bool:
        return self.kind is ContextKind.CENTRAL

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None

    def __repr__(self) -> str:
        target = "central" if self.is_central else f"tenant:{self.tenant_id}"
        return f"ContextHandle({target}, depth={self.depth})"


class _Central:
    """Sentinel accepted by push()/scoped() to select the central store."""

    def __repr__(self) -> str:
        return "CENTRAL"


CENTRAL = _Central()

# Implicit bottom of every stack: with nothing pushed, queries hit central.
ROOT = ContextHandle(ContextKind.CENTRAL)


# ── ContextVar storage ────────────────────────────────────────────────────────

_stack: ContextVar[ContextHandle | None] = ContextVar(
    "tenancy_context_stack",
    default=None,
)


def _bind_logging(handle: ContextHandle | None) -> None:
    if handle is None or handle.is_central:
        unbind_context("tenant_id")
        bind_context(data_context="central")
    else:
        bind_context(tenant_id=handle.tenant_id, data_context="tenant")


def _set(handle: ContextHandle | None) -> None:
    _stack.set(handle)
    _bind_logging(handle)


def _underflow(detail: str, **metadata: Any) -> ContextStackUnderflow:
    logger.error("context_stack_underflow", detail=detail, **metadata)
    return ContextStackUnderflow(detail=detail, **metadata)


# ── Public API ────────────────────────────────────────────────────────────────

def push(context: TenantDescriptor | ContextHandle | _Central | None) -> ContextHandle:
    """
    Make *context* active and return the new top-of-stack handle.

    Accepts a TenantDescriptor, the CENTRAL sentinel (or None) for the
    central store, or an existing handle whose target is re-pushed.
    """
    previous = _stack.get()
    if isinstance(context, ContextHandle):
        handle = ContextHandle(context.kind, context.tenant, previous)
    elif isinstance(context, TenantDescriptor):
        handle = ContextHandle(ContextKind.TENANT, context, previous)
    elif context is None or context is CENTRAL:
        handle = ContextHandle(ContextKind.CENTRAL, None, previous)
    else:
        raise ValidationError(
            user_message="Unsupported context target.",
            detail=f"Cannot push {type(context).__name__} onto the context stack",
        )
    _set(handle)
    context_switches(kind=handle.kind.value).inc()
    logger.debug("context_pushed", target=handle.tenant_id or "central", depth=handle.depth)
    return handle


def pop() -> ContextHandle:
    """
    Discard the active handle and restore the previous one.
    Returns the discarded handle. Raises ContextStackUnderflow when empty.
    """
    top = _stack.get()
    if top is None:
        raise _underflow("pop() called on an empty context stack")
    _set(top.previous)
    logger.debug("context_popped", target=top.tenant_id or "central", depth=top.depth - 1)
    return top


def unwind(handle: ContextHandle) -> None:
    """
    Pop *handle*, which must be on top. If the block running under it left
    the stack unbalanced, the stack is forced back to ``handle.previous``
    before ContextStackUnderflow is raised, so the caller's context is
    restored either way.
    """
    top = _stack.get()
    if top is handle:
        _set(handle.previous)
        logger.debug("context_popped", target=handle.tenant_id or "central", depth=handle.depth - 1)
        return
    _set(handle.previous)
    raise _underflow(
        "context stack unbalanced at scope exit",
        expected=repr(handle),
        found=repr(top) if top is not None else "empty",
    )


def current() -> ContextHandle:
    """Return the active handle (the implicit central ROOT when empty)."""
    top = _stack.get()
    return top if top is not None else ROOT


def depth() -> int:
    """Number of explicitly pushed handles."""
    top = _stack.get()
    return top.depth if top is not None else 0


def current_tenant() -> TenantDescriptor | None:
    """Return the active tenant, or None in the central context."""
    return current().tenant


def is_tenant_active() -> bool:
    return current_tenant() is not None


def require_tenant() -> TenantDescriptor:
    """Return the active tenant, raising if the central context is active."""
    tenant = current_tenant()
    if tenant is None:
        raise TenantContextRequired(
            user_message="This operation requires a clinic context.",
            detail="No tenant context active. Wrap the call in scoped(descriptor).",
        )
    return tenant


@contextmanager
def scoped(context: TenantDescriptor | ContextHandle | _Central | None) -> Iterator[ContextHandle]:
    """
    Run a block against *context*; the previous context is restored on
    every exit path, including exceptions.

    Usage::

        with scoped(clinic):
            rows = load_appointments()
    """
    handle = push(context)
    try:
        yield handle
    finally:
        unwind(handle)


@contextmanager
def central() -> Iterator[ContextHandle]:
    """Temporarily target the central store from inside a tenant block."""
    with scoped(CENTRAL) as handle:
        yield handle


@contextmanager
def ensure_tenant(tenant: TenantDescriptor) -> Iterator[ContextHandle]:
    """
    Target *tenant*, pushing only if it is not already active. Nested calls
    for the same clinic therefore do not grow the stack.
    """
    active = current()
    if active.tenant_id == tenant.id:
        yield active
        return
    with scoped(tenant) as handle:
        yield handle


def isolated() -> contextvars.Context:
    """
    Return a copy of the current contextvars context whose stack is empty.
    Tasks started with it get a context stack of their own.
    """
    ctx = contextvars.copy_context()
    ctx.run(_set, None)
    return ctx


def _reset() -> None:
    """For tests — empty the stack of the current context."""
    _set(None)


__all__ = [
    "TenantDescriptor", "ContextKind", "ContextHandle", "CENTRAL", "ROOT",
    "push", "pop", "unwind", "current", "depth", "current_tenant",
    "is_tenant_active", "require_tenant", "scoped", "central",
    "ensure_tenant", "isolated",
]
