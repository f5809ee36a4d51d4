"""
tenancy_sdk.tier0_core.logging
───────────────────────────────
Structured logging for tenant switching and aggregation. Every line says
which store it ran against: the context stack binds ``tenant_id`` and
``data_context`` into structlog contextvars on each switch, and lines
emitted outside any switch default to ``data_context="central"``.
Connection credentials are scrubbed before rendering.

Minimal stack: structlog (stdout JSON)
Configure via: TENANCY_LOG_LEVEL, TENANCY_LOG_FORMAT=json|console
"""
from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

from tenancy_sdk.tier0_core.config import get_config
from tenancy_sdk.tier0_core.redact import structlog_redact_processor

_HANDLER_NAME = "tenancy_sdk"


def _default_data_context(logger: Any, method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("data_context", "central")
    return event_dict


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    (Re)configure structlog and the root stdlib handler. Called lazily by
    get_logger(); call it explicitly to change level or format at runtime.
    Arguments default to TenancyConfig.log_level / log_format.
    """
    cfg = get_config()
    level_no = getattr(logging, (level or cfg.log_level).upper(), logging.INFO)
    fmt = (fmt or cfg.log_format).lower()

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _default_data_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog_redact_processor,
    ]
    renderer: Any = (
        structlog.dev.ConsoleRenderer() if fmt == "console" else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level_no)


# ── Public API ────────────────────────────────────────────────────────────────

_configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Return a structured logger bound to the given name.

    Usage:
        log = get_logger(__name__)
        log.warning("tenant_operation_failed", tenant_id="clinic-a", error="boom")
    """
    global _configured
    if not _configured:
        configure_logging()
        _configured = True
    return structlog.get_logger(name or __name__)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every line logged from the current task or thread."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


__all__ = ["configure_logging", "get_logger", "bind_context", "unbind_context"]
