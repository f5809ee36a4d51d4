"""
tenancy_sdk.tier3_platform.merge
─────────────────────────────────
Result merger — turns per-tenant partial results into one deterministic,
globally ordered listing, and pages through it.

Ordering is a stable sort: records with equal keys keep their original
relative order (tenant processing order, then per-tenant result order),
in both directions. Records without the key always go last.
"""
from __future__ import annotations

import math
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from tenancy_sdk.tier0_core.errors import ValidationError
from tenancy_sdk.tier1_runtime.validate import PageParams, validate_input

T = TypeVar("T")

MergeKey = str | Callable[[Any], Any]

_MISSING: Any = object()


@dataclass(frozen=True)
class Tagged(Generic[T]):
    """A value produced inside one tenant, tagged with its origin."""
    tenant_id: str
    value: T

    def to_dict(self) -> dict[str, Any]:
        return {"tenant_id": self.tenant_id, "value": self.value}


def sort_value(item: Tagged[Any], key: MergeKey) -> Any:
    """
    Resolve *key* against a tagged record. A string key is looked up on the
    value (mapping key, then attribute), then on the envelope itself, so
    ``"tenant_id"`` and ``"value"`` work for scalar results. A callable
    receives the value.
    """
    if callable(key):
        return key(item.value)
    value = item.value
    if isinstance(value, Mapping):
        if key in value:
            return value[key]
    elif hasattr(value, key):
        return getattr(value, key)
    if key in ("tenant_id", "value"):
        return getattr(item, key)
    return _MISSING


class ResultMerger:
    """Stable global ordering with optional de-duplication."""

    def merge(
        self,
        succeeded: Sequence[Tagged[T]],
        merge_key: MergeKey | None,
        descending: bool = False,
        dedupe: Callable[[Tagged[T]], Hashable] | None = None,
    ) -> list[Tagged[T]]:
        items = list(succeeded)
        if dedupe is not None:
            items = self.dedupe(items, dedupe)
        if merge_key is None:
            return items

        keyed: list[tuple[Any, Tagged[T]]] = []
        missing: list[Tagged[T]] = []
        for item in items:
            k = sort_value(item, merge_key)
            if k is _MISSING or k is None:
                missing.append(item)
            else:
                keyed.append((k, item))

        try:
            keyed.sort(key=lambda pair: pair[0], reverse=descending)
        except TypeError as exc:
            raise ValidationError(
                user_message="Results cannot be ordered by the requested key.",
                detail=f"merge key {merge_key!r} produced values that do not compare: {exc}",
                fields={"merge_key": "incomparable values"},
            ) from exc

        return [item for _, item in keyed] + missing

    @staticmethod
    def dedupe(
        items: Iterable[Tagged[T]],
        key: Callable[[Tagged[T]], Hashable],
    ) -> list[Tagged[T]]:
        """Keep the first record for each key."""
        seen: set[Hashable] = set()
        kept: list[Tagged[T]] = []
        for item in items:
            k = key(item)
            if k in seen:
                continue
            seen.add(k)
            kept.append(item)
        return kept


# ── Pagination ────────────────────────────────────────────────────────────────

@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    current_page: int = 1
    per_page: int = 10
    total: int = 0

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    @property
    def from_(self) -> int:
        if self.total == 0:
            return 0
        return min((self.current_page - 1) * self.per_page + 1, self.total + 1)

    @property
    def to(self) -> int:
        return min(self.current_page * self.per_page, self.total)

    def pagination(self) -> dict[str, int]:
        return {
            "current_page": self.current_page,
            "per_page": self.per_page,
            "total": self.total,
            "last_page": self.last_page,
            "from": self.from_,
            "to": self.to,
        }


def paginate(items: Sequence[T], params: PageParams | Mapping[str, Any] | None = None) -> Page[T]:
    """Slice an already merged listing into one page."""
    p = validate_input(PageParams, params or {})
    return Page(
        items=list(items[p.offset:p.offset + p.per_page]),
        current_page=p.page,
        per_page=p.per_page,
        total=len(items),
    )


__all__ = ["Tagged", "ResultMerger", "Page", "paginate", "sort_value"]
