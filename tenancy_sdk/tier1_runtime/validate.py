"""
tenancy_sdk.tier1_runtime.validate
───────────────────────────────────
Input validation via Pydantic v2. Raises tenancy ValidationError (not raw
Pydantic errors) so callers see one error type for malformed input.
"""
from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from tenancy_sdk.tier0_core.errors import ValidationError

T = TypeVar("T", bound=BaseModel)


class PageParams(BaseModel):
    """Pagination of a merged cross-tenant listing."""

    model_config = ConfigDict(populate_by_name=True)

    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=10, ge=1, le=100, alias="perPage")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def _field_errors(exc: PydanticValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for err in exc.errors():
        path = ".".join(str(part) for part in err["loc"]) or "__root__"
        errors.setdefault(path, err["msg"])
    return errors


def validate_input(model: Type[T], data: Any) -> T:
    """
    Coerce query-string style input into ``model``; an instance passes through.

        params = validate_input(PageParams, {"page": "2", "perPage": "25"})
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            user_message=f"Invalid {model.__name__}.",
            fields=_field_errors(exc),
        ) from exc


__all__ = ["PageParams", "validate_input"]
