"""
Field-scoped validation shared by the API handlers and the client form layer.

`validate` never raises on bad input: it returns a `ValidationResult` holding
either the parsed model or a mapping of field path to messages. Handlers turn a
failed result into `ValidationFailed` with `require_valid`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ValidationFailed

M = TypeVar("M", bound=BaseModel)

FORM_ERROR = "__form__"
REQUEST_SOURCES = {"query", "path", "body", "header"}


@dataclass
class ValidationResult(Generic[M]):
    value: Optional[M] = None
    errors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.value is not None and not self.errors


def _field_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or FORM_ERROR


def _message(err: dict) -> str:
    msg = err.get("msg", "invalid value")
    for prefix in ("Value error, ", "Assertion failed, "):
        if msg.startswith(prefix):
            return msg[len(prefix):]
    return msg


def _collect(raw: list, skip_source: bool = False) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for err in raw:
        loc = tuple(err.get("loc", ()))
        if skip_source and loc and loc[0] in REQUEST_SOURCES:
            loc = loc[1:]
        errors.setdefault(_field_path(loc), []).append(_message(err))
    return errors


def errors_from(exc: ValidationError) -> dict[str, list[str]]:
    return _collect(exc.errors())


def errors_from_request(exc) -> dict[str, list[str]]:
    """Same mapping for FastAPI's `RequestValidationError`, without the query/path/body prefix."""
    return _collect(list(exc.errors()), skip_source=True)


def validate(model: Type[M], data: Any) -> ValidationResult[M]:
    if data is None:
        data = {}
    try:
        return ValidationResult(value=model.model_validate(data))
    except ValidationError as exc:
        return ValidationResult(errors=errors_from(exc))


def require_valid(model: Type[M], data: Any) -> M:
    result = validate(model, data)
    if not result.ok:
        raise ValidationFailed("Invalid input", result.errors)
    return result.value


def require_valid_list(model: Type[M], data: Any) -> list[M]:
    if not isinstance(data, list):
        raise ValidationFailed("Invalid input", {FORM_ERROR: ["expected a list"]})
    items: list[M] = []
    errors: dict[str, list[str]] = {}
    for index, item in enumerate(data):
        result = validate(model, item)
        if result.ok:
            items.append(result.value)
        for path, messages in result.errors.items():
            errors[f"{index}.{path}"] = messages
    if errors:
        raise ValidationFailed("Invalid input", errors)
    return items
