from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Type

import httpx
from pydantic import BaseModel

from ..validation import FORM_ERROR, validate
from .api import ApiError

logger = logging.getLogger(__name__)

Submitter = Callable[[dict], Awaitable[Any]]


class FormState:
    IDLE = "idle"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILURE = "failure"


TRANSITIONS = {
    FormState.IDLE: {FormState.VALIDATING},
    FormState.VALIDATING: {FormState.VALID, FormState.INVALID},
    FormState.VALID: {FormState.SUBMITTING},
    FormState.INVALID: {FormState.IDLE},
    FormState.SUBMITTING: {FormState.SUCCESS, FormState.FAILURE},
    FormState.SUCCESS: {FormState.IDLE},
    FormState.FAILURE: {FormState.IDLE},
}


class FormController:
    """Create/edit dialog state: validate locally with the server's models, then submit.

    With `partial=True` (edit dialogs) only the fields the user touched are sent.
    """

    def __init__(self, model: Type[BaseModel], submit: Submitter, initial: Optional[dict] = None, partial: bool = False):
        self.model = model
        self._submit = submit
        self.partial = partial
        self.values: dict[str, Any] = dict(initial or {})
        self.touched: set[str] = set()
        self.state = FormState.IDLE
        self.field_errors: dict[str, list[str]] = {}
        self.error: Optional[str] = None
        self.result: Any = None
        self.transitions: list[tuple[str, str]] = []

    def _move(self, target: str) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal form transition {self.state} -> {target}")
        self.transitions.append((self.state, target))
        self.state = target

    def set_field(self, name: str, value: Any) -> None:
        self.values[name] = value
        self.touched.add(name)
        self.field_errors.pop(name, None)

    def payload(self) -> dict:
        if self.partial:
            return {k: v for k, v in self.values.items() if k in self.touched}
        return dict(self.values)

    async def submit(self) -> bool:
        if self.state != FormState.IDLE:
            return False
        self.error = None
        self._move(FormState.VALIDATING)
        checked = validate(self.model, self.payload())
        if not checked.ok:
            self.field_errors = checked.errors
            self.error = "; ".join(checked.errors.get(FORM_ERROR, [])) or None
            self._move(FormState.INVALID)
            self._move(FormState.IDLE)
            return False

        self.field_errors = {}
        self._move(FormState.VALID)
        self._move(FormState.SUBMITTING)
        body = checked.value.model_dump(mode="json", exclude_unset=self.partial)
        try:
            self.result = await self._submit(body)
        except ApiError as exc:
            logger.info("form submission rejected: %s", exc.status)
            return self._fail(exc.detail, exc.field_errors)
        except httpx.HTTPError as exc:
            logger.warning("form submission failed: %s", exc)
            return self._fail("Could not reach the server")
        self._move(FormState.SUCCESS)
        self._move(FormState.IDLE)
        return True

    def _fail(self, message: str, field_errors: Optional[dict] = None) -> bool:
        self.error = message
        self.field_errors = dict(field_errors or {})
        self._move(FormState.FAILURE)
        self._move(FormState.IDLE)
        return False

    def reset(self, values: Optional[dict] = None) -> None:
        self.values = dict(values or {})
        self.touched.clear()
        self.field_errors = {}
        self.error = None
        self.result = None
        self.state = FormState.IDLE
