"""Validation of path parameters and request bodies for the user routes."""

import re
from typing import Any, Dict, List

import pydantic

from .errors import ValidationError
from .schemas import UserUpdate

_USER_ID_RE = re.compile(r"[0-9]+")
# upper bound of the users.id INTEGER column
MAX_USER_ID = 2**31 - 1


def format_validation_errors(exc: pydantic.ValidationError) -> List[Dict[str, str]]:
    """Flatten a pydantic error into ``{field, message}`` pairs."""
    return [
        {"field": ".".join(str(loc) for loc in e["loc"]), "message": e["msg"]}
        for e in exc.errors()
    ]


def validate_user_id(raw: Any) -> int:
    if isinstance(raw, str) and _USER_ID_RE.fullmatch(raw):
        digits = raw.lstrip("0") or "0"
        if len(digits) <= len(str(MAX_USER_ID)) and int(digits) <= MAX_USER_ID:
            return int(digits)
    raise ValidationError([{"field": "id", "message": "ID must be a valid number"}])


def validate_update(body: Any) -> Dict[str, Any]:
    """Return the fields of a partial update, normalized.

    Raises :class:`ValidationError` when the body is malformed or when no
    recognised field is present.
    """
    if not isinstance(body, dict):
        raise ValidationError(
            [{"field": "body", "message": "Request body must be a JSON object"}]
        )
    try:
        update = UserUpdate.model_validate(body)
    except pydantic.ValidationError as exc:
        raise ValidationError(format_validation_errors(exc)) from exc

    fields = update.model_dump(include=update.model_fields_set)
    if not fields:
        raise ValidationError(
            [
                {
                    "field": "body",
                    "message": "At least one field must be provided for update",
                }
            ]
        )
    return fields
