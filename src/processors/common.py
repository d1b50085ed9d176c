"""
Payload validation helpers shared by processors.

Structural problems are never fixed by a retry, so every helper raises the
non-retryable ValidationError.
"""

from typing import Any, Iterable, Optional

from src.queueing.errors import ValidationError


def require_fields(payload: dict, *names: str) -> None:
    """
    Raises:
        ValidationError: Listing every missing or empty field
    """
    missing = [name for name in names if payload.get(name) in (None, "", [], {})]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            code="MISSING_FIELD",
            context={"fields": missing},
        )


def require_choice(payload: dict, name: str, choices: Iterable[str], default: Optional[str] = None) -> str:
    """Return payload[name], which must be one of `choices`."""
    value = payload.get(name, default)
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(
            f"Invalid {name}: {value!r} (expected one of {', '.join(choices)})",
            code=f"INVALID_{name.upper()}",
            context={name: value},
        )
    return value


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
