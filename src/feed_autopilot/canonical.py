from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert ledger and feed values into JSON primitives.

    Feed snapshots come from merchant data, so they may carry Decimal prices,
    datetimes, enums or nested pydantic models.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: rfc8785.dumps(item))
        return items
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        return str(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def snapshots_equal(left: Any, right: Any) -> bool:
    """Compare two feed snapshots by canonical form rather than Python identity."""
    return to_canonical_json(left) == to_canonical_json(right)
