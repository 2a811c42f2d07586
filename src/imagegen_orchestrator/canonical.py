from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitive(value: Any) -> Any:
    """Reduce models, enums and datetimes to the primitives rfc8785 accepts.

    Raises:
        TypeError: For bytes and any other type with no JSON representation.
    """
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitive(item) for item in value]
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        raise TypeError("image bytes belong in object storage, not in a JSON column")
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value as RFC 8785 canonical JSON.

    Persisted JSON columns go through this so identical state always produces
    identical bytes.
    """
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")


def from_json_column(raw: str | None, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)
