"""JSON-safe conversion of engine models.

Decimals become strings (never floats), datetimes ISO-8601 strings, enums
their values. History detail payloads carry their ``kind`` discriminator so
the audit log can decode them back into the right dataclass.
"""

from dataclasses import fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def to_jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses, Decimals, datetimes and enums for JSON."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if is_dataclass(obj) and not isinstance(obj, type):
        data = {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
        kind = getattr(type(obj), "kind", None)
        if isinstance(kind, str):
            data = {"kind": kind, **data}
        return data
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(item) for item in obj]
    return obj
