"""JSON helpers backed by orjson."""

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import orjson
from fastapi.responses import JSONResponse


def _default_serializer(obj: Any) -> Any:
    """Serializer for types orjson does not handle natively."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def json_dumps(data: Any) -> str:
    """Serialize data to a JSON string."""
    return orjson.dumps(data, default=_default_serializer, option=orjson.OPT_UTC_Z).decode("utf-8")


class ORJSONResponse(JSONResponse):
    """JSONResponse rendered with orjson and the serializer above."""

    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content, default=_default_serializer, option=orjson.OPT_UTC_Z)
