from __future__ import annotations

import base64
import dataclasses
import datetime as dt
import json
from typing import Any


def _default(obj: Any) -> Any:
    # Same `{"type": "Buffer", "data": ...}` envelope the protocol libraries use,
    # so credential rows stay readable by either side.
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(obj)).decode("ascii")}
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (dt.datetime, dt.date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and isinstance(obj.get("data"), str):
        return base64.b64decode(obj["data"].encode("ascii"))
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    return json.dumps(obj, default=_default, indent=indent, sort_keys=True, ensure_ascii=False)


def loads(data: str | bytes) -> Any:
    return json.loads(data, object_hook=_object_hook)


def to_jsonable(obj: Any) -> Any:
    """Round-trip through `dumps` so bytes/dates become plain JSON values."""

    return json.loads(dumps(obj))
