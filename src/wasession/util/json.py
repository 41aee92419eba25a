from __future__ import annotations

import base64
import dataclasses
import json
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(obj)).decode("ascii")}
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and isinstance(obj.get("data"), str):
        return base64.b64decode(obj["data"].encode("ascii"))
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """JSON serialize with Baileys-compatible Buffer encoding."""

    return json.dumps(obj, default=_default, indent=indent, sort_keys=True)


def loads(data: str) -> Any:
    """JSON deserialize with Baileys-compatible Buffer decoding."""

    return json.loads(data, object_hook=_object_hook)


def _last_balanced_object_end(text: str) -> int:
    depth = 0
    last = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                last = i
            elif depth < 0:
                break
    return last


def loads_repair(data: str) -> Any:
    """
    Like `loads`, but tolerate a file that was cut short or had junk appended.

    A trailing comma is dropped first; if the text still fails to parse, it is
    truncated after the last balanced top-level `{...}`. Raises `ValueError`
    when nothing parseable remains.
    """

    cleaned = data.strip()
    if cleaned.endswith(","):
        cleaned = cleaned[:-1]
    try:
        return loads(cleaned)
    except json.JSONDecodeError:
        pass

    end = _last_balanced_object_end(cleaned)
    if end <= 0:
        raise ValueError("could not recover valid JSON structure")
    try:
        return loads(cleaned[: end + 1])
    except json.JSONDecodeError as e:
        raise ValueError("could not recover valid JSON structure") from e
