from __future__ import annotations

import base64
from typing import Any

# Persisted form of a binary field. Older records may instead carry Node's
# `{"type": "Buffer", "data": [...]}` or a BSON Binary document.
BUFFER_TAG = "_type"
BUFFER_NAME = "Buffer"


def _decode_buffer(d: dict[str, Any]) -> bytes | None:
    if d.get(BUFFER_TAG) == BUFFER_NAME and isinstance(d.get("data"), str):
        return base64.b64decode(d["data"].encode("ascii"))
    if d.get("type") == BUFFER_NAME:
        data = d.get("data")
        if isinstance(data, str):
            return base64.b64decode(data.encode("ascii"))
        if isinstance(data, list):
            return bytes(data)
    if d.get("_bsontype") == "Binary":
        raw = d.get("buffer")
        if isinstance(raw, (bytes, bytearray, memoryview)):
            return bytes(raw)
        if isinstance(raw, str):
            return base64.b64decode(raw.encode("ascii"))
    return None


def to_working(obj: Any) -> Any:
    """Convert a persisted credential/key value into the working form (real `bytes`)."""

    if isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj)
    if isinstance(obj, dict):
        buf = _decode_buffer(obj)
        if buf is not None:
            return buf
        return {k: to_working(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_working(v) for v in obj]
    return obj


def to_persisted(obj: Any) -> Any:
    """Convert a working value into plain, database-friendly data."""

    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {BUFFER_TAG: BUFFER_NAME, "data": base64.b64encode(bytes(obj)).decode("ascii")}
    if isinstance(obj, dict):
        return {k: to_persisted(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_persisted(v) for v in obj]
    return obj


def split_key_filename(name: str) -> tuple[str, str]:
    """`pre-key-12.json` -> (`pre`, `key-12`): the key type never contains a dash."""

    stem = name[:-5] if name.endswith(".json") else name
    key_type, _, key_id = stem.partition("-")
    return key_type, key_id
