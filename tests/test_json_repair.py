from __future__ import annotations

import pytest

from wasession.util import json as bufferjson


def test_buffer_encoding_roundtrip() -> None:
    raw = bufferjson.dumps({"key": b"\x00\x01\xff", "n": 3})
    assert '"type": "Buffer"' in raw
    assert bufferjson.loads(raw) == {"key": b"\x00\x01\xff", "n": 3}


@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1},',
        '{"a": 1}}',
        '{"a": 1}garbage',
        '  {"a": 1}\n\x00\x00',
    ],
)
def test_loads_repair_recovers_object(text: str) -> None:
    assert bufferjson.loads_repair(text) == {"a": 1}


def test_loads_repair_ignores_braces_inside_strings() -> None:
    assert bufferjson.loads_repair('{"a": "}{"}xx') == {"a": "}{"}


def test_loads_repair_gives_up_on_garbage() -> None:
    with pytest.raises(ValueError):
        bufferjson.loads_repair("not json at all")
    with pytest.raises(ValueError):
        bufferjson.loads_repair('{"a": ')
