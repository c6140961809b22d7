"""Helpers for walking deserialized chunk payloads.

A payload is the value the obfuscated VM's decode routine returns: nested Lua
tables converted to Python.  Tables arrive either as ``dict`` objects keyed by
Lua values or, for JSON payloads and hand-written fixtures, as 1-based
``list`` objects.  Numeric keys may be ``float`` when they come from Lua 5.1.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Mapping

__all__ = [
    "PayloadTable",
    "is_table",
    "lua_array",
    "load_payload_json",
    "lua_index",
    "lua_sequence",
    "normalise_key",
]

PayloadTable = Any

_MISSING = object()


def is_table(value: Any) -> bool:
    return isinstance(value, (Mapping, list, tuple))


def normalise_key(key: Any) -> Any:
    """Collapse integral floats and digit strings to ``int`` keys."""

    if isinstance(key, bool):
        return key
    if isinstance(key, float) and key.is_integer():
        return int(key)
    if isinstance(key, str) and key.lstrip("-").isdigit():
        return int(key)
    return key


def lua_index(table: PayloadTable, key: Any, default: Any = None) -> Any:
    """Return ``table[key]`` with Lua 1-based semantics for sequences."""

    key = normalise_key(key)
    if isinstance(table, (list, tuple)):
        if isinstance(key, int) and 1 <= key <= len(table):
            return table[key - 1]
        return default
    if isinstance(table, Mapping):
        value = table.get(key, _MISSING)
        if value is _MISSING and isinstance(key, int):
            value = table.get(float(key), _MISSING)
            if value is _MISSING:
                value = table.get(str(key), _MISSING)
        return default if value is _MISSING else value
    return default


def lua_sequence(table: PayloadTable) -> List[Any]:
    """Return the array part ``t[1..n]`` of *table* as a Python list."""

    if table is None:
        return []
    if isinstance(table, (list, tuple)):
        return list(table)
    if not isinstance(table, Mapping):
        raise TypeError(f"expected a Lua table, got {type(table).__name__}")
    items: List[Any] = []
    index = 1
    while True:
        value = lua_index(table, index, _MISSING)
        if value is _MISSING:
            return items
        items.append(value)
        index += 1


def lua_array(table: PayloadTable, *, allow_zero: bool = False) -> List[Any]:
    """Return ``t[1..n]`` where ``n`` is the largest integer key; holes are ``None``.

    With *allow_zero* a table that has a ``[0]`` entry is read from 0.
    """

    if table is None:
        return []
    if isinstance(table, (list, tuple)):
        return list(table)
    if not isinstance(table, Mapping):
        raise TypeError(f"expected a Lua table, got {type(table).__name__}")
    keys = [key for key in map(normalise_key, table) if isinstance(key, int) and not isinstance(key, bool)]
    start = 0 if allow_zero and 0 in keys else 1
    last = max((key for key in keys if key >= start), default=start - 1)
    return [lua_index(table, index) for index in range(start, last + 1)]


def load_payload_json(path: Path) -> PayloadTable:
    """Load a payload previously captured and saved as JSON."""

    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)

