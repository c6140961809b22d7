"""Devirtualizer for Luraph-obfuscated Lua 5.1 scripts."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:  # pragma: no cover - used only for type checkers
    from luraph_devirt.chunk import LuaChunk
    from luraph_devirt.config import DEFAULT_CONFIG, DevirtualizerConfig
    from luraph_devirt.devirtualizer import DevirtualizationResult, Devirtualizer, Stage
    from luraph_devirt.exceptions import DevirtualizationError
    from luraph_devirt.frontend import load_tree, parse_source
    from luraph_devirt.luac_writer import LuacWriter, write_bytecode
    from luraph_devirt.matcher import HandlerMatcher

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "DevirtualizationError",
    "DevirtualizationResult",
    "Devirtualizer",
    "DevirtualizerConfig",
    "HandlerMatcher",
    "LuaChunk",
    "LuacWriter",
    "Stage",
    "load_tree",
    "parse_source",
    "write_bytecode",
]

# The front end pulls in luaparser; resolve exports on first access.
_EXPORTS: Dict[str, str] = {
    "DEFAULT_CONFIG": "config",
    "DevirtualizerConfig": "config",
    "DevirtualizationError": "exceptions",
    "DevirtualizationResult": "devirtualizer",
    "Devirtualizer": "devirtualizer",
    "Stage": "devirtualizer",
    "HandlerMatcher": "matcher",
    "LuaChunk": "chunk",
    "LuacWriter": "luac_writer",
    "write_bytecode": "luac_writer",
    "load_tree": "frontend",
    "parse_source": "frontend",
}


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f"{__name__}.{module}"), name)
