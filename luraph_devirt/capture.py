"""Capture the deserialized chunk by running the script's own decode routine.

The script is cut right before the VM starts: the first statement that uses
the decode routine is replaced with ``return <routine>(...)``, the remaining
source is rendered back to Lua and executed in an embedded Lua runtime, inside
a restricted global table and under a time limit.  The returned table is the
payload the devirtualizer consumes.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

from lupa import LuaError, LuaRuntime, lua_type

from . import lua_ast as ast
from .config import DEFAULT_CONFIG
from .exceptions import PayloadCaptureError
from .metadata import find_decode_routine
from .payload import PayloadTable, normalise_key

LOG = logging.getLogger(__name__)

__all__ = ["capture_payload", "lua_to_python", "prepare_capture_source"]

MAX_DEPTH = 64
DEFAULT_TIMEOUT = DEFAULT_CONFIG.capture_timeout
JOIN_GRACE = 1.0

# Builds the restricted global table the capture source runs in and returns a
# runner that enforces the time limit with a count hook.
_SANDBOX = b"""
local allowed = {
  "assert", "error", "getmetatable", "ipairs", "next", "pairs", "pcall", "rawequal",
  "rawget", "rawlen", "rawset", "select", "setmetatable", "tonumber", "tostring",
  "type", "unpack", "xpcall",
}
local libraries = {"bit", "bit32", "math", "string", "table"}
local blocked = {
  "collectgarbage", "debug", "dofile", "getfenv", "io", "load", "loadfile",
  "loadstring", "module", "os", "package", "require", "setfenv",
}
local clock, sethook = os.clock, debug.sethook

local function forbidden(name)
  local function deny()
    error("sandboxed script attempted to access " .. name, 2)
  end
  return setmetatable({}, {__index = deny, __newindex = deny, __call = deny})
end

return function(src, seconds)
  local env = {}
  for _, name in ipairs(allowed) do
    env[name] = _G[name]
  end
  for _, name in ipairs(libraries) do
    if type(_G[name]) == "table" then
      local copy = {}
      for key, value in pairs(_G[name]) do
        copy[key] = value
      end
      env[name] = copy
    end
  end
  for _, name in ipairs(blocked) do
    env[name] = forbidden(name)
  end
  env._G = env
  local chunk, err
  if setfenv then
    chunk, err = loadstring(src, "=capture")
    if chunk then
      setfenv(chunk, env)
    end
  else
    chunk, err = load(src, "=capture", "t", env)
  end
  if not chunk then
    error(err, 0)
  end
  return function()
    local deadline = clock() + seconds
    sethook(function()
      if clock() > deadline then
        error("time limit of " .. seconds .. "s exceeded", 0)
      end
    end, "", 1000)
    local ok, result = pcall(chunk)
    sethook()
    if not ok then
      error(result, 0)
    end
    return result
  end
end
"""


def _nested_functions(stmt: ast.Stmt) -> Iterator[ast.Function]:
    for node in ast.walk_scope(stmt):
        if isinstance(node, ast.Function):
            yield node


def _calls_routine(stmt: ast.Stmt, name: str) -> Optional[ast.Call]:
    for node in ast.walk_scope(stmt):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.ident == name:
            return node
    return None


def _find_site(
    block: List[ast.Stmt], name: str, routine: ast.Function
) -> Optional[Tuple[List[ast.Stmt], int, ast.Call]]:
    for index, stmt in enumerate(block):
        call = _calls_routine(stmt, name)
        if call is not None:
            return block, index, call
        for fn in _nested_functions(stmt):
            if fn is routine:
                continue
            found = _find_site(fn.body, name, routine)
            if found is not None:
                return found
    return None


def prepare_capture_source(tree: ast.Chunk, routine_name: Optional[str] = None) -> str:
    """Render *tree* cut off at the first use of the decode routine."""

    work = copy.deepcopy(tree)
    name, routine = find_decode_routine(work, routine_name or "decode_chunk")
    site = _find_site(work.body, name, routine)
    if site is None:
        raise PayloadCaptureError(f"no call to {name} outside its own body", entity=name)
    block, index, call = site
    block[index:] = [ast.Return([ast.Call(ast.Name(name), list(call.args))])]
    return ast.to_source(work)


def lua_to_python(value: Any, *, depth: int = 0, max_depth: int = MAX_DEPTH) -> Any:
    """Convert a Lua value returned by lupa into plain Python data.

    Tables become ``dict`` objects with normalised keys, strings are decoded
    byte-for-byte and functions are dropped.
    """

    kind = lua_type(value)
    if kind == "table":
        if depth >= max_depth:
            raise PayloadCaptureError(f"payload nesting deeper than {max_depth}")
        result: Dict[Any, Any] = {}
        for key, item in value.items():
            if lua_type(item) == "function":
                continue
            result[normalise_key(lua_to_python(key, depth=depth + 1, max_depth=max_depth))] = lua_to_python(
                item, depth=depth + 1, max_depth=max_depth
            )
        return result
    if kind is not None:
        return None
    if isinstance(value, bytes):
        return value.decode("latin-1")
    return value


def _sandbox_runner(runtime: LuaRuntime, source: bytes, timeout: float, entity: Optional[str]) -> Any:
    try:
        loader = runtime.execute(_SANDBOX)
        return loader(source, timeout)
    except LuaError as exc:
        raise PayloadCaptureError(f"capture source does not load: {exc}", entity=entity) from exc


def _run_with_timeout(runner: Any, timeout: float, entity: Optional[str]) -> Any:
    outcome: Dict[str, Any] = {}

    def _run() -> None:
        try:
            outcome["value"] = runner()
        except LuaError as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_run, name="payload-capture", daemon=True)
    start = time.monotonic()
    thread.start()
    thread.join(timeout + JOIN_GRACE)
    if thread.is_alive():
        raise PayloadCaptureError(f"decode routine still running after {timeout:g}s", entity=entity)
    if "error" in outcome:
        exc = outcome["error"]
        raise PayloadCaptureError(f"decode routine failed: {exc}", entity=entity) from exc
    LOG.debug("capture finished in %.3fs", time.monotonic() - start)
    return outcome.get("value")


def capture_payload(
    tree: ast.Chunk,
    routine_name: Optional[str] = None,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> PayloadTable:
    """Execute the decode routine of *tree* and return its converted result.

    The cut source runs in a restricted environment: ``io``, ``os`` and the
    other host-access globals raise when touched, and execution is aborted
    after *timeout* seconds.
    """

    source = prepare_capture_source(tree, routine_name)
    LOG.debug("executing %d characters of capture source", len(source))
    runtime = LuaRuntime(unpack_returned_tuples=True, register_eval=False, encoding=None)
    runner = _sandbox_runner(runtime, source.encode("latin-1"), timeout, routine_name)
    result = _run_with_timeout(runner, timeout, routine_name)
    if isinstance(result, tuple):
        result = result[0] if result else None
    if lua_type(result) != "table":
        raise PayloadCaptureError("decode routine did not return a table", entity=routine_name)
    payload = lua_to_python(result)
    LOG.info("captured payload with %d top-level entries", len(payload))
    return payload
