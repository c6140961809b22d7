"""Locate the chunk-deserialization routine and the layout of its result.

The obfuscated script carries a routine (``decode_chunk`` once renamed) that
reads the serialized program and returns a table holding four streams:
constants, instructions, child prototypes and debug line info.  The slot each
stream occupies is shuffled per build, so the indices are recovered from the
routine's shape:

* the routine is the function that calls itself (prototypes are decoded
  recursively),
* every stream is bound to a literal slot of the result table, either through
  ``chunk[N] = stream``, a ``{[N] = stream}`` constructor or by filling
  ``chunk[N][i]`` directly,
* each filling loop is then classified by what it stores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from . import lua_ast as ast
from .exceptions import MetadataResolutionError

LOG = logging.getLogger(__name__)

__all__ = [
    "DecodeChunkMetadata",
    "STREAM_FIELDS",
    "extract_decode_chunk_metadata",
    "find_decode_routine",
    "named_functions",
]

CONSTANTS = "constant_table_idx"
INSTRUCTIONS = "instruction_table_idx"
PROTOTYPES = "prototype_table_idx"
DEBUG = "debug_table_idx"

STREAM_FIELDS = (CONSTANTS, INSTRUCTIONS, PROTOTYPES, DEBUG)


@dataclass(frozen=True)
class DecodeChunkMetadata:
    """Slots of the decoded chunk table holding each stream."""

    constant_table_idx: int
    instruction_table_idx: int
    prototype_table_idx: int
    debug_table_idx: int
    routine_name: str = "decode_chunk"

    def as_dict(self) -> Dict[str, object]:
        return {
            CONSTANTS: self.constant_table_idx,
            INSTRUCTIONS: self.instruction_table_idx,
            PROTOTYPES: self.prototype_table_idx,
            DEBUG: self.debug_table_idx,
            "routine_name": self.routine_name,
        }


def named_functions(tree: object) -> List[Tuple[str, ast.Function]]:
    """Every function in *tree* that is bound to a name, in source order."""

    found: List[Tuple[str, ast.Function]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.LocalFunction):
            found.append((node.name, node.func))
        elif isinstance(node, ast.FunctionStmt):
            found.append((ast.render_expr(node.target), node.func))
        elif isinstance(node, (ast.LocalAssign, ast.Assign)):
            for target, value in zip(node.targets, node.values):
                if not isinstance(value, ast.Function):
                    continue
                if isinstance(target, str):
                    found.append((target, value))
                elif isinstance(target, ast.Name):
                    found.append((target.ident, value))
    return found


def _calls_itself(name: str, fn: ast.Function) -> bool:
    for call in ast.find_all(fn, ast.Call):
        if isinstance(call.func, ast.Name) and call.func.ident == name:
            return True
    return False


def find_decode_routine(tree: object, hint: str = "decode_chunk") -> Tuple[str, ast.Function]:
    """Return ``(name, function)`` of the chunk-deserialization routine."""

    functions = named_functions(tree)
    recursive = [(name, fn) for name, fn in functions if _calls_itself(name, fn)]
    if len(recursive) == 1:
        return recursive[0]
    for name, fn in recursive:
        if name == hint:
            return name, fn
    if recursive:
        LOG.warning(
            "%d recursive functions found, none named %s; using %s",
            len(recursive),
            hint,
            recursive[0][0],
        )
        return recursive[0]
    for name, fn in functions:
        if name == hint:
            LOG.debug("no recursive routine found, falling back to %s", hint)
            return name, fn
    raise MetadataResolutionError(STREAM_FIELDS, f"decode routine '{hint}' not found")


def _result_names(routine: ast.Function) -> Set[str]:
    ret = ast.trailing_return(routine)
    if ret is None or not ret.values:
        return set()
    value = ret.values[0]
    return {value.ident} if isinstance(value, ast.Name) else set()


def _constructor_bindings(table: ast.TableConstructor) -> Dict[str, int]:
    bindings: Dict[str, int] = {}
    position = 0
    for item in table.fields:
        if item.key is None:
            position += 1
            slot: Optional[float] = position
        else:
            slot = ast.number_value(item.key)
        if slot is not None and isinstance(item.value, ast.Name):
            bindings[item.value.ident] = int(slot)
    return bindings


def _stream_bindings(routine: ast.Function, results: Set[str]) -> Dict[str, int]:
    """Map local stream names to their slot in the result table."""

    bindings: Dict[str, int] = {}
    ret = ast.trailing_return(routine)
    if ret is not None and ret.values and isinstance(ret.values[0], ast.TableConstructor):
        bindings.update(_constructor_bindings(ret.values[0]))
    for node in ast.walk_scope(routine):
        if isinstance(node, ast.LocalAssign):
            for target, value in zip(node.targets, node.values):
                if target in results and isinstance(value, ast.TableConstructor):
                    bindings.update(_constructor_bindings(value))
        elif isinstance(node, ast.Assign):
            for target, value in zip(node.targets, node.values):
                if ast.symbol(target) not in results:
                    continue
                if isinstance(target, ast.Name) and isinstance(value, ast.TableConstructor):
                    bindings.update(_constructor_bindings(value))
                elif isinstance(target, ast.Index) and isinstance(target.table, ast.Name):
                    slot = ast.number_value(target.key)
                    if slot is not None and isinstance(value, ast.Name):
                        bindings[value.ident] = int(slot)
    return bindings


def _outer_loops(body: List[ast.Stmt]) -> Iterator[ast.Stmt]:
    for stmt in body:
        if isinstance(stmt, ast.LOOP_TYPES):
            yield stmt
        elif isinstance(stmt, ast.If):
            yield from _outer_loops(stmt.body)
            for clause in stmt.elseifs:
                yield from _outer_loops(clause.body)
            if stmt.orelse is not None:
                yield from _outer_loops(stmt.orelse)
        elif isinstance(stmt, ast.Do):
            yield from _outer_loops(stmt.body)


class _LoopClassifier:
    def __init__(self, routine_name: str, results: Set[str], bindings: Dict[str, int]) -> None:
        self.routine_name = routine_name
        self.results = results
        self.bindings = bindings

    def stream_slot(self, table: ast.Expr) -> Optional[int]:
        if isinstance(table, ast.Name):
            return self.bindings.get(table.ident)
        if (
            isinstance(table, ast.Index)
            and isinstance(table.table, ast.Name)
            and table.table.ident in self.results
        ):
            slot = ast.number_value(table.key)
            return int(slot) if slot is not None else None
        return None

    def stores(self, loop: ast.Stmt) -> Iterator[Tuple[int, Optional[ast.Expr]]]:
        for node in ast.walk_scope(loop):
            if not isinstance(node, ast.Assign):
                continue
            for position, target in enumerate(node.targets):
                if not isinstance(target, ast.Index):
                    continue
                slot = self.stream_slot(target.table)
                if slot is None:
                    continue
                value = node.values[position] if position < len(node.values) else None
                yield slot, value

    def classify(self, loop: ast.Stmt) -> List[Tuple[str, int]]:
        tables: Set[str] = set()
        for node in ast.walk_scope(loop):
            if isinstance(node, ast.LocalAssign):
                for target, value in zip(node.targets, node.values):
                    if isinstance(value, ast.TableConstructor):
                        tables.add(target)
        has_branch = any(isinstance(node, ast.If) for node in ast.walk_scope(loop))

        found: List[Tuple[str, int]] = []
        for slot, value in self.stores(loop):
            if isinstance(value, ast.Call) and ast.symbol(value.func) == self.routine_name:
                kind = PROTOTYPES
            elif isinstance(value, ast.TableConstructor) or (
                isinstance(value, ast.Name) and value.ident in tables
            ):
                kind = INSTRUCTIONS
            elif has_branch:
                kind = CONSTANTS
            else:
                kind = DEBUG
            found.append((kind, slot))
        return found


def extract_decode_chunk_metadata(tree: object, hint: str = "decode_chunk") -> DecodeChunkMetadata:
    """Resolve the four stream slots of the decode routine's result."""

    name, routine = find_decode_routine(tree, hint)
    results = _result_names(routine)
    bindings = _stream_bindings(routine, results)
    LOG.debug("decode routine %s: result %s, stream bindings %s", name, sorted(results), bindings)

    classifier = _LoopClassifier(name, results, bindings)
    resolved: Dict[str, int] = {}
    for loop in _outer_loops(routine.body):
        for kind, slot in classifier.classify(loop):
            if kind in resolved or slot in resolved.values():
                if resolved.get(kind) != slot:
                    LOG.debug("ignoring %s store into slot %d", kind, slot)
                continue
            resolved[kind] = slot

    missing = [field_name for field_name in STREAM_FIELDS if field_name not in resolved]
    if missing:
        raise MetadataResolutionError(missing)
    metadata = DecodeChunkMetadata(routine_name=name, **resolved)
    LOG.info(
        "decode_chunk metadata: constants=%d instructions=%d prototypes=%d debug=%d",
        metadata.constant_table_idx,
        metadata.instruction_table_idx,
        metadata.prototype_table_idx,
        metadata.debug_table_idx,
    )
    return metadata
