"""Discovery of the VM's handler table, dispatch table and instruction layout."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import lua_ast as ast
from .config import DEFAULT_CONFIG, DevirtualizerConfig
from .exceptions import VMStructureError
from .vm.instruction import InstructionLayout
from .vm.opcodes import MAXARG_SBX, VMOp, VMOperand

LOG = logging.getLogger(__name__)

__all__ = [
    "DispatchTable",
    "HandlerTable",
    "OperandBinding",
    "VMStructure",
    "discover_structure",
    "find_dispatch_table",
    "find_handler_table",
    "find_opcode_field",
    "infer_layout",
    "operand_bindings",
    "raw_bindings",
]

OPERAND_LOCALS = 5

_ARITHMETIC = frozenset({VMOp.ADD, VMOp.SUB, VMOp.MUL, VMOp.DIV, VMOp.MOD, VMOp.POW})
_COMPARISON = frozenset({VMOp.EQ, VMOp.LT, VMOp.LTE})


@dataclass(frozen=True)
class HandlerTable:
    name: Optional[str]
    handlers: Mapping[int, ast.Function]


@dataclass(frozen=True)
class DispatchTable:
    """Opcode id to handler index.  ``direct`` when handlers are keyed by opcode id."""

    name: Optional[str]
    entries: Mapping[int, int]
    direct: bool = False


@dataclass(frozen=True)
class VMStructure:
    handler_table: HandlerTable
    dispatch_table: DispatchTable
    opcode_field: Optional[int]


@dataclass(frozen=True)
class OperandBinding:
    """``local name = instr[index]`` (or ``instr[index] - bias``)."""

    name: str
    index: Optional[int]
    bias: Optional[int] = None
    signed: bool = False


def _bound_names(node: object) -> Iterable[Tuple[Optional[str], ast.Expr]]:
    if isinstance(node, ast.LocalAssign):
        yield from zip(node.targets, node.values)
    elif isinstance(node, ast.Assign):
        for target, value in zip(node.targets, node.values):
            yield (target.ident if isinstance(target, ast.Name) else None), value


def _integral(expr: object) -> Optional[int]:
    value = ast.number_value(expr)
    if value is None or value != int(value):
        return None
    return int(value)


def find_handler_table(tree: object) -> HandlerTable:
    """Return the largest numerically keyed table of functions."""

    candidates: List[HandlerTable] = []
    assigned: Dict[str, Dict[int, ast.Function]] = {}
    for node in ast.walk(tree):
        for name, value in _bound_names(node):
            if not isinstance(value, ast.TableConstructor) or not value.fields:
                continue
            handlers: Dict[int, ast.Function] = {}
            position = 0
            for item in value.fields:
                if not isinstance(item.value, ast.Function):
                    break
                if item.key is None:
                    position += 1
                    key: Optional[int] = position
                else:
                    key = _integral(item.key)
                if key is None:
                    break
                handlers[key] = item.value
            else:
                candidates.append(HandlerTable(name, MappingProxyType(handlers)))
        if isinstance(node, ast.Assign):
            for target, value in zip(node.targets, node.values):
                if (
                    isinstance(value, ast.Function)
                    and isinstance(target, ast.Index)
                    and isinstance(target.table, ast.Name)
                ):
                    key = _integral(target.key)
                    if key is not None:
                        assigned.setdefault(target.table.ident, {})[key] = value
    for name, handlers in assigned.items():
        candidates.append(HandlerTable(name, MappingProxyType(handlers)))
    if not candidates:
        raise VMStructureError("no handler table found", entity="handlers")
    best = max(candidates, key=lambda table: len(table.handlers))
    LOG.debug("handler table %s with %d handlers", best.name, len(best.handlers))
    return best


def _handler_reference(expr: object, handler_name: Optional[str]) -> Optional[int]:
    if (
        handler_name is not None
        and isinstance(expr, ast.Index)
        and isinstance(expr.table, ast.Name)
        and expr.table.ident == handler_name
    ):
        return _integral(expr.key)
    return None


def find_dispatch_table(tree: object, handler_table: HandlerTable) -> DispatchTable:
    """Return the table mapping opcode ids to handler-table entries."""

    handler_name = handler_table.name
    candidates: List[DispatchTable] = []
    assigned: Dict[str, Dict[int, int]] = {}
    for node in ast.walk(tree):
        for name, value in _bound_names(node):
            if not isinstance(value, ast.TableConstructor) or not value.fields:
                continue
            entries: Dict[int, int] = {}
            for item in value.fields:
                opcode_id = _integral(item.key) if item.key is not None else None
                handler_index = _handler_reference(item.value, handler_name)
                if opcode_id is None or handler_index is None:
                    break
                entries[opcode_id] = handler_index
            else:
                candidates.append(DispatchTable(name, MappingProxyType(entries)))
        if isinstance(node, ast.Assign):
            for target, value in zip(node.targets, node.values):
                handler_index = _handler_reference(value, handler_name)
                if (
                    handler_index is not None
                    and isinstance(target, ast.Index)
                    and isinstance(target.table, ast.Name)
                ):
                    opcode_id = _integral(target.key)
                    if opcode_id is not None:
                        assigned.setdefault(target.table.ident, {})[opcode_id] = handler_index
    for name, entries in assigned.items():
        candidates.append(DispatchTable(name, MappingProxyType(entries)))
    if candidates:
        best = max(candidates, key=lambda table: len(table.entries))
        LOG.debug("dispatch table %s with %d entries", best.name, len(best.entries))
        return best
    LOG.debug("no separate dispatch table; handlers are keyed by opcode id")
    identity = {key: key for key in handler_table.handlers}
    return DispatchTable(handler_name, MappingProxyType(identity), direct=True)


def find_opcode_field(tree: object, dispatch_name: Optional[str]) -> Optional[int]:
    """Record index read at the dispatch site ``D[instr[K]](...)``."""

    if dispatch_name is None:
        return None
    fields: Dict[str, int] = {}
    for node in ast.walk(tree):
        for name, value in _bound_names(node):
            if name is not None and isinstance(value, ast.Index):
                key = _integral(value.key)
                if key is not None:
                    fields.setdefault(name, key)
    for call in ast.find_all(tree, ast.Call):
        func = call.func
        if not (
            isinstance(func, ast.Index)
            and isinstance(func.table, ast.Name)
            and func.table.ident == dispatch_name
        ):
            continue
        key = func.key
        if isinstance(key, ast.Index):
            index = _integral(key.key)
            if index is not None:
                return index
        elif isinstance(key, ast.Name) and key.ident in fields:
            return fields[key.ident]
    return None


def raw_bindings(fn: ast.Function) -> List[OperandBinding]:
    """The first five ``local x = instr[K]`` statements of a handler."""

    bindings: List[OperandBinding] = []
    for stmt in ast.statements(fn):
        if len(bindings) == OPERAND_LOCALS:
            break
        if not isinstance(stmt, ast.LocalAssign) or not stmt.targets or not stmt.values:
            continue
        name, value = stmt.targets[0], stmt.values[0]
        if isinstance(value, ast.BinOp):
            index = _integral(value.left.key) if isinstance(value.left, ast.Index) else None
            bias = _integral(value.right) if value.op == "-" else None
            bindings.append(OperandBinding(name, index, bias, signed=True))
        elif isinstance(value, ast.Index):
            bindings.append(OperandBinding(name, _integral(value.key)))
        else:
            bindings.append(OperandBinding(name, None))
    return bindings


def operand_bindings(fn: ast.Function, layout: InstructionLayout) -> Dict[str, VMOperand]:
    """Map the handler's operand locals to the operands they hold."""

    mapping: Dict[str, VMOperand] = {}
    for binding in raw_bindings(fn):
        if binding.signed:
            mapping[binding.name] = VMOperand.sBx
        elif binding.index is not None:
            operand = layout.operand_for_index(binding.index)
            if operand is not None:
                mapping[binding.name] = operand
            else:
                LOG.debug("unknown operand index %s for %s", binding.index, binding.name)
    return mapping


def _key_name(expr: object) -> Optional[str]:
    """First plain name inside the key of ``t[key]``."""

    if not isinstance(expr, ast.Index):
        return None
    if isinstance(expr.key, ast.Name):
        return expr.key.ident
    for node in ast.walk(expr.key):
        if isinstance(node, ast.Name):
            return node.ident
    return None


class _LayoutEvidence:
    def __init__(self) -> None:
        self.fields: Dict[str, int] = {}

    def add(self, field_name: str, local: Optional[str], bindings: Mapping[str, OperandBinding]) -> None:
        binding = bindings.get(local) if local is not None else None
        if binding is None or binding.signed or binding.index is None:
            return
        previous = self.fields.setdefault(field_name, binding.index)
        if previous != binding.index:
            LOG.debug("conflicting evidence for field %s: %d vs %d", field_name, previous, binding.index)


def _load_pattern_names(fn: ast.Function) -> List[Optional[str]]:
    names: List[Optional[str]] = []
    for stmt in ast.statements(fn):
        if isinstance(stmt, ast.If) and isinstance(stmt.test, ast.BinOp) and stmt.test.op == ">":
            left = stmt.test.left
            names.append(left.ident if isinstance(left, ast.Name) else None)
    return names


def _final_assign(fn: ast.Function) -> Optional[ast.Assign]:
    for stmt in reversed(ast.statements(fn)):
        if isinstance(stmt, ast.Assign):
            return stmt
    return None


def infer_layout(
    structure: VMStructure,
    identified: Mapping[int, VMOp],
    config: DevirtualizerConfig = DEFAULT_CONFIG,
) -> InstructionLayout:
    """Derive record indices from identified handlers.

    *identified* maps handler index to its operation.  An explicit layout in
    *config* wins outright.
    """

    if config.layout is not None:
        return config.layout

    evidence = _LayoutEvidence()
    sbx: Optional[OperandBinding] = None
    for handler_index, op in sorted(identified.items()):
        fn = structure.handler_table.handlers.get(handler_index)
        if fn is None:
            continue
        bound = raw_bindings(fn)
        bindings = {binding.name: binding for binding in bound}
        if sbx is None:
            sbx = next((b for b in bound if b.signed and b.index is not None), None)
        assign = _final_assign(fn)
        target = assign.targets[0] if assign is not None else None
        value = assign.values[0] if assign is not None and assign.values else None
        if op == VMOp.MOVE:
            evidence.add("a", _key_name(target), bindings)
            evidence.add("b", _key_name(value), bindings)
        elif op == VMOp.LOADK:
            evidence.add("a", _key_name(target), bindings)
            evidence.add("bx", _key_name(value), bindings)
        elif op in _ARITHMETIC or op in _COMPARISON:
            loads = _load_pattern_names(fn)
            if len(loads) >= 2:
                evidence.add("b", loads[0], bindings)
                evidence.add("c", loads[1], bindings)
            if op in _ARITHMETIC:
                evidence.add("a", _key_name(target), bindings)

    fields = dict(evidence.fields)
    if structure.opcode_field is not None:
        fields["opcode"] = structure.opcode_field
    required = ("opcode", "a", "b", "c", "bx")
    missing = [name for name in required if name not in fields]
    if missing:
        raise VMStructureError(
            "cannot infer instruction layout; provide one in the configuration",
            entity="missing fields " + ", ".join(missing),
        )

    sbx_index: Optional[int] = None
    bias = MAXARG_SBX
    if sbx is not None:
        if sbx.bias is not None:
            bias = sbx.bias
        if sbx.index != fields["bx"]:
            sbx_index = sbx.index
    layout = InstructionLayout(
        opcode=fields["opcode"],
        a=fields["a"],
        b=fields["b"],
        c=fields["c"],
        bx=fields["bx"],
        sbx=sbx_index,
        sbx_bias=bias,
    )
    LOG.info("instruction layout: %s", layout)
    return layout


def discover_structure(tree: object) -> VMStructure:
    handler_table = find_handler_table(tree)
    dispatch_table = find_dispatch_table(tree, handler_table)
    opcode_field = find_opcode_field(tree, dispatch_table.name)
    if opcode_field is None:
        LOG.debug("dispatch site not found for %s", dispatch_table.name)
    return VMStructure(handler_table, dispatch_table, opcode_field)
