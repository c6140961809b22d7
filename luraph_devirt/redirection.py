"""Resolve redirection handlers.

Some handlers do no work of their own: depending on an operand value they
forward to another dispatch entry, ``if b == 3 then return D[17]({[3] = a}) end``.
An instruction dispatched to such a handler really executes the target
opcode, possibly with rewritten operands.  Only a single hop is followed; a
redirect whose target is itself a redirector is left as is.
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Tuple

from . import lua_ast as ast
from .exceptions import RedirectionError
from .vm.instruction import InstructionLayout, Numeric, VMInstruction
from .vm.opcodes import VMOperand
from .vm_layout import operand_bindings

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .devirtualizer import VMMappings

LOG = logging.getLogger(__name__)

__all__ = [
    "Redirect",
    "RedirectionOutcome",
    "find_redirects",
    "is_redirector",
    "resolve",
    "strip_redirects",
]

_ARITHMETIC: Dict[str, Callable[[Numeric, Numeric], Numeric]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
}


@dataclass(frozen=True)
class Redirect:
    """One ``if <test> then return D[target](...) end`` branch."""

    test: ast.Expr
    target: int
    call: ast.Call


@dataclass(frozen=True)
class RedirectionOutcome:
    instruction: VMInstruction
    redirected: bool = False
    warning: Optional[str] = None


def _redirect_target(stmt: ast.Stmt, dispatch_name: str) -> Optional[Tuple[int, ast.Call]]:
    """``return D[N](...)`` or ``return D(x[N], ...)``."""

    if not isinstance(stmt, ast.Return) or not stmt.values:
        return None
    call = stmt.values[0]
    if not isinstance(call, ast.Call):
        return None
    func = call.func
    if isinstance(func, ast.Index) and isinstance(func.table, ast.Name) and func.table.ident == dispatch_name:
        target = ast.number_value(func.key)
    elif isinstance(func, ast.Name) and func.ident == dispatch_name and call.args:
        first = call.args[0]
        target = ast.number_value(first.key) if isinstance(first, ast.Index) else None
    else:
        return None
    if target is None:
        return None
    return int(target), call


def _branches(stmt: ast.If) -> Iterator[Tuple[ast.Expr, List[ast.Stmt]]]:
    yield stmt.test, stmt.body
    for clause in stmt.elseifs:
        yield clause.test, clause.body


def find_redirects(fn: ast.Function, dispatch_name: Optional[str]) -> List[Redirect]:
    if dispatch_name is None:
        return []
    redirects: List[Redirect] = []
    for stmt in ast.find_all(fn, ast.If):
        for test, body in _branches(stmt):
            if not body:
                continue
            found = _redirect_target(body[-1], dispatch_name)
            if found is not None:
                redirects.append(Redirect(test, found[0], found[1]))
    return redirects


def is_redirector(fn: ast.Function, dispatch_name: Optional[str]) -> bool:
    return bool(find_redirects(fn, dispatch_name))


def strip_redirects(fn: ast.Function, dispatch_name: Optional[str]) -> ast.Function:
    """Copy of *fn* without its redirect branches, leaving the handler's own work.

    Only top-level conditionals are rewritten; an else block whose branches all
    redirected takes their place.
    """

    body: List[ast.Stmt] = []
    for stmt in fn.body:
        if not isinstance(stmt, ast.If) or dispatch_name is None:
            body.append(stmt)
            continue
        kept = [
            (test, block)
            for test, block in _branches(stmt)
            if not block or _redirect_target(block[-1], dispatch_name) is None
        ]
        if len(kept) == 1 + len(stmt.elseifs):
            body.append(stmt)
        elif kept:
            elseifs = [ast.ElseIf(test, block) for test, block in kept[1:]]
            body.append(ast.If(kept[0][0], kept[0][1], elseifs, stmt.orelse))
        elif stmt.orelse:
            body.extend(stmt.orelse)
    return ast.Function(list(fn.params), body, fn.name, fn.is_vararg)


def _comparison(test: ast.Expr, bindings: Dict[str, VMOperand]) -> Tuple[VMOperand, Numeric]:
    if not isinstance(test, ast.BinOp) or test.op != "==":
        raise RedirectionError(f"unsupported redirect test: {ast.render_expr(test)}")
    for name_side, literal_side in ((test.left, test.right), (test.right, test.left)):
        if isinstance(name_side, ast.Name):
            literal = ast.number_value(literal_side)
            if literal is None:
                continue
            operand = bindings.get(name_side.ident)
            if operand is None:
                raise RedirectionError(f"redirect test reads unbound local {name_side.ident}")
            return operand, literal
    raise RedirectionError(f"redirect test has no operand/literal pair: {ast.render_expr(test)}")


def _evaluate(expr: ast.Expr, instruction: VMInstruction, bindings: Dict[str, VMOperand]) -> Numeric:
    literal = ast.number_value(expr)
    if literal is not None:
        return literal
    if isinstance(expr, ast.Name):
        operand = bindings.get(expr.ident)
        if operand is None:
            raise RedirectionError(f"operand rewrite reads unbound local {expr.ident}")
        return instruction.value(operand)
    if isinstance(expr, ast.BinOp) and expr.op in _ARITHMETIC:
        left = _evaluate(expr.left, instruction, bindings)
        right = _evaluate(expr.right, instruction, bindings)
        return _ARITHMETIC[expr.op](left, right)
    raise RedirectionError(f"cannot evaluate operand rewrite {ast.render_expr(expr)}")


def _rewrites(
    call: ast.Call,
    instruction: VMInstruction,
    bindings: Dict[str, VMOperand],
    layout: InstructionLayout,
) -> VMInstruction:
    table = next((arg for arg in call.args if isinstance(arg, ast.TableConstructor)), None)
    if table is None:
        return instruction
    updated = instruction
    for item in table.fields:
        index = ast.number_value(item.key) if item.key is not None else None
        if index is None:
            raise RedirectionError("operand rewrite table needs numeric field keys")
        operand = layout.operand_for_index(index)
        if operand is None:
            raise RedirectionError(f"operand rewrite targets unknown field {index}")
        updated = updated.with_operand(operand, _evaluate(item.value, instruction, bindings))
    return updated


def _apply(
    instruction: VMInstruction,
    handler: ast.Function,
    dispatch_name: Optional[str],
    layout: InstructionLayout,
) -> Optional[VMInstruction]:
    redirects = find_redirects(handler, dispatch_name)
    if not redirects:
        return None
    bindings = operand_bindings(handler, layout)
    for redirect in redirects:
        operand, literal = _comparison(redirect.test, bindings)
        if instruction.value(operand) != literal:
            continue
        LOG.debug("redirecting opcode %d -> %d", instruction.opcode_num, redirect.target)
        updated = _rewrites(redirect.call, instruction, bindings, layout)
        return updated.with_opcode(None, redirect.target)
    return None


def resolve(
    instruction: VMInstruction,
    mappings: "VMMappings",
    layout: InstructionLayout,
    *,
    strict: bool = False,
) -> RedirectionOutcome:
    """Follow the redirection of *instruction*'s handler, if it has one.

    Malformed redirection shapes are reported through
    :attr:`RedirectionOutcome.warning` and leave the instruction unchanged,
    unless *strict* is set.
    """

    handler_index = mappings.opcode_dispatch.get(instruction.opcode_num)
    if handler_index is None:
        return RedirectionOutcome(instruction)
    handler = mappings.handlers.get(handler_index)
    if handler is None:
        return RedirectionOutcome(instruction)
    try:
        updated = _apply(instruction, handler, mappings.dispatch_name, layout)
    except RedirectionError as exc:
        if strict:
            raise
        message = f"opcode {instruction.opcode_num}: {exc}"
        LOG.warning("Failed to process redirection for %s", message)
        return RedirectionOutcome(instruction, warning=message)
    if updated is None:
        return RedirectionOutcome(instruction)
    if mappings.opcode_dispatch.get(updated.opcode_num) in mappings.redirectors:
        LOG.debug("chained redirection at opcode %d not followed", updated.opcode_num)
    opcode = mappings.opcode_to_vmop.get(updated.opcode_num)
    return RedirectionOutcome(updated.with_opcode(opcode), redirected=True)
