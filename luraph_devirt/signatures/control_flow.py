"""Signatures for control-flow handlers.

Each control-flow operation has its own independent shape test; they share
nothing beyond the structural helpers, so the tests live in a dispatch table
keyed by the flow type.
"""

from __future__ import annotations

from typing import Callable, Dict, FrozenSet, Optional

from .. import lua_ast as ast
from ..vm.opcodes import VMOp, VMOperand
from .base import BaseHandlerSignature, is_single_assign

__all__ = ["ControlFlowHandlerSignature", "CONTROL_FLOW_TYPES"]

JUMP = "JUMP"
CALL = "CALL"
TAILCALL = "TAILCALL"
RETURN = "RETURN"
FORLOOP = "FORLOOP"
FORPREP = "FORPREP"
TFORLOOP = "TFORLOOP"
CLOSE = "CLOSE"
CLOSURE = "CLOSURE"
VARARG = "VARARG"

CONTROL_FLOW_TYPES = (JUMP, CALL, TAILCALL, RETURN, FORLOOP, FORPREP, TFORLOOP, CLOSE, CLOSURE, VARARG)

_OPERANDS: Dict[str, FrozenSet[VMOperand]] = {
    JUMP: frozenset({VMOperand.sBx}),
    CALL: frozenset({VMOperand.A, VMOperand.B, VMOperand.C}),
    TAILCALL: frozenset({VMOperand.A, VMOperand.B, VMOperand.C}),
    RETURN: frozenset({VMOperand.A, VMOperand.B}),
    FORLOOP: frozenset({VMOperand.A, VMOperand.B, VMOperand.C}),
    FORPREP: frozenset({VMOperand.A, VMOperand.B, VMOperand.C}),
    TFORLOOP: frozenset({VMOperand.A, VMOperand.B, VMOperand.C}),
    CLOSE: frozenset({VMOperand.A}),
    CLOSURE: frozenset({VMOperand.A}),
    VARARG: frozenset({VMOperand.A}),
}


def _first_call_name(node: object) -> Optional[str]:
    call = ast.find_first(node, ast.Call)
    return ast.symbol(call.func) if call is not None else None


def _count_guards_not_one(fn: ast.Function) -> int:
    """Number of ``if x ~= 1 then`` guards."""

    count = 0
    for stmt in ast.find_all(fn, ast.If):
        test = stmt.test
        if isinstance(test, ast.BinOp) and test.op == "~=" and ast.number_value(test.right) == 1:
            count += 1
    return count


class ControlFlowHandlerSignature(BaseHandlerSignature):
    category = "control_flow"
    default_priority = 500

    __slots__ = ("_flow_type",)

    def __init__(self, opcode: VMOp, flow_type: str, description: str, **kwargs) -> None:
        if flow_type not in CONTROL_FLOW_TYPES:
            raise ValueError(f"unknown control flow type {flow_type!r}")
        super().__init__(opcode, description, **kwargs)
        self._flow_type = flow_type

    @property
    def flow_type(self) -> str:
        return self._flow_type

    def matches(self, fn: ast.Function) -> bool:
        tests: Dict[str, Callable[[ast.Function], bool]] = {
            JUMP: self._matches_jump,
            CALL: self._matches_call,
            TAILCALL: self._matches_tailcall,
            RETURN: self._matches_return,
            FORLOOP: self._matches_forloop,
            FORPREP: self._matches_forprep,
            TFORLOOP: self._matches_tforloop,
            CLOSE: self._matches_close,
            CLOSURE: self._matches_closure,
            VARARG: self._matches_vararg,
        }
        return tests[self._flow_type](fn)

    def _matches_jump(self, fn: ast.Function) -> bool:
        # pc = pc + sbx
        stmts = ast.statements(fn)
        if len(stmts) != 6 or not is_single_assign(stmts[5]):
            return False
        value = stmts[5].values[0]
        return isinstance(value, ast.BinOp) and value.op == "+"

    def _calls_handle_return(self, fn: ast.Function) -> bool:
        first_if = ast.find_first(fn, ast.If)
        if first_if is None:
            return False
        return _first_call_name(first_if) == self.config.handle_return_name

    def _matches_call(self, fn: ast.Function) -> bool:
        if self._calls_handle_return(fn):
            return ast.trailing_return(fn) is None
        return _count_guards_not_one(fn) == 2

    def _matches_tailcall(self, fn: ast.Function) -> bool:
        if self._calls_handle_return(fn):
            return ast.trailing_return(fn) is not None
        return _count_guards_not_one(fn) == 1

    def _matches_return(self, fn: ast.Function) -> bool:
        return ast.trailing_return(fn) is not None

    def _matches_forloop(self, fn: ast.Function) -> bool:
        stmts = ast.statements(fn)
        if len(stmts) != 9 or not isinstance(stmts[8], ast.If):
            return False
        branch = stmts[8]
        return branch.orelse is None and len(branch.elseifs) <= 1

    def _matches_forprep(self, fn: ast.Function) -> bool:
        return _first_call_name(fn) == self.config.assert_name

    def _matches_tforloop(self, fn: ast.Function) -> bool:
        for node in ast.find_all(fn, ast.BinOp):
            if node.op == "~=" and isinstance(node.right, ast.Nil):
                return True
        return False

    def _matches_close(self, fn: ast.Function) -> bool:
        loop = ast.find_first(fn, ast.NumericFor)
        if loop is None:
            return False
        inner = ast.find_first(loop, ast.GenericFor)
        if inner is None or not inner.iterables:
            return False
        return ast.symbol(inner.iterables[0]) == self.config.next_name

    def _matches_closure(self, fn: ast.Function) -> bool:
        return _first_call_name(fn) == self.config.setmetatable_name

    def _matches_vararg(self, fn: ast.Function) -> bool:
        return self.config.vararg_marker in ast.to_source(fn)

    def analyze(self, fn: ast.Function) -> str:
        report = self.header(fn, "Control Flow")
        report += f"Control flow type: {self._flow_type}\n"
        report += f"Function calls: {len(ast.find_all(fn, ast.Call))}\n"
        report += f"Return statements: {len(ast.find_all(fn, ast.Return))}\n"
        report += f"Trailing return: {ast.trailing_return(fn) is not None}\n"
        return report

    def stack_operands(self) -> FrozenSet[VMOperand]:
        return _OPERANDS[self._flow_type]

    @property
    def has_loops(self) -> bool:
        return self._flow_type in (FORLOOP, TFORLOOP, CLOSE)

    @property
    def has_conditionals(self) -> bool:
        return self._flow_type in (CALL, TAILCALL, RETURN, FORLOOP)

    @property
    def arithmetic_operator(self) -> Optional[str]:
        return "+" if self._flow_type == JUMP else None
