"""Signatures for binary arithmetic handlers (ADD, SUB, MUL, DIV, MOD, POW)."""

from __future__ import annotations

from typing import FrozenSet, Optional

from .. import lua_ast as ast
from ..vm.opcodes import VMOp, VMOperand
from .base import BaseHandlerSignature, count_load_patterns, final_assign, function_has_loops

__all__ = ["ArithmeticHandlerSignature"]

MIN_STATEMENTS = 6
MAX_STATEMENTS = 10
EXPECTED_LOADS = 2


class ArithmeticHandlerSignature(BaseHandlerSignature):
    """Two RK operand loads followed by ``stack[a] = lhs <op> rhs``."""

    category = "arithmetic"
    default_priority = 100

    __slots__ = ("_operator",)

    def __init__(self, opcode: VMOp, operator: str, description: str, **kwargs) -> None:
        super().__init__(opcode, description, **kwargs)
        self._operator = operator

    def matches(self, fn: ast.Function) -> bool:
        stmts = ast.statements(fn)
        if not MIN_STATEMENTS <= len(stmts) <= MAX_STATEMENTS:
            return False
        if function_has_loops(fn):
            return False
        if count_load_patterns(stmts, self.config) != EXPECTED_LOADS:
            return False
        assign = final_assign(stmts)
        if assign is None or not self.is_stack_assign(assign):
            return False
        value = assign.values[0]
        return isinstance(value, ast.BinOp) and value.op == self._operator

    def analyze(self, fn: ast.Function) -> str:
        stmts = ast.statements(fn)
        report = self.header(fn, "Arithmetic")
        loads = count_load_patterns(stmts, self.config)
        report += f"Expected {EXPECTED_LOADS} load constant patterns, found {loads}\n"
        assign = final_assign(stmts)
        if assign is not None and assign.values and isinstance(assign.values[0], ast.BinOp):
            report += f"Final operation: {assign.values[0].op} (expected: {self._operator})\n"
        return report

    def stack_operands(self) -> FrozenSet[VMOperand]:
        return frozenset({VMOperand.A, VMOperand.B, VMOperand.C})

    @property
    def has_loops(self) -> bool:
        return False

    @property
    def has_conditionals(self) -> bool:
        return True

    @property
    def arithmetic_operator(self) -> Optional[str]:
        return self._operator
