"""Signatures for comparison handlers (EQ, LT, LTE)."""

from __future__ import annotations

from typing import FrozenSet, Optional

from .. import lua_ast as ast
from ..vm.opcodes import VMOp, VMOperand
from .base import BaseHandlerSignature, count_load_patterns, function_has_loops

__all__ = ["ComparisonHandlerSignature"]

MIN_STATEMENTS = 7
MAX_STATEMENTS = 12
EXPECTED_LOADS = 2


class ComparisonHandlerSignature(BaseHandlerSignature):
    """Two RK loads and a guarded skip ``if (lhs <cmp> rhs) ~= a then ... end``."""

    category = "comparison"
    default_priority = 400

    __slots__ = ("_operator", "_expected_ifs")

    def __init__(self, opcode: VMOp, operator: str, expected_ifs: int, description: str, **kwargs) -> None:
        super().__init__(opcode, description, **kwargs)
        self._operator = operator
        self._expected_ifs = expected_ifs

    @property
    def comparison_operator(self) -> str:
        return self._operator

    def matches(self, fn: ast.Function) -> bool:
        stmts = ast.statements(fn)
        if not MIN_STATEMENTS <= len(stmts) <= MAX_STATEMENTS:
            return False
        if function_has_loops(fn):
            return False
        conditionals = ast.find_all(fn, ast.If)
        if len(conditionals) != self._expected_ifs:
            return False
        if count_load_patterns(conditionals, self.config) != EXPECTED_LOADS:
            return False
        return self._is_comparison_guard(conditionals[-1])

    def _is_comparison_guard(self, stmt: ast.If) -> bool:
        test = stmt.test
        if not isinstance(test, ast.BinOp) or test.op != "~=":
            return False
        if not isinstance(test.right, (ast.Name, ast.Number)):
            return False
        return isinstance(test.left, ast.BinOp) and test.left.op == self._operator

    def analyze(self, fn: ast.Function) -> str:
        report = self.header(fn, "Comparison")
        conditionals = ast.find_all(fn, ast.If)
        report += f"If statements: {len(conditionals)} (expected: {self._expected_ifs})\n"
        loads = count_load_patterns(conditionals, self.config)
        report += f"Load constant patterns: {loads}\n"
        if conditionals:
            guard = "yes" if self._is_comparison_guard(conditionals[-1]) else "no"
            report += f"Final guard uses '{self._operator}': {guard}\n"
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
        return None
