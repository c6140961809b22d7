"""Signatures for single-assignment handlers (MOVE, LOADK, GETGLOBAL ...)."""

from __future__ import annotations

from typing import FrozenSet, Optional

from .. import lua_ast as ast
from ..vm.opcodes import VMOp, VMOperand
from .base import BaseHandlerSignature, final_assign, function_has_loops

__all__ = [
    "SimpleAssignHandlerSignature",
    "VAR_TO_VAR",
    "STACK_FROM_CONSTANTS",
    "STACK_FROM_ENVIRONMENT",
    "STACK_FROM_UPVALUES",
    "TABLE_CONSTRUCT",
    "UNARY_OP",
]

VAR_TO_VAR = "VAR_TO_VAR"
STACK_FROM_CONSTANTS = "STACK_FROM_CONSTANTS"
STACK_FROM_ENVIRONMENT = "STACK_FROM_ENVIRONMENT"
STACK_FROM_UPVALUES = "STACK_FROM_UPVALUES"
TABLE_CONSTRUCT = "TABLE_CONSTRUCT"
UNARY_OP = "UNARY_OP"

_PATTERNS = (
    VAR_TO_VAR,
    STACK_FROM_CONSTANTS,
    STACK_FROM_ENVIRONMENT,
    STACK_FROM_UPVALUES,
    TABLE_CONSTRUCT,
    UNARY_OP,
)

MIN_STATEMENTS = 4
MAX_STATEMENTS = 8


class SimpleAssignHandlerSignature(BaseHandlerSignature):
    """Short loop-free handler ending in one ``stack[a] = ...`` assignment.

    ``unary_operator`` narrows :data:`UNARY_OP` to one operator so UNM, NOT
    and LEN do not shadow each other.
    """

    category = "simple_assign"
    default_priority = 200

    __slots__ = ("_pattern", "_unary_operator")

    def __init__(
        self,
        opcode: VMOp,
        pattern: str,
        description: str,
        *,
        unary_operator: Optional[str] = None,
        **kwargs,
    ) -> None:
        if pattern not in _PATTERNS:
            raise ValueError(f"unknown assignment pattern {pattern!r}")
        super().__init__(opcode, description, **kwargs)
        self._pattern = pattern
        self._unary_operator = unary_operator

    @property
    def pattern(self) -> str:
        return self._pattern

    def matches(self, fn: ast.Function) -> bool:
        stmts = ast.statements(fn)
        if not MIN_STATEMENTS <= len(stmts) <= MAX_STATEMENTS:
            return False
        if function_has_loops(fn):
            return False
        assign = final_assign(stmts)
        return assign is not None and self._matches_assignment(assign)

    def _matches_assignment(self, assign: ast.Assign) -> bool:
        config = self.config
        if self._pattern == VAR_TO_VAR:
            return self.assigns_from(assign, config.stack_name)
        if self._pattern == STACK_FROM_CONSTANTS:
            return self.assigns_from(assign, config.constants_name)
        if self._pattern == STACK_FROM_ENVIRONMENT:
            return self.assigns_from(assign, config.environment_name)
        if self._pattern == STACK_FROM_UPVALUES:
            return self.assigns_from(assign, config.upvalues_name)
        if not self.is_stack_assign(assign):
            return False
        value = assign.values[0]
        if self._pattern == TABLE_CONSTRUCT:
            return isinstance(value, ast.TableConstructor)
        if not isinstance(value, ast.UnOp):
            return False
        return self._unary_operator is None or value.op == self._unary_operator

    def analyze(self, fn: ast.Function) -> str:
        report = self.header(fn, "Simple Assign")
        report += f"Pattern type: {self._pattern}"
        if self._unary_operator is not None:
            report += f" ({self._unary_operator!r})"
        report += "\n"
        assign = final_assign(ast.statements(fn))
        if assign is not None:
            report += f"Final statement: {ast.to_source(assign)}\n"
        return report

    def stack_operands(self) -> FrozenSet[VMOperand]:
        if self._pattern == VAR_TO_VAR:
            return frozenset({VMOperand.A, VMOperand.B})
        return frozenset({VMOperand.A})

    @property
    def has_loops(self) -> bool:
        return False

    @property
    def has_conditionals(self) -> bool:
        return False

    @property
    def arithmetic_operator(self) -> Optional[str]:
        return None
