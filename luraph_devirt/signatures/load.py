"""Signatures for load-style handlers (LOADBOOL, LOADNIL, SETLIST)."""

from __future__ import annotations

from typing import FrozenSet, Optional

from .. import lua_ast as ast
from ..vm.opcodes import VMOp, VMOperand
from .base import BaseHandlerSignature, is_single_assign

__all__ = ["LoadHandlerSignature", "LOADBOOL", "LOADNIL", "SETLIST"]

LOADBOOL = "LOADBOOL"
LOADNIL = "LOADNIL"
SETLIST = "SETLIST"

_LOAD_TYPES = (LOADBOOL, LOADNIL, SETLIST)


class LoadHandlerSignature(BaseHandlerSignature):
    category = "load"
    default_priority = 300

    __slots__ = ("_load_type",)

    def __init__(self, opcode: VMOp, load_type: str, description: str, **kwargs) -> None:
        if load_type not in _LOAD_TYPES:
            raise ValueError(f"unknown load type {load_type!r}")
        super().__init__(opcode, description, **kwargs)
        self._load_type = load_type

    @property
    def load_type(self) -> str:
        return self._load_type

    def matches(self, fn: ast.Function) -> bool:
        if self._load_type == LOADBOOL:
            return self._matches_loadbool(fn)
        if self._load_type == LOADNIL:
            return self._matches_loadnil(fn)
        return self._matches_setlist(fn)

    def _matches_loadbool(self, fn: ast.Function) -> bool:
        # stack[a] = b ~= 0; if c ~= 0 then pc = pc + 1 end
        stmts = ast.statements(fn)
        if len(stmts) != 7:
            return False
        assign, branch = stmts[5], stmts[6]
        if not is_single_assign(assign) or not isinstance(branch, ast.If):
            return False
        value = assign.values[0]
        if not isinstance(value, ast.BinOp) or value.op != "~=":
            return False
        if branch.elseifs or branch.orelse is not None:
            return False
        return isinstance(branch.test, ast.BinOp) and branch.test.op == "~="

    def _matches_loadnil(self, fn: ast.Function) -> bool:
        # for i = a, b do stack[i] = nil end
        stmts = ast.statements(fn)
        if len(stmts) != 6:
            return False
        loop = stmts[5]
        if not isinstance(loop, ast.NumericFor) or loop.step is not None:
            return False
        if len(loop.body) != 1 or not self.is_stack_assign(loop.body[0]):
            return False
        return isinstance(loop.body[0].values[0], ast.Nil)

    def _matches_setlist(self, fn: ast.Function) -> bool:
        # local offset = (c - 1) * 50
        stmts = ast.statements(fn)
        if len(stmts) != 8:
            return False
        decl = stmts[5]
        if not isinstance(decl, ast.LocalAssign) or len(decl.values) != 1:
            return False
        value = decl.values[0]
        if not isinstance(value, ast.BinOp) or value.op != "*":
            return False
        return isinstance(value.right, ast.Number) and value.right.value == self.config.setlist_batch

    def analyze(self, fn: ast.Function) -> str:
        report = self.header(fn, "Load")
        report += f"Load type: {self._load_type}\n"
        stmts = ast.statements(fn)
        if stmts:
            report += f"Final statement type: {type(stmts[-1]).__name__}\n"
        return report

    def stack_operands(self) -> FrozenSet[VMOperand]:
        return frozenset({VMOperand.A, VMOperand.B, VMOperand.C})

    @property
    def has_loops(self) -> bool:
        return self._load_type == LOADNIL

    @property
    def has_conditionals(self) -> bool:
        return self._load_type == LOADBOOL

    @property
    def arithmetic_operator(self) -> Optional[str]:
        return "*" if self._load_type == SETLIST else None
