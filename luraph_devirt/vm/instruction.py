"""Decoded VM instruction values and the record layout they are read from."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional, Union

from ..payload import PayloadTable, lua_index
from .opcodes import MAXARG_SBX, VMOp, VMOperand

Numeric = Union[int, float]

__all__ = ["InstructionLayout", "Numeric", "VMInstruction"]

_OPERAND_ATTRS: Dict[VMOperand, str] = {
    VMOperand.A: "a",
    VMOperand.B: "b",
    VMOperand.C: "c",
    VMOperand.Bx: "bx",
    VMOperand.sBx: "sbx",
}


@dataclass(frozen=True)
class VMInstruction:
    """One decoded instruction.

    ``opcode`` stays ``None`` until the instruction's handler is identified;
    ``opcode_num`` is the obfuscator's internal opcode id.  Instances are
    immutable, rewrites produce new values through :meth:`with_operand` and
    :meth:`with_opcode`.
    """

    opcode: Optional[VMOp]
    opcode_num: int
    a: Numeric = 0
    b: Numeric = 0
    c: Numeric = 0
    bx: Numeric = 0
    sbx: Numeric = 0
    line: int = 0

    def value(self, operand: VMOperand) -> Numeric:
        return getattr(self, _OPERAND_ATTRS[operand])

    def with_operand(self, operand: VMOperand, value: Numeric) -> "VMInstruction":
        return replace(self, **{_OPERAND_ATTRS[operand]: value})

    def with_opcode(self, opcode: Optional[VMOp], opcode_num: Optional[int] = None) -> "VMInstruction":
        if opcode_num is None:
            opcode_num = self.opcode_num
        return replace(self, opcode=opcode, opcode_num=opcode_num)

    def describe(self) -> str:
        name = self.opcode.value if self.opcode is not None else f"?{self.opcode_num}"
        return f"{name} A={self.a} B={self.b} C={self.c} Bx={self.bx} sBx={self.sbx}"


@dataclass(frozen=True)
class InstructionLayout:
    """Record indices of the opcode and operand fields in an encoded instruction.

    ``sbx`` is optional: when the obfuscator does not store a separate signed
    field the value is derived from ``bx`` minus ``sbx_bias``.
    """

    opcode: int
    a: int
    b: int
    c: int
    bx: int
    sbx: Optional[int] = None
    sbx_bias: int = MAXARG_SBX

    def field_index(self, operand: VMOperand) -> Optional[int]:
        return getattr(self, _OPERAND_ATTRS[operand])

    def operand_for_index(self, index: Numeric) -> Optional[VMOperand]:
        """Return the operand stored at record *index* (``Bx`` before ``sBx``)."""

        for operand in (VMOperand.A, VMOperand.B, VMOperand.C, VMOperand.Bx, VMOperand.sBx):
            if self.field_index(operand) == index:
                return operand
        return None

    def decode(self, record: PayloadTable) -> VMInstruction:
        def read(index: Optional[int]) -> Numeric:
            if index is None:
                return 0
            value = lua_index(record, index, 0)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return 0
            return value

        raw_opcode = lua_index(record, self.opcode)
        if isinstance(raw_opcode, bool) or not isinstance(raw_opcode, (int, float)):
            raise ValueError(f"instruction record has no numeric opcode at index {self.opcode}")
        bx = read(self.bx)
        if self.sbx is not None:
            sbx = read(self.sbx) - self.sbx_bias
        else:
            sbx = bx - self.sbx_bias
        return VMInstruction(
            opcode=None,
            opcode_num=int(raw_opcode),
            a=read(self.a),
            b=read(self.b),
            c=read(self.c),
            bx=bx,
            sbx=sbx,
        )
