"""Opcode, operand and instruction model of the devirtualizer."""

from __future__ import annotations

from .instruction import InstructionLayout, VMInstruction
from .opcodes import LUA51_OPCODES, VMOp, VMOperand, decode_instruction, encode_instruction, instruction_format

__all__ = [
    "InstructionLayout",
    "LUA51_OPCODES",
    "VMInstruction",
    "VMOp",
    "VMOperand",
    "decode_instruction",
    "encode_instruction",
    "instruction_format",
]
