"""Canonical VM operations, operand fields and Lua 5.1 instruction encoding."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Mapping, Tuple

__all__ = [
    "BITRK",
    "MAXARG_A",
    "MAXARG_B",
    "MAXARG_BX",
    "MAXARG_SBX",
    "FORMAT_ABC",
    "FORMAT_ABX",
    "FORMAT_ASBX",
    "LUA51_OPCODES",
    "LUA51_NAMES",
    "VMOp",
    "VMOperand",
    "decode_instruction",
    "encode_instruction",
    "instruction_format",
]


class VMOp(str, Enum):
    """Canonical operations recovered from obfuscated handlers."""

    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    DIV = "DIV"
    MOD = "MOD"
    POW = "POW"
    MOVE = "MOVE"
    LOADK = "LOADK"
    GETGLOBAL = "GETGLOBAL"
    GETUPVAL = "GETUPVAL"
    NEWTABLE = "NEWTABLE"
    UNM = "UNM"
    NOT = "NOT"
    LEN = "LEN"
    LOADBOOL = "LOADBOOL"
    LOADNIL = "LOADNIL"
    SETLIST = "SETLIST"
    EQ = "EQ"
    LT = "LT"
    LTE = "LTE"
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


class VMOperand(str, Enum):
    """Instruction fields."""

    A = "A"
    B = "B"
    C = "C"
    Bx = "Bx"
    sBx = "sBx"


FORMAT_ABC = "iABC"
FORMAT_ABX = "iABx"
FORMAT_ASBX = "iAsBx"

# Numbering from lopcodes.h of Lua 5.1.
LUA51_OPCODES: Mapping[VMOp, int] = {
    VMOp.MOVE: 0,
    VMOp.LOADK: 1,
    VMOp.LOADBOOL: 2,
    VMOp.LOADNIL: 3,
    VMOp.GETUPVAL: 4,
    VMOp.GETGLOBAL: 5,
    VMOp.NEWTABLE: 10,
    VMOp.ADD: 12,
    VMOp.SUB: 13,
    VMOp.MUL: 14,
    VMOp.DIV: 15,
    VMOp.MOD: 16,
    VMOp.POW: 17,
    VMOp.UNM: 18,
    VMOp.NOT: 19,
    VMOp.LEN: 20,
    VMOp.JUMP: 22,
    VMOp.EQ: 23,
    VMOp.LT: 24,
    VMOp.LTE: 25,
    VMOp.CALL: 28,
    VMOp.TAILCALL: 29,
    VMOp.RETURN: 30,
    VMOp.FORLOOP: 31,
    VMOp.FORPREP: 32,
    VMOp.TFORLOOP: 33,
    VMOp.SETLIST: 34,
    VMOp.CLOSE: 35,
    VMOp.CLOSURE: 36,
    VMOp.VARARG: 37,
}

LUA51_NAMES: Mapping[int, VMOp] = {number: op for op, number in LUA51_OPCODES.items()}

_FORMATS: Dict[VMOp, str] = {
    VMOp.LOADK: FORMAT_ABX,
    VMOp.GETGLOBAL: FORMAT_ABX,
    VMOp.CLOSURE: FORMAT_ABX,
    VMOp.JUMP: FORMAT_ASBX,
    VMOp.FORLOOP: FORMAT_ASBX,
    VMOp.FORPREP: FORMAT_ASBX,
}

SIZE_OP = 6
SIZE_A = 8
SIZE_B = 9
SIZE_C = 9
SIZE_BX = SIZE_B + SIZE_C
POS_OP = 0
POS_A = POS_OP + SIZE_OP
POS_C = POS_A + SIZE_A
POS_B = POS_C + SIZE_C
POS_BX = POS_C

MAXARG_A = (1 << SIZE_A) - 1
MAXARG_B = (1 << SIZE_B) - 1
MAXARG_BX = (1 << SIZE_BX) - 1
MAXARG_SBX = MAXARG_BX >> 1
# B/C values at or above this refer to the constant pool (RK operands).
BITRK = 1 << (SIZE_B - 1)


def instruction_format(op: VMOp) -> str:
    return _FORMATS.get(op, FORMAT_ABC)


def _checked(value: object, maximum: int, field_name: str, op: VMOp) -> int:
    number = int(value)  # type: ignore[arg-type]
    if number < 0 or number > maximum:
        raise ValueError(f"{op.value}: operand {field_name}={number} out of range 0..{maximum}")
    return number


def encode_instruction(op: VMOp, a: float = 0, b: float = 0, c: float = 0, bx: float = 0, sbx: float = 0) -> int:
    """Pack an instruction into the 32-bit Lua 5.1 word."""

    word = LUA51_OPCODES[op] << POS_OP
    word |= _checked(a, MAXARG_A, "A", op) << POS_A
    fmt = instruction_format(op)
    if fmt == FORMAT_ABC:
        word |= _checked(b, MAXARG_B, "B", op) << POS_B
        word |= _checked(c, MAXARG_B, "C", op) << POS_C
    elif fmt == FORMAT_ABX:
        word |= _checked(bx, MAXARG_BX, "Bx", op) << POS_BX
    else:
        word |= _checked(int(sbx) + MAXARG_SBX, MAXARG_BX, "sBx", op) << POS_BX
    return word


def decode_instruction(word: int) -> Tuple[VMOp, Dict[str, int]]:
    """Unpack a 32-bit word into its opcode and operand fields."""

    number = (word >> POS_OP) & ((1 << SIZE_OP) - 1)
    try:
        op = LUA51_NAMES[number]
    except KeyError:
        raise ValueError(f"unsupported Lua 5.1 opcode {number}") from None
    fields = {"a": (word >> POS_A) & MAXARG_A}
    fmt = instruction_format(op)
    if fmt == FORMAT_ABC:
        fields["b"] = (word >> POS_B) & MAXARG_B
        fields["c"] = (word >> POS_C) & MAXARG_B
    elif fmt == FORMAT_ABX:
        fields["bx"] = (word >> POS_BX) & MAXARG_BX
    else:
        fields["sbx"] = ((word >> POS_BX) & MAXARG_BX) - MAXARG_SBX
    return op, fields
