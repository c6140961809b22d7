"""In-memory model of a recovered Lua 5.1 function prototype."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import List, Optional, TextIO, Union

from .vm.instruction import VMInstruction
from .vm.opcodes import BITRK, FORMAT_ABC, FORMAT_ABX, LUA51_OPCODES, VMOp, instruction_format

__all__ = ["Constant", "LocalVar", "LuaChunk", "VARARG_HASARG", "VARARG_ISVARARG", "VARARG_NEEDSARG"]

Constant = Union[None, bool, int, float, str]

VARARG_HASARG = 1
VARARG_ISVARARG = 2
VARARG_NEEDSARG = 4

MIN_STACK_SIZE = 2

_RK_BC = frozenset({VMOp.ADD, VMOp.SUB, VMOp.MUL, VMOp.DIV, VMOp.MOD, VMOp.POW, VMOp.EQ, VMOp.LT, VMOp.LTE})
_REGISTER_B = frozenset({VMOp.MOVE, VMOp.UNM, VMOp.NOT, VMOp.LEN, VMOp.LOADNIL})


@dataclass(frozen=True)
class LocalVar:
    name: str
    start_pc: int
    end_pc: int


@dataclass
class LuaChunk:
    """A function prototype: code, constants, nested prototypes and debug data."""

    instructions: List[VMInstruction] = field(default_factory=list)
    constants: List[Constant] = field(default_factory=list)
    prototypes: List["LuaChunk"] = field(default_factory=list)
    line_info: List[int] = field(default_factory=list)
    locals: List[LocalVar] = field(default_factory=list)
    upvalue_names: List[str] = field(default_factory=list)
    source: Optional[str] = None
    line_defined: int = 0
    last_line_defined: int = 0
    num_upvalues: int = 0
    num_params: int = 0
    is_vararg: int = 0
    max_stack_size: Optional[int] = None

    def stack_size(self) -> int:
        """``max_stack_size`` or, when unset, the registers the code touches."""

        if self.max_stack_size is not None:
            return self.max_stack_size
        highest = -1
        for instr in self.instructions:
            highest = max(highest, *_registers(instr))
        return max(highest + 1, MIN_STACK_SIZE)

    def walk(self):
        """Yield this chunk and all nested prototypes, depth first."""

        yield self
        for proto in self.prototypes:
            yield from proto.walk()

    # -- listing -------------------------------------------------------

    def format_listing(self, *, name: str = "main") -> str:
        lines: List[str] = []
        self._format(lines, name)
        return "\n".join(lines) + "\n"

    def print(self, stream: Optional[TextIO] = None) -> None:
        (stream or sys.stdout).write(self.format_listing())

    def _format(self, lines: List[str], name: str) -> None:
        source = self.source or "?"
        lines.append(
            f"{name} <{source}:{self.line_defined},{self.last_line_defined}> "
            f"({len(self.instructions)} instructions)"
        )
        vararg = "+" if self.is_vararg else ""
        lines.append(
            f"{self.num_params}{vararg} params, {self.stack_size()} slots, "
            f"{self.num_upvalues} upvalues, {len(self.locals)} locals, "
            f"{len(self.constants)} constants, {len(self.prototypes)} functions"
        )
        for pc, instr in enumerate(self.instructions):
            line = self.line_info[pc] if pc < len(self.line_info) else instr.line
            lines.append(f"\t{pc + 1}\t[{line}]\t{_mnemonic(instr):<9}\t{_operands(instr)}{self._comment(pc, instr)}")
        if self.constants:
            lines.append(f"constants ({len(self.constants)}):")
            for index, value in enumerate(self.constants):
                lines.append(f"\t{index + 1}\t{_constant_text(value)}")
        for index, proto in enumerate(self.prototypes):
            lines.append("")
            proto._format(lines, f"function[{index}]")

    def _comment(self, pc: int, instr: VMInstruction) -> str:
        if instr.opcode in (VMOp.LOADK, VMOp.GETGLOBAL) and 0 <= instr.bx < len(self.constants):
            return f"\t; {_constant_text(self.constants[int(instr.bx)])}"
        if instr.opcode in (VMOp.JUMP, VMOp.FORLOOP, VMOp.FORPREP):
            return f"\t; to {pc + 2 + int(instr.sbx)}"
        if instr.opcode == VMOp.CLOSURE:
            return f"\t; function[{int(instr.bx)}]"
        return ""


def _mnemonic(instr: VMInstruction) -> str:
    if instr.opcode is None:
        return f"OP_{instr.opcode_num}"
    return instr.opcode.value


def _operands(instr: VMInstruction) -> str:
    if instr.opcode is None:
        return f"{int(instr.a)} {int(instr.b)} {int(instr.c)}"
    fmt = instruction_format(instr.opcode)
    if fmt == FORMAT_ABC:
        return f"{int(instr.a)} {_rk(instr.opcode, instr.b)} {_rk(instr.opcode, instr.c)}"
    if fmt == FORMAT_ABX:
        return f"{int(instr.a)} {int(instr.bx)}"
    return f"{int(instr.a)} {int(instr.sbx)}"


def _rk(op: VMOp, value: float) -> str:
    value = int(value)
    if op in _RK_BC and value >= BITRK:
        return str(-1 - (value - BITRK))
    return str(value)


def _constant_text(value: Constant) -> str:
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _registers(instr: VMInstruction):
    """Registers an instruction may touch (upper bounds)."""

    op = instr.opcode
    a = int(instr.a)
    b = int(instr.b)
    c = int(instr.c)
    regs = [a]
    if op is None or op not in LUA51_OPCODES:
        return regs
    if op in _REGISTER_B:
        regs.append(b)
    elif op in _RK_BC:
        regs.extend(value for value in (b, c) if value < BITRK)
    elif op in (VMOp.CALL, VMOp.TAILCALL):
        regs.extend((a + b - 1, a + c - 2))
    elif op in (VMOp.FORLOOP, VMOp.FORPREP):
        regs.append(a + 3)
    elif op == VMOp.TFORLOOP:
        regs.append(a + 2 + c)
    elif op == VMOp.VARARG:
        regs.append(a + b - 2)
    elif op == VMOp.SETLIST:
        regs.append(a + b)
    elif op == VMOp.RETURN:
        regs.append(a + b - 2)
    return regs
