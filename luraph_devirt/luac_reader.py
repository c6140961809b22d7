"""Lua 5.1 bytecode loader, the inverse of :mod:`luraph_devirt.luac_writer`."""

from __future__ import annotations

import struct
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Union

from .chunk import Constant, LocalVar, LuaChunk
from .exceptions import BytecodeReadError
from .luac_writer import LUA_SIGNATURE, LUAC_VERSION, TAG_BOOLEAN, TAG_NIL, TAG_NUMBER, TAG_STRING
from .vm.instruction import VMInstruction
from .vm.opcodes import LUA51_OPCODES, decode_instruction

__all__ = ["LuacReader", "load_bytecode"]


class LuacReader:
    """Reads little endian Lua 5.1 chunks with 4-byte ints and 8-byte numbers."""

    def __init__(self) -> None:
        self._data = b""
        self._pos = 0
        self._size_t_width = 8

    def loads(self, data: bytes) -> LuaChunk:
        self._data = bytes(data)
        self._pos = 0
        self._header()
        chunk = self._function(None)
        if self._pos != len(self._data):
            raise BytecodeReadError(f"{len(self._data) - self._pos} trailing bytes after main function")
        return chunk

    # -- primitives ----------------------------------------------------

    def _take(self, count: int) -> bytes:
        end = self._pos + count
        if end > len(self._data):
            raise BytecodeReadError(f"unexpected end of data at offset {self._pos}")
        raw = self._data[self._pos:end]
        self._pos = end
        return raw

    def _byte(self) -> int:
        return self._take(1)[0]

    def _int(self) -> int:
        return struct.unpack("<i", self._take(4))[0]

    def _size_t(self) -> int:
        fmt = "<I" if self._size_t_width == 4 else "<Q"
        return struct.unpack(fmt, self._take(self._size_t_width))[0]

    def _string(self) -> Optional[str]:
        size = self._size_t()
        if size == 0:
            return None
        raw = self._take(size)
        return raw[:-1].decode("latin-1")

    # -- records -------------------------------------------------------

    def _header(self) -> None:
        if self._take(4) != LUA_SIGNATURE:
            raise BytecodeReadError("not a Lua bytecode file")
        version, fmt, endian, int_size, size_t, instr_size, number_size, integral = self._take(8)
        if version != LUAC_VERSION or fmt != 0:
            raise BytecodeReadError(f"unsupported bytecode version 0x{version:02x}")
        if endian != 1 or int_size != 4 or instr_size != 4 or number_size != 8 or integral != 0:
            raise BytecodeReadError("unsupported platform layout in bytecode header")
        if size_t not in (4, 8):
            raise BytecodeReadError(f"unsupported size_t width {size_t}")
        self._size_t_width = size_t

    def _constant(self) -> Constant:
        tag = self._byte()
        if tag == TAG_NIL:
            return None
        if tag == TAG_BOOLEAN:
            return self._byte() != 0
        if tag == TAG_NUMBER:
            value = struct.unpack("<d", self._take(8))[0]
            return int(value) if value.is_integer() else value
        if tag == TAG_STRING:
            return self._string() or ""
        raise BytecodeReadError(f"unknown constant tag {tag}")

    def _function(self, parent_source: Optional[str]) -> LuaChunk:
        source = self._string()
        if source is None:
            source = parent_source
        chunk = LuaChunk(source=source)
        chunk.line_defined = self._int()
        chunk.last_line_defined = self._int()
        chunk.num_upvalues = self._byte()
        chunk.num_params = self._byte()
        chunk.is_vararg = self._byte()
        chunk.max_stack_size = self._byte()

        words = [struct.unpack("<I", self._take(4))[0] for _ in range(self._int())]
        instructions: List[VMInstruction] = []
        for word in words:
            try:
                op, fields = decode_instruction(word)
            except ValueError as exc:
                raise BytecodeReadError(str(exc)) from exc
            instructions.append(VMInstruction(op, LUA51_OPCODES[op], **fields))

        chunk.constants = [self._constant() for _ in range(self._int())]
        chunk.prototypes = [self._function(source) for _ in range(self._int())]
        chunk.line_info = [self._int() for _ in range(self._int())]
        chunk.locals = [
            LocalVar(self._string() or "", self._int(), self._int()) for _ in range(self._int())
        ]
        chunk.upvalue_names = [self._string() or "" for _ in range(self._int())]
        chunk.instructions = [
            instr if pc >= len(chunk.line_info) else _with_line(instr, chunk.line_info[pc])
            for pc, instr in enumerate(instructions)
        ]
        return chunk


def _with_line(instr: VMInstruction, line: int) -> VMInstruction:
    return replace(instr, line=line)


def load_bytecode(path: Union[str, Path]) -> LuaChunk:
    return LuacReader().loads(Path(path).read_bytes())
