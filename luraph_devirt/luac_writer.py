"""Serialize :class:`LuaChunk` objects as Lua 5.1 bytecode."""

from __future__ import annotations

import io
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .chunk import Constant, LuaChunk
from .exceptions import BytecodeWriteError
from .vm.opcodes import encode_instruction

LOG = logging.getLogger(__name__)

__all__ = ["LUA_SIGNATURE", "LuacWriter", "header_bytes", "write_bytecode"]

LUA_SIGNATURE = b"\x1bLua"
LUAC_VERSION = 0x51
LUAC_FORMAT = 0

TAG_NIL = 0
TAG_BOOLEAN = 1
TAG_NUMBER = 3
TAG_STRING = 4


def header_bytes(size_t_width: int = 8) -> bytes:
    """Header for little endian, 4-byte int, 8-byte double platforms."""

    return LUA_SIGNATURE + bytes([LUAC_VERSION, LUAC_FORMAT, 1, 4, size_t_width, 4, 8, 0])


class LuacWriter:
    """Lua 5.1 ``luac`` writer (the layout of ``ldump.c``)."""

    def __init__(self, size_t_width: int = 8) -> None:
        if size_t_width not in (4, 8):
            raise ValueError("size_t_width must be 4 or 8")
        self.size_t_width = size_t_width
        self._size_t = struct.Struct("<I" if size_t_width == 4 else "<Q")

    def dumps(self, chunk: LuaChunk) -> bytes:
        out = io.BytesIO()
        out.write(header_bytes(self.size_t_width))
        self._function(out, chunk, None, "main")
        return out.getvalue()

    def dump(self, chunk: LuaChunk, handle: BinaryIO) -> None:
        handle.write(self.dumps(chunk))

    # -- primitives ----------------------------------------------------

    def _int(self, out: BinaryIO, value: int) -> None:
        out.write(struct.pack("<i", int(value)))

    def _byte(self, out: BinaryIO, value: int, what: str) -> None:
        if not 0 <= int(value) <= 0xFF:
            raise BytecodeWriteError(f"{what}={value} does not fit in a byte")
        out.write(bytes([int(value)]))

    def _string(self, out: BinaryIO, value: Optional[str]) -> None:
        if value is None:
            out.write(self._size_t.pack(0))
            return
        try:
            raw = value.encode("latin-1")
        except UnicodeEncodeError:
            raw = value.encode("utf-8")
        out.write(self._size_t.pack(len(raw) + 1))
        out.write(raw + b"\x00")

    def _constant(self, out: BinaryIO, value: Constant) -> None:
        if value is None:
            out.write(bytes([TAG_NIL]))
        elif isinstance(value, bool):
            out.write(bytes([TAG_BOOLEAN, 1 if value else 0]))
        elif isinstance(value, (int, float)):
            out.write(bytes([TAG_NUMBER]))
            out.write(struct.pack("<d", float(value)))
        elif isinstance(value, str):
            out.write(bytes([TAG_STRING]))
            self._string(out, value)
        else:
            raise BytecodeWriteError(f"unsupported constant type {type(value).__name__}")

    # -- function record -----------------------------------------------

    def _function(self, out: BinaryIO, chunk: LuaChunk, parent_source: Optional[str], path: str) -> None:
        source = None if chunk.source == parent_source else chunk.source
        self._string(out, source)
        self._int(out, chunk.line_defined)
        self._int(out, chunk.last_line_defined)
        self._byte(out, chunk.num_upvalues, f"{path}: nups")
        self._byte(out, chunk.num_params, f"{path}: numparams")
        self._byte(out, chunk.is_vararg, f"{path}: is_vararg")
        self._byte(out, chunk.stack_size(), f"{path}: maxstacksize")

        self._int(out, len(chunk.instructions))
        for pc, instr in enumerate(chunk.instructions):
            if instr.opcode is None:
                raise BytecodeWriteError(
                    f"instruction {pc + 1} has unidentified opcode {instr.opcode_num}", entity=path
                )
            try:
                word = encode_instruction(instr.opcode, instr.a, instr.b, instr.c, instr.bx, instr.sbx)
            except ValueError as exc:
                raise BytecodeWriteError(f"instruction {pc + 1}: {exc}", entity=path) from exc
            out.write(struct.pack("<I", word))

        self._int(out, len(chunk.constants))
        for value in chunk.constants:
            self._constant(out, value)
        self._int(out, len(chunk.prototypes))
        for index, proto in enumerate(chunk.prototypes):
            self._function(out, proto, chunk.source, f"{path}.{index}")

        self._int(out, len(chunk.line_info))
        for line in chunk.line_info:
            self._int(out, line)
        self._int(out, len(chunk.locals))
        for local in chunk.locals:
            self._string(out, local.name)
            self._int(out, local.start_pc)
            self._int(out, local.end_pc)
        self._int(out, len(chunk.upvalue_names))
        for name in chunk.upvalue_names:
            self._string(out, name)


def write_bytecode(chunk: LuaChunk, path: Union[str, Path], *, size_t_width: int = 8) -> Path:
    """Write *chunk* to a new file; existing files are never touched."""

    target = Path(path)
    if target.exists():
        raise BytecodeWriteError("Output file already exists.", entity=str(target))
    data = LuacWriter(size_t_width).dumps(chunk)
    try:
        handle = target.open("xb")
    except FileExistsError as exc:
        raise BytecodeWriteError("Output file already exists.", entity=str(target)) from exc
    except OSError as exc:
        raise BytecodeWriteError(f"cannot create output: {exc}", entity=str(target)) from exc
    try:
        with handle:
            handle.write(data)
    except OSError as exc:
        target.unlink(missing_ok=True)
        raise BytecodeWriteError(f"write failed: {exc}", entity=str(target)) from exc
    LOG.info("wrote %d bytes of bytecode to %s", len(data), target)
    return target
