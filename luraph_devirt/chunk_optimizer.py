"""Clean-up passes over recovered chunks."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Set

from .chunk import LocalVar, LuaChunk
from .vm.instruction import VMInstruction
from .vm.opcodes import VMOp

LOG = logging.getLogger(__name__)

__all__ = ["ChunkOptimizer", "remove_closure_anti_symbolic_trick", "remove_instructions"]

_RELATIVE_JUMPS = frozenset({VMOp.JUMP, VMOp.FORLOOP, VMOp.FORPREP})
_TESTS = frozenset({VMOp.EQ, VMOp.LT, VMOp.LTE, VMOp.TFORLOOP})


def _skips_next(instr: VMInstruction) -> bool:
    """Whether *instr* may skip the instruction after it."""

    if instr.opcode in _TESTS:
        return True
    return instr.opcode == VMOp.LOADBOOL and instr.c != 0


def remove_instructions(chunk: LuaChunk, removed: Set[int]) -> LuaChunk:
    """Drop the instructions at *removed* and retarget relative jumps.

    A jump into a removed instruction lands on the next surviving one.
    """

    if not removed:
        return chunk
    count = len(chunk.instructions)
    # mapped[pc] is the new position of the first kept instruction at or after pc
    mapped: List[int] = []
    kept = 0
    for pc in range(count + 1):
        mapped.append(kept)
        if pc < count and pc not in removed:
            kept += 1

    instructions: List[VMInstruction] = []
    for pc, instr in enumerate(chunk.instructions):
        if pc in removed:
            continue
        if instr.opcode in _RELATIVE_JUMPS:
            target = min(max(pc + 1 + int(instr.sbx), 0), count)
            new_pc = mapped[pc]
            instr = replace(instr, sbx=mapped[target] - new_pc - 1)
        instructions.append(instr)

    line_info = [line for pc, line in enumerate(chunk.line_info) if pc not in removed]
    locals_ = [
        LocalVar(local.name, mapped[min(local.start_pc, count)], mapped[min(local.end_pc, count)])
        for local in chunk.locals
    ]
    return replace(chunk, instructions=instructions, line_info=line_info, locals=locals_)


def _is_empty_function(chunk: LuaChunk) -> bool:
    if len(chunk.instructions) != 1:
        return False
    only = chunk.instructions[0]
    return only.opcode == VMOp.RETURN and only.b == 1 and not chunk.prototypes


def _drop_empty_invoked_closures(chunk: LuaChunk) -> LuaChunk:
    """Remove ``CLOSURE r, k; CALL r 1 1`` pairs whose prototype does nothing."""

    code = chunk.instructions
    removed_pcs: Set[int] = set()
    removed_protos: Set[int] = set()
    for pc in range(len(code) - 1):
        closure, call = code[pc], code[pc + 1]
        if closure.opcode != VMOp.CLOSURE or call.opcode != VMOp.CALL:
            continue
        if call.a != closure.a or call.b != 1 or call.c != 1:
            continue
        if pc > 0 and _skips_next(code[pc - 1]):
            continue
        index = int(closure.bx)
        if index >= len(chunk.prototypes) or index in removed_protos:
            continue
        proto = chunk.prototypes[index]
        if proto.num_upvalues or not _is_empty_function(proto):
            continue
        removed_pcs.update((pc, pc + 1))
        removed_protos.add(index)
    if not removed_pcs:
        return chunk

    LOG.debug("removing %d immediately invoked empty closures", len(removed_protos))
    remap: Dict[int, int] = {}
    survivors: List[LuaChunk] = []
    for index, proto in enumerate(chunk.prototypes):
        if index not in removed_protos:
            remap[index] = len(survivors)
            survivors.append(proto)
    stripped = remove_instructions(chunk, removed_pcs)
    instructions = [
        replace(instr, bx=remap[int(instr.bx)]) if instr.opcode == VMOp.CLOSURE else instr
        for instr in stripped.instructions
    ]
    return replace(stripped, instructions=instructions, prototypes=survivors)


def _trampoline_target(chunk: LuaChunk):
    """The prototype a ``CLOSURE; CALL; RETURN 0 1`` wrapper forwards to."""

    code = chunk.instructions
    if len(code) != 3:
        return None
    closure, call, ret = code
    if closure.opcode != VMOp.CLOSURE or call.opcode != VMOp.CALL or ret.opcode != VMOp.RETURN:
        return None
    if call.a != closure.a or call.b != 1 or ret.a != 0 or ret.b != 1:
        return None
    index = int(closure.bx)
    if index >= len(chunk.prototypes):
        return None
    proto = chunk.prototypes[index]
    if proto.num_upvalues or proto.num_params:
        return None
    return proto


def remove_closure_anti_symbolic_trick(chunk: LuaChunk) -> LuaChunk:
    """Undo the closure wrapping used to defeat symbolic execution.

    A function whose whole body creates a closure, calls it once and returns
    is replaced by that closure's body, and closures that are created and
    called immediately without doing anything are dropped.  Applied to every
    prototype, innermost first.
    """

    current = replace(chunk, prototypes=[remove_closure_anti_symbolic_trick(p) for p in chunk.prototypes])
    current = _drop_empty_invoked_closures(current)
    while True:
        proto = _trampoline_target(current)
        if proto is None:
            return current
        LOG.debug("hoisting trampoline body (%d instructions)", len(proto.instructions))
        current = replace(
            proto,
            source=current.source,
            line_defined=current.line_defined,
            last_line_defined=current.last_line_defined,
            num_upvalues=current.num_upvalues,
            num_params=current.num_params,
            is_vararg=current.is_vararg,
            max_stack_size=None,
        )


class ChunkOptimizer:
    """Peephole clean-up of a devirtualized chunk tree."""

    def __init__(self, *, remove_nop_jumps: bool = True) -> None:
        self.remove_nop_jumps = remove_nop_jumps
        self.removed = 0

    def optimize(self, chunk: LuaChunk) -> LuaChunk:
        self.removed = 0
        result = self._optimize(chunk)
        if self.removed:
            LOG.info("chunk optimizer removed %d instructions", self.removed)
        return result

    def _optimize(self, chunk: LuaChunk) -> LuaChunk:
        current = replace(chunk, prototypes=[self._optimize(proto) for proto in chunk.prototypes])
        if self.remove_nop_jumps:
            current = self._drop_nop_jumps(current)
        return current

    def _drop_nop_jumps(self, chunk: LuaChunk) -> LuaChunk:
        code = chunk.instructions
        removed = {
            pc
            for pc, instr in enumerate(code)
            if instr.opcode == VMOp.JUMP
            and instr.sbx == 0
            and not (pc > 0 and _skips_next(code[pc - 1]))
        }
        self.removed += len(removed)
        return remove_instructions(chunk, removed)
