"""Devirtualization pipeline.

The run moves through fixed stages, each one consuming the previous stage's
output::

    START -> METADATA -> HANDLERS -> DECODED -> REDIRECTED -> ASSEMBLED -> DONE

A failure in any stage ends the run; :attr:`Devirtualizer.stage` then names
the last stage that completed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple

from . import lua_ast as ast
from .chunk import VARARG_ISVARARG, Constant, LuaChunk
from .config import DEFAULT_CONFIG, DevirtualizerConfig
from .exceptions import HandlerIdentificationError, RedirectionError, VMStructureError
from .matcher import HandlerMatcher, MatchDiagnostic
from .metadata import DecodeChunkMetadata, extract_decode_chunk_metadata
from .payload import PayloadTable, is_table, lua_array, lua_index
from .redirection import is_redirector, resolve, strip_redirects
from .vm.instruction import InstructionLayout, VMInstruction
from .vm.opcodes import VMOp
from .vm_layout import discover_structure, infer_layout

LOG = logging.getLogger(__name__)

__all__ = [
    "DevirtualizationResult",
    "Devirtualizer",
    "Stage",
    "VMMappings",
]

class Stage(str, Enum):
    START = "start"
    METADATA = "metadata"
    HANDLERS = "handlers"
    DECODED = "decoded"
    REDIRECTED = "redirected"
    ASSEMBLED = "assembled"
    DONE = "done"


@dataclass(frozen=True)
class VMMappings:
    """Lookup tables built by the handler stage; read-only afterwards."""

    instruction_to_opcode: Mapping[VMOp, int]
    opcode_dispatch: Mapping[int, int]
    handlers: Mapping[int, ast.Function]
    opcode_to_vmop: Mapping[int, VMOp]
    dispatch_name: Optional[str] = None
    redirectors: frozenset = frozenset()
    diagnostics: Mapping[int, MatchDiagnostic] = field(default_factory=lambda: MappingProxyType({}))

    def handler_for(self, opcode_num: int) -> Optional[ast.Function]:
        index = self.opcode_dispatch.get(opcode_num)
        return self.handlers.get(index) if index is not None else None

    def diagnostic_for(self, opcode_num: int) -> Optional[MatchDiagnostic]:
        index = self.opcode_dispatch.get(opcode_num)
        return self.diagnostics.get(index) if index is not None else None


@dataclass(frozen=True)
class DevirtualizationResult:
    chunk: LuaChunk
    metadata: DecodeChunkMetadata
    mappings: VMMappings
    layout: InstructionLayout
    warnings: Tuple[str, ...] = ()
    unresolved: Tuple[int, ...] = ()

    @property
    def clean(self) -> bool:
        """False for a best-effort run (some redirection could not be processed)."""

        return not self.warnings


@dataclass
class _Prototype:
    """One function record of the payload on its way to a :class:`LuaChunk`."""

    path: str
    instructions: List[VMInstruction]
    constants: List[Constant]
    lines: List[int]
    children: List["_Prototype"] = field(default_factory=list)


def _constant(value: object) -> Constant:
    if isinstance(value, bytes):
        return value.decode("latin-1")
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise VMStructureError(f"unsupported constant value of type {type(value).__name__}", entity="constants")


def _kept_unredirected(instr: VMInstruction, mappings: VMMappings) -> bool:
    """Redirector instructions left as they were stay in a best-effort chunk."""

    return mappings.opcode_dispatch.get(instr.opcode_num) in mappings.redirectors


class Devirtualizer:
    """Turn a renamed, constant-folded Luraph script back into a Lua 5.1 chunk.

    ``payload`` is the table the script's decode routine returns; when it is
    not given it is captured by running that routine in an embedded Lua
    runtime.
    """

    def __init__(
        self,
        tree: ast.Chunk,
        payload: Optional[PayloadTable] = None,
        *,
        config: Optional[DevirtualizerConfig] = None,
        matcher: Optional[HandlerMatcher] = None,
    ) -> None:
        self.tree = tree
        self.payload = payload
        self.config = config or DEFAULT_CONFIG
        self.matcher = matcher or HandlerMatcher(config=self.config)
        self._stage = Stage.START
        self._warnings: List[str] = []
        self._unresolved: Set[int] = set()

    @property
    def stage(self) -> Stage:
        return self._stage

    # -- stages --------------------------------------------------------

    def extract_metadata(self) -> DecodeChunkMetadata:
        return extract_decode_chunk_metadata(self.tree, self.config.decode_routine)

    def build_mappings(self) -> Tuple[VMMappings, InstructionLayout, Tuple[int, ...]]:
        """Identify every handler and derive the lookup tables and layout."""

        structure = discover_structure(self.tree)
        dispatch_name = structure.dispatch_table.name
        identified: Dict[int, VMOp] = {}
        redirectors = set()
        diagnostics: Dict[int, MatchDiagnostic] = {}
        for index in sorted(structure.handler_table.handlers):
            fn = structure.handler_table.handlers[index]
            if is_redirector(fn, dispatch_name):
                LOG.debug("handler %d is a redirector", index)
                redirectors.add(index)
                # operations of its own still apply when no branch is taken
                matched = self.matcher.matching_signatures(strip_redirects(fn, dispatch_name))
                if matched:
                    identified[index] = matched[0].opcode
                continue
            result = self.matcher.identify(fn, index)
            if result.opcode is not None:
                identified[index] = result.opcode
            elif result.diagnostic is not None:
                diagnostics[index] = result.diagnostic

        opcode_to_vmop: Dict[int, VMOp] = {}
        instruction_to_opcode: Dict[VMOp, int] = {}
        unresolved: List[int] = []
        for opcode_num, handler_index in sorted(structure.dispatch_table.entries.items()):
            op = identified.get(handler_index)
            if op is not None:
                opcode_to_vmop[opcode_num] = op
                instruction_to_opcode.setdefault(op, opcode_num)
            elif handler_index not in redirectors:
                unresolved.append(opcode_num)
        if unresolved:
            LOG.warning("unresolved opcode ids: %s", ", ".join(str(num) for num in unresolved))

        mappings = VMMappings(
            instruction_to_opcode=MappingProxyType(instruction_to_opcode),
            opcode_dispatch=MappingProxyType(dict(structure.dispatch_table.entries)),
            handlers=MappingProxyType(dict(structure.handler_table.handlers)),
            opcode_to_vmop=MappingProxyType(opcode_to_vmop),
            dispatch_name=dispatch_name,
            redirectors=frozenset(redirectors),
            diagnostics=MappingProxyType(diagnostics),
        )
        layout = infer_layout(structure, identified, self.config)
        LOG.info(
            "identified %d of %d handlers (%d redirectors)",
            len(identified),
            len(structure.handler_table.handlers),
            len(redirectors),
        )
        return mappings, layout, tuple(unresolved)

    def _payload(self, metadata: DecodeChunkMetadata) -> PayloadTable:
        if self.payload is None:
            from .capture import capture_payload

            self.payload = capture_payload(self.tree, metadata.routine_name, timeout=self.config.capture_timeout)
        if not is_table(self.payload):
            raise VMStructureError("payload is not a table", entity="payload")
        return self.payload

    def _decode(
        self, table: PayloadTable, metadata: DecodeChunkMetadata, layout: InstructionLayout, path: str
    ) -> _Prototype:
        if not is_table(table):
            raise VMStructureError("prototype record is not a table", entity=path)
        instructions: List[VMInstruction] = []
        for pc, record in enumerate(lua_array(lua_index(table, metadata.instruction_table_idx)), start=1):
            try:
                instructions.append(layout.decode(record))
            except ValueError as exc:
                raise VMStructureError(f"instruction {pc}: {exc}", entity=path) from exc
        constants = [_constant(value) for value in lua_array(lua_index(table, metadata.constant_table_idx))]
        lines = [
            int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
            for value in lua_array(lua_index(table, metadata.debug_table_idx))
        ]
        children = [
            self._decode(child, metadata, layout, f"{path}.{index}")
            for index, child in enumerate(
                lua_array(lua_index(table, metadata.prototype_table_idx), allow_zero=True)
            )
        ]
        return _Prototype(path, instructions, constants, lines, children)

    def _redirect(self, proto: _Prototype, mappings: VMMappings, layout: InstructionLayout) -> None:
        resolved: List[VMInstruction] = []
        for instr in proto.instructions:
            outcome = resolve(instr, mappings, layout, strict=self.config.strict_redirection)
            if outcome.warning:
                self._warnings.append(f"{proto.path}: {outcome.warning}")
            if outcome.redirected:
                resolved.append(outcome.instruction)
                continue
            kept = instr.with_opcode(mappings.opcode_to_vmop.get(instr.opcode_num))
            if kept.opcode is None and _kept_unredirected(kept, mappings):
                if outcome.warning is None:
                    self._untaken_redirect(proto, kept)
                self._unresolved.add(kept.opcode_num)
            resolved.append(kept)
        proto.instructions = resolved
        for child in proto.children:
            self._redirect(child, mappings, layout)

    def _untaken_redirect(self, proto: _Prototype, instr: VMInstruction) -> None:
        message = f"opcode {instr.opcode_num}: no redirect branch taken and the handler has no operation of its own"
        if self.config.strict_redirection:
            raise RedirectionError(message, entity=proto.path)
        LOG.warning("Failed to process redirection for %s", message)
        self._warnings.append(f"{proto.path}: {message}")

    def _assemble(self, proto: _Prototype, mappings: VMMappings, *, main: bool) -> LuaChunk:
        for pc, instr in enumerate(proto.instructions, start=1):
            if instr.opcode is None and not _kept_unredirected(instr, mappings):
                raise HandlerIdentificationError(
                    f"{proto.path} instruction {pc}: no signature matched the handler for opcode "
                    f"{instr.opcode_num}",
                    opcode_num=instr.opcode_num,
                    diagnostic=mappings.diagnostic_for(instr.opcode_num),
                )
        count = len(proto.instructions)
        lines = proto.lines[:count]
        if lines and len(lines) < count:
            lines += [lines[-1]] * (count - len(lines))
        instructions = [
            replace(instr, line=lines[pc]) if lines else instr
            for pc, instr in enumerate(proto.instructions)
        ]
        upvalues = [int(instr.b) + 1 for instr in instructions if instr.opcode == VMOp.GETUPVAL]
        uses_vararg = any(instr.opcode == VMOp.VARARG for instr in instructions)
        return LuaChunk(
            instructions=instructions,
            constants=list(proto.constants),
            prototypes=[self._assemble(child, mappings, main=False) for child in proto.children],
            line_info=lines,
            source=self.config.source_name,
            num_upvalues=max(upvalues, default=0),
            is_vararg=VARARG_ISVARARG if main or uses_vararg else 0,
        )

    # -- driver --------------------------------------------------------

    def process(self) -> DevirtualizationResult:
        self._stage = Stage.START
        self._warnings = []
        self._unresolved = set()

        metadata = self.extract_metadata()
        self._stage = Stage.METADATA

        mappings, layout, unresolved = self.build_mappings()
        self._stage = Stage.HANDLERS

        root = self._decode(self._payload(metadata), metadata, layout, "main")
        self._stage = Stage.DECODED

        self._redirect(root, mappings, layout)
        self._stage = Stage.REDIRECTED
        if self._warnings:
            LOG.warning("%d redirections could not be processed; output is best effort", len(self._warnings))

        chunk = self._assemble(root, mappings, main=True)
        self._stage = Stage.ASSEMBLED

        result = DevirtualizationResult(
            chunk=chunk,
            metadata=metadata,
            mappings=mappings,
            layout=layout,
            warnings=tuple(self._warnings),
            unresolved=tuple(sorted(self._unresolved.union(unresolved))),
        )
        self._stage = Stage.DONE
        return result

