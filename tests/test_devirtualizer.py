from __future__ import annotations

from types import MappingProxyType

import pytest

import builders as b
from luraph_devirt.chunk import VARARG_ISVARARG
from luraph_devirt.config import DevirtualizerConfig
from luraph_devirt.devirtualizer import Devirtualizer, Stage, VMMappings
from luraph_devirt.exceptions import (
    HandlerIdentificationError,
    MetadataResolutionError,
    RedirectionError,
    VMStructureError,
)
from luraph_devirt.matcher import MatchDiagnostic
from luraph_devirt.vm.opcodes import VMOp


def _ops(chunk):
    return [instr.opcode for instr in chunk.instructions]


def test_end_to_end_with_captured_payload(vm_tree, vm_payload) -> None:
    devirtualizer = Devirtualizer(vm_tree, vm_payload)
    assert devirtualizer.stage == Stage.START
    result = devirtualizer.process()

    assert devirtualizer.stage == Stage.DONE
    assert result.clean
    assert result.unresolved == ()
    assert result.layout == b.EXPECTED_LAYOUT
    chunk = result.chunk
    assert _ops(chunk) == [VMOp.LOADK, VMOp.LOADK, VMOp.ADD, VMOp.ADD, VMOp.RETURN]
    assert chunk.constants == [10, 20]
    assert chunk.line_info == [1, 1, 2, 2, 3]
    assert chunk.prototypes == []
    assert chunk.source == "@devirtualized"
    assert chunk.is_vararg == VARARG_ISVARARG


def test_add_operands_survive(vm_tree, vm_payload) -> None:
    chunk = Devirtualizer(vm_tree, vm_payload).process().chunk
    add = chunk.instructions[2]
    assert (add.a, add.b, add.c) == (2, 0, 1)
    redirected = chunk.instructions[3]
    assert redirected.opcode_num == b.OPCODE_ADD
    assert (redirected.a, redirected.b, redirected.c) == (3, 2, 2)
    assert chunk.instructions[1].bx == 1


def test_mappings_are_read_only(vm_tree, vm_payload) -> None:
    mappings = Devirtualizer(vm_tree, vm_payload).process().mappings
    assert isinstance(mappings.opcode_to_vmop, MappingProxyType)
    assert mappings.opcode_to_vmop[b.OPCODE_LOADK] == VMOp.LOADK
    assert mappings.instruction_to_opcode[VMOp.ADD] == b.OPCODE_ADD
    assert mappings.redirectors == frozenset({8})
    assert mappings.handler_for(b.OPCODE_MOVE) is not None
    with pytest.raises(TypeError):
        mappings.opcode_to_vmop[99] = VMOp.MOVE  # type: ignore[index]


def test_nested_prototypes(vm_tree) -> None:
    child = {
        1: ["x"],
        2: [7],
        3: [[b.OPCODE_RETURN, 0, 1, 0, 0]],
        4: [],
    }
    payload = b.sample_payload()
    payload[4] = [child]
    chunk = Devirtualizer(vm_tree, payload).process().chunk
    assert len(chunk.prototypes) == 1
    proto = chunk.prototypes[0]
    assert _ops(proto) == [VMOp.RETURN]
    assert proto.constants == ["x"]
    assert proto.line_info == [7]
    assert proto.is_vararg == 0


def test_line_info_is_padded(vm_tree) -> None:
    payload = b.sample_payload()
    payload[2] = [4, 5]
    chunk = Devirtualizer(vm_tree, payload).process().chunk
    assert chunk.line_info == [4, 5, 5, 5, 5]


def test_unused_unknown_handler_is_reported_not_fatal(vm_payload) -> None:
    handlers = b.default_handlers() + [b.unknown_handler()]
    dispatch = dict(b.DEFAULT_DISPATCH)
    dispatch[30] = 9
    result = Devirtualizer(b.build_vm(handlers, dispatch), vm_payload).process()
    assert result.unresolved == (30,)
    assert result.mappings.diagnostic_for(30) is not None


def test_unknown_handler_in_use_is_fatal(vm_payload) -> None:
    handlers = b.default_handlers() + [b.unknown_handler()]
    dispatch = dict(b.DEFAULT_DISPATCH)
    dispatch[30] = 9
    vm_payload[3].append([30, 0, 0, 0, 0])
    devirtualizer = Devirtualizer(b.build_vm(handlers, dispatch), vm_payload)
    with pytest.raises(HandlerIdentificationError) as excinfo:
        devirtualizer.process()
    assert excinfo.value.opcode_num == 30
    assert isinstance(excinfo.value.diagnostic, MatchDiagnostic)
    assert excinfo.value.diagnostic.index == 9
    assert devirtualizer.stage == Stage.REDIRECTED


def test_best_effort_run_collects_warnings(vm_payload) -> None:
    handlers = b.default_handlers()
    handlers[7] = b.redirect_handler(test_operator=">")
    result = Devirtualizer(b.build_vm(handlers), vm_payload).process()

    assert not result.clean
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith(f"main: opcode {b.OPCODE_REDIRECT}: ")
    kept = result.chunk.instructions[3]
    assert kept.opcode is None
    assert kept.opcode_num == b.OPCODE_REDIRECT
    assert result.unresolved == (b.OPCODE_REDIRECT,)
    assert f"OP_{b.OPCODE_REDIRECT}" in result.chunk.format_listing()


def test_strict_redirection_aborts(vm_payload) -> None:
    handlers = b.default_handlers()
    handlers[7] = b.redirect_handler(test_operator=">")
    config = DevirtualizerConfig(strict_redirection=True)
    devirtualizer = Devirtualizer(b.build_vm(handlers), vm_payload, config=config)
    with pytest.raises(RedirectionError) as excinfo:
        devirtualizer.process()
    assert excinfo.value.stage == "redirection"
    assert devirtualizer.stage == Stage.DECODED


def test_metadata_failure_stops_at_start(vm_payload) -> None:
    devirtualizer = Devirtualizer(b.build_vm(streams=("constants",)), vm_payload)
    with pytest.raises(MetadataResolutionError):
        devirtualizer.process()
    assert devirtualizer.stage == Stage.START


def test_payload_must_be_a_table(vm_tree) -> None:
    with pytest.raises(VMStructureError):
        Devirtualizer(vm_tree, 42).process()


def test_untaken_redirect_keeps_the_handlers_own_operation(vm_payload) -> None:
    handlers = b.default_handlers()
    handlers[7] = b.guarded_add_handler()
    vm_payload[3][3] = [b.OPCODE_REDIRECT, 3, 2, 0, 0]
    vm_payload[3].insert(4, [b.OPCODE_REDIRECT, 4, 0, 1, 0])
    result = Devirtualizer(b.build_vm(handlers), vm_payload).process()

    assert result.clean
    assert result.unresolved == ()
    assert _ops(result.chunk) == [VMOp.LOADK, VMOp.LOADK, VMOp.ADD, VMOp.MOVE, VMOp.ADD, VMOp.RETURN]
    moved, added = result.chunk.instructions[3:5]
    assert (moved.a, moved.b, moved.c) == (3, 2, 0)
    assert added.opcode_num == b.OPCODE_REDIRECT
    assert (added.a, added.b, added.c) == (4, 0, 1)


def test_untaken_redirect_without_own_operation_is_best_effort(vm_tree, vm_payload) -> None:
    vm_payload[3][3] = [b.OPCODE_REDIRECT, 3, 2, 7, 0]
    result = Devirtualizer(vm_tree, vm_payload).process()

    assert not result.clean
    assert result.unresolved == (b.OPCODE_REDIRECT,)
    assert len(result.warnings) == 1
    assert "no redirect branch taken" in result.warnings[0]
    assert result.chunk.instructions[3].opcode is None


def test_untaken_redirect_raises_when_strict(vm_tree, vm_payload) -> None:
    vm_payload[3][3] = [b.OPCODE_REDIRECT, 3, 2, 7, 0]
    config = DevirtualizerConfig(strict_redirection=True)
    with pytest.raises(RedirectionError) as excinfo:
        Devirtualizer(vm_tree, vm_payload, config=config).process()
    assert excinfo.value.entity == "main"


def test_bare_mappings_have_an_empty_read_only_diagnostics_table() -> None:
    mappings = VMMappings(
        instruction_to_opcode=MappingProxyType({}),
        opcode_dispatch=MappingProxyType({}),
        handlers=MappingProxyType({}),
        opcode_to_vmop=MappingProxyType({}),
    )
    assert isinstance(mappings.diagnostics, MappingProxyType)
    assert len(mappings.diagnostics) == 0
    assert mappings.diagnostic_for(b.OPCODE_ADD) is None


def test_float_operands_decode_unchanged(vm_tree, vm_payload) -> None:
    vm_payload[3][2] = [float(b.OPCODE_ADD), 2, 1.0, 2.0, 0]
    add = Devirtualizer(vm_tree, vm_payload).process().chunk.instructions[2]

    assert add.opcode == VMOp.ADD
    assert add.opcode_num == b.OPCODE_ADD
    assert (add.a, add.b, add.c) == (2, 1.0, 2.0)
    assert isinstance(add.b, float) and isinstance(add.c, float)
