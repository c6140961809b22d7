from __future__ import annotations

import pytest

import builders as b
from luraph_devirt import lua_ast as ast
from luraph_devirt.exceptions import MetadataResolutionError
from luraph_devirt.metadata import DecodeChunkMetadata, extract_decode_chunk_metadata, find_decode_routine


def test_resolves_all_four_streams(vm_tree) -> None:
    metadata = extract_decode_chunk_metadata(vm_tree)
    assert metadata == DecodeChunkMetadata(
        constant_table_idx=1,
        instruction_table_idx=3,
        prototype_table_idx=4,
        debug_table_idx=2,
        routine_name="decode_chunk",
    )


def test_extraction_is_idempotent(vm_tree) -> None:
    assert extract_decode_chunk_metadata(vm_tree) == extract_decode_chunk_metadata(vm_tree)


def test_missing_stream_is_named() -> None:
    tree = b.build_vm(streams=("constants", "instructions", "prototypes"))
    with pytest.raises(MetadataResolutionError) as excinfo:
        extract_decode_chunk_metadata(tree)
    assert excinfo.value.missing == ("debug_table_idx",)
    assert "debug_table_idx" in str(excinfo.value)


def test_routine_found_by_recursion_not_by_name(vm_tree) -> None:
    for stmt in vm_tree.body:
        if isinstance(stmt, ast.LocalFunction) and stmt.name == "decode_chunk":
            routine = stmt
    name, fn = find_decode_routine(vm_tree, "something_else")
    assert name == "decode_chunk"
    assert fn is routine.func


def test_missing_routine() -> None:
    tree = ast.Chunk([b.local("x", b.num(1))])
    with pytest.raises(MetadataResolutionError) as excinfo:
        extract_decode_chunk_metadata(tree)
    assert len(excinfo.value.missing) == 4


def test_streams_filled_through_result_slots() -> None:
    # local chunk = {}; chunk[2] = {}; for ... do chunk[2][i] = read() end ...
    def slot(n: int) -> ast.Index:
        return ast.Index(b.name("chunk"), b.num(n))

    def fill(n: int, body) -> ast.NumericFor:
        return ast.NumericFor("i", b.num(1), b.call("read"), None, body)

    body = [
        b.local("chunk", ast.TableConstructor([])),
        fill(
            4,
            [
                ast.If(
                    b.binop(b.call("read"), "==", b.num(1)),
                    [b.assign(ast.Index(slot(4), b.name("i")), b.call("read"))],
                )
            ],
        ),
        fill(1, [b.assign(ast.Index(slot(1), b.name("i")), ast.TableConstructor([]))]),
        fill(3, [b.assign(ast.Index(slot(3), b.name("i")), b.call("decode"))]),
        fill(2, [b.assign(ast.Index(slot(2), b.name("i")), b.call("read"))]),
        ast.Return([b.name("chunk")]),
    ]
    tree = ast.Chunk([ast.LocalFunction("decode", ast.Function([], body, name="decode"))])
    metadata = extract_decode_chunk_metadata(tree)
    assert metadata.as_dict() == {
        "constant_table_idx": 4,
        "instruction_table_idx": 1,
        "prototype_table_idx": 3,
        "debug_table_idx": 2,
        "routine_name": "decode",
    }
