from __future__ import annotations

import pytest

pytest.importorskip("lupa")

import builders as b
from luraph_devirt import lua_ast as ast
from luraph_devirt.capture import capture_payload, prepare_capture_source
from luraph_devirt.devirtualizer import Devirtualizer
from luraph_devirt.exceptions import PayloadCaptureError
from luraph_devirt.payload import lua_array, lua_index


def test_capture_source_stops_before_the_vm(vm_tree) -> None:
    source = prepare_capture_source(vm_tree)
    assert source.rstrip().endswith("return decode_chunk()")
    assert "run(main[3])" not in source
    assert "local function decode_chunk()" in source
    # the input tree is left untouched
    assert isinstance(vm_tree.body[-1], ast.CallStmt)


def test_capture_requires_a_call_site() -> None:
    tree = ast.Chunk(b.build_vm().body[:4])
    with pytest.raises(PayloadCaptureError):
        prepare_capture_source(tree)


def test_captured_payload_matches_the_stream(vm_tree) -> None:
    payload = capture_payload(vm_tree)
    expected = b.sample_payload()

    assert lua_array(lua_index(payload, 1)) == expected[1]
    assert lua_array(lua_index(payload, 2)) == expected[2]
    records = [lua_array(record) for record in lua_array(lua_index(payload, 3))]
    assert records == expected[3]
    assert lua_array(lua_index(payload, 4)) == []


def test_devirtualize_without_a_payload(vm_tree) -> None:
    result = Devirtualizer(vm_tree).process()
    assert result.clean
    assert len(result.chunk.instructions) == 5
    assert result.chunk.constants == [10, 20]


def test_runtime_errors_are_capture_errors() -> None:
    tree = b.build_vm(data=[1])
    with pytest.raises(PayloadCaptureError) as excinfo:
        capture_payload(tree)
    assert excinfo.value.stage == "capture"


def _with_prelude(*stmts: ast.Stmt) -> ast.Chunk:
    tree = b.build_vm()
    tree.body[0:0] = list(stmts)
    return tree


def test_host_access_is_refused(tmp_path) -> None:
    target = tmp_path / "written.txt"
    opened = ast.Call(
        ast.Index(ast.Name("io"), ast.String("open")),
        [ast.String(str(target)), ast.String("w")],
    )
    tree = _with_prelude(ast.LocalAssign(["handle"], [opened]))

    with pytest.raises(PayloadCaptureError) as excinfo:
        capture_payload(tree)
    assert "attempted to access io" in str(excinfo.value)
    assert not target.exists()


def test_os_is_not_reachable_through_globals() -> None:
    run = ast.Call(ast.Index(ast.Index(ast.Name("_G"), ast.String("os")), ast.String("execute")), [])
    with pytest.raises(PayloadCaptureError):
        capture_payload(_with_prelude(ast.CallStmt(run)))


def test_runaway_script_hits_the_time_limit() -> None:
    tree = _with_prelude(ast.While(ast.TrueExpr(), []))
    with pytest.raises(PayloadCaptureError) as excinfo:
        capture_payload(tree, timeout=0.2)
    assert "time limit" in str(excinfo.value)
