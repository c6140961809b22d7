from __future__ import annotations

import pytest

pytest.importorskip("luaparser")

import builders as b
from luraph_devirt import lua_ast as ast
from luraph_devirt.devirtualizer import Devirtualizer
from luraph_devirt.exceptions import InputFormatError
from luraph_devirt.frontend import load_tree, parse_source, preprocess_source, reject_bytecode
from luraph_devirt.vm.opcodes import VMOp


def test_bytecode_is_rejected(tmp_path) -> None:
    with pytest.raises(InputFormatError) as excinfo:
        reject_bytecode(b"\x1bLuaQ\x00\x01\x04")
    assert "compiled Lua bytecode" in str(excinfo.value)
    assert excinfo.value.stage == "input"

    path = tmp_path / "script.luac"
    path.write_bytes(b"\x1bLuaQ\x00\x01\x04\x08\x04\x08\x00")
    with pytest.raises(InputFormatError) as excinfo:
        load_tree(path)
    assert excinfo.value.entity == str(path)


def test_source_is_accepted() -> None:
    reject_bytecode(b"-- obfuscated\nreturn 1")


def test_header_comment_is_split_from_code() -> None:
    text = "-- Obfuscated with Luraph   return (function(...) end)(...)"
    assert preprocess_source(text) == "-- Obfuscated with Luraph\nreturn (function(...) end)(...)"
    assert preprocess_source("local x = 1") == "local x = 1"
    assert preprocess_source("-- just a comment\nreturn 1") == "-- just a comment\nreturn 1"


def test_statements_are_converted() -> None:
    tree = parse_source(
        "local x = 1\n"
        "local function f(a, ...) return a + 1 end\n"
        "for i = 1, 3 do x = x + i end\n"
        "if x == 1 then x = 2 elseif x > 2 then x = 3 else x = nil end\n"
        "print(not x, #x, -x)\n"
    )
    local, function, loop, branch, call = tree.body

    assert local == ast.LocalAssign(["x"], [ast.Number(1)])

    assert isinstance(function, ast.LocalFunction)
    assert function.func.params == ["a"]
    assert function.func.is_vararg
    assert function.func.body == [ast.Return([ast.BinOp(ast.Name("a"), "+", ast.Number(1))])]

    assert isinstance(loop, ast.NumericFor)
    assert loop.var == "i"
    assert loop.step is None
    assert loop.body == [ast.Assign([ast.Name("x")], [ast.BinOp(ast.Name("x"), "+", ast.Name("i"))])]

    assert isinstance(branch, ast.If)
    assert branch.test == ast.BinOp(ast.Name("x"), "==", ast.Number(1))
    assert [clause.test for clause in branch.elseifs] == [ast.BinOp(ast.Name("x"), ">", ast.Number(2))]
    assert branch.orelse == [ast.Assign([ast.Name("x")], [ast.Nil()])]

    assert call == ast.CallStmt(
        ast.Call(
            ast.Name("print"),
            [ast.UnOp("not", ast.Name("x")), ast.UnOp("#", ast.Name("x")), ast.UnOp("-", ast.Name("x"))],
        )
    )


def test_parse_errors_are_input_errors() -> None:
    with pytest.raises(InputFormatError):
        parse_source("local = = 1", source="broken.lua")


def test_rendered_vm_devirtualizes_after_parsing(tmp_path, vm_payload) -> None:
    path = tmp_path / "vm.lua"
    path.write_text("-- Luraph Obfuscator\n" + ast.to_source(b.build_vm()), encoding="utf-8")
    tree = load_tree(path)

    result = Devirtualizer(tree, vm_payload).process()
    assert result.clean
    assert [instr.opcode for instr in result.chunk.instructions] == [
        VMOp.LOADK,
        VMOp.LOADK,
        VMOp.ADD,
        VMOp.ADD,
        VMOp.RETURN,
    ]


def test_numeric_for_steps() -> None:
    implicit, explicit, unit = parse_source(
        "for i = 1, 3 do x = i end\n"
        "for i = 10, 1, 2 do x = i end\n"
        "for i = 1, 3, 1 do x = i end\n"
    ).body

    assert implicit.step is None
    assert explicit.step == ast.Number(2)
    assert unit.step is None
    assert explicit.start == ast.Number(10)
    assert explicit.stop == ast.Number(1)
