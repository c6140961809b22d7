from __future__ import annotations

import pytest

from luraph_devirt.chunk import VARARG_ISVARARG, LocalVar, LuaChunk
from luraph_devirt.exceptions import BytecodeReadError, BytecodeWriteError
from luraph_devirt.luac_reader import LuacReader, load_bytecode
from luraph_devirt.luac_writer import LuacWriter, header_bytes, write_bytecode
from luraph_devirt.vm.instruction import VMInstruction
from luraph_devirt.vm.opcodes import VMOp, decode_instruction, encode_instruction


def _ins(op: VMOp, **fields) -> VMInstruction:
    return VMInstruction(op, 0, **fields)


def _sample_chunk() -> LuaChunk:
    child = LuaChunk(
        instructions=[_ins(VMOp.GETUPVAL, a=0, b=0), _ins(VMOp.RETURN, a=0, b=2)],
        line_info=[4, 4],
        source="@sample.lua",
        num_upvalues=1,
        upvalue_names=["x"],
    )
    return LuaChunk(
        instructions=[
            _ins(VMOp.LOADK, a=0, bx=0),
            _ins(VMOp.LOADK, a=1, bx=1),
            _ins(VMOp.ADD, a=2, b=0, c=257),
            _ins(VMOp.JUMP, sbx=-2),
            _ins(VMOp.CLOSURE, a=3, bx=0),
            _ins(VMOp.RETURN, a=0, b=1),
        ],
        constants=[1.5, "hi", None, True, 7],
        prototypes=[child],
        line_info=[1, 1, 2, 2, 3, 3],
        locals=[LocalVar("x", 1, 5)],
        source="@sample.lua",
        is_vararg=VARARG_ISVARARG,
    )


def _fields(instr: VMInstruction):
    return (instr.opcode, int(instr.a), int(instr.b), int(instr.c), int(instr.bx), int(instr.sbx))


def test_header_bytes() -> None:
    assert header_bytes() == bytes.fromhex("1b4c7561 5100 0104 0804 0800")
    assert header_bytes(4)[8] == 4


def test_instruction_word_layout() -> None:
    word = encode_instruction(VMOp.ADD, a=2, b=0, c=257)
    assert word & 0x3F == 12
    assert decode_instruction(word) == (VMOp.ADD, {"a": 2, "b": 0, "c": 257})
    assert decode_instruction(encode_instruction(VMOp.JUMP, sbx=-2)) == (VMOp.JUMP, {"a": 0, "sbx": -2})


def test_round_trip_through_reader() -> None:
    original = _sample_chunk()
    data = LuacWriter().dumps(original)
    assert data.startswith(header_bytes())

    loaded = LuacReader().loads(data)
    assert [_fields(instr) for instr in loaded.instructions] == [_fields(instr) for instr in original.instructions]
    assert loaded.constants == [1.5, "hi", None, True, 7]
    assert loaded.line_info == original.line_info
    assert [instr.line for instr in loaded.instructions] == original.line_info
    assert loaded.locals == original.locals
    assert loaded.source == "@sample.lua"
    assert loaded.is_vararg == VARARG_ISVARARG
    assert loaded.max_stack_size == original.stack_size()

    child = loaded.prototypes[0]
    assert child.source == "@sample.lua"
    assert child.num_upvalues == 1
    assert child.upvalue_names == ["x"]
    assert [instr.opcode for instr in child.instructions] == [VMOp.GETUPVAL, VMOp.RETURN]


def test_four_byte_size_t() -> None:
    data = LuacWriter(size_t_width=4).dumps(_sample_chunk())
    assert len(data) < len(LuacWriter().dumps(_sample_chunk()))
    assert LuacReader().loads(data).constants[1] == "hi"


def test_writer_rejects_bad_size_t() -> None:
    with pytest.raises(ValueError):
        LuacWriter(size_t_width=2)


def test_unidentified_opcode_cannot_be_written() -> None:
    chunk = LuaChunk(instructions=[VMInstruction(None, 18)])
    with pytest.raises(BytecodeWriteError) as excinfo:
        LuacWriter().dumps(chunk)
    assert "18" in str(excinfo.value)
    assert excinfo.value.entity == "main"


def test_out_of_range_operand() -> None:
    chunk = LuaChunk(instructions=[_ins(VMOp.MOVE, a=300)])
    with pytest.raises(BytecodeWriteError):
        LuacWriter().dumps(chunk)


def test_write_bytecode_creates_file(tmp_path) -> None:
    target = tmp_path / "out.luac"
    assert write_bytecode(_sample_chunk(), target) == target
    assert load_bytecode(target).constants == [1.5, "hi", None, True, 7]


def test_write_bytecode_refuses_existing_file(tmp_path) -> None:
    target = tmp_path / "out.luac"
    target.write_bytes(b"keep me")
    with pytest.raises(BytecodeWriteError) as excinfo:
        write_bytecode(_sample_chunk(), target)
    assert "Output file already exists." in str(excinfo.value)
    assert target.read_bytes() == b"keep me"


def test_reader_rejects_garbage() -> None:
    with pytest.raises(BytecodeReadError):
        LuacReader().loads(b"-- not bytecode")
    data = LuacWriter().dumps(_sample_chunk())
    with pytest.raises(BytecodeReadError):
        LuacReader().loads(data[:-3])
    with pytest.raises(BytecodeReadError):
        LuacReader().loads(data + b"\x00")


def test_standard_loader_runs_the_output() -> None:
    lua51 = pytest.importorskip("lupa.lua51")
    chunk = LuaChunk(
        instructions=[
            _ins(VMOp.LOADK, a=0, bx=0),
            _ins(VMOp.LOADK, a=1, bx=1),
            _ins(VMOp.ADD, a=2, b=0, c=1),
            _ins(VMOp.RETURN, a=2, b=2),
        ],
        constants=[1.5, 2],
        line_info=[1, 1, 2, 3],
        source="@sample.lua",
        is_vararg=VARARG_ISVARARG,
    )
    runtime = lua51.LuaRuntime(unpack_returned_tuples=True)
    run = runtime.eval(
        "function(data) local fn, err = loadstring(data) if not fn then return false, err end return pcall(fn) end"
    )

    ok, value = run(LuacWriter().dumps(chunk))
    assert ok is True, value
    assert value == 3.5
