from __future__ import annotations

import pytest

import builders as b
from luraph_devirt import lua_ast as ast
from luraph_devirt.config import DevirtualizerConfig
from luraph_devirt.matcher import HandlerMatcher
from luraph_devirt.signatures import (
    ArithmeticHandlerSignature,
    ComparisonHandlerSignature,
    ControlFlowHandlerSignature,
    LoadHandlerSignature,
    SimpleAssignHandlerSignature,
    default_signatures,
)
from luraph_devirt.signatures import control_flow, load, simple_assign
from luraph_devirt.signatures.arithmetic import MAX_STATEMENTS as MAX_ARITHMETIC
from luraph_devirt.signatures.arithmetic import MIN_STATEMENTS as MIN_ARITHMETIC
from luraph_devirt.vm.opcodes import VMOp, VMOperand

HANDLER_CASES = [
    (lambda: b.arithmetic_handler("+"), VMOp.ADD),
    (lambda: b.arithmetic_handler("-"), VMOp.SUB),
    (lambda: b.arithmetic_handler("*"), VMOp.MUL),
    (lambda: b.arithmetic_handler("/"), VMOp.DIV),
    (lambda: b.arithmetic_handler("%"), VMOp.MOD),
    (lambda: b.arithmetic_handler("^"), VMOp.POW),
    (b.move_handler, VMOp.MOVE),
    (b.loadk_handler, VMOp.LOADK),
    (b.getglobal_handler, VMOp.GETGLOBAL),
    (b.getupval_handler, VMOp.GETUPVAL),
    (b.newtable_handler, VMOp.NEWTABLE),
    (lambda: b.unary_handler("-"), VMOp.UNM),
    (lambda: b.unary_handler("not"), VMOp.NOT),
    (lambda: b.unary_handler("#"), VMOp.LEN),
    (b.loadbool_handler, VMOp.LOADBOOL),
    (b.loadnil_handler, VMOp.LOADNIL),
    (b.setlist_handler, VMOp.SETLIST),
    (lambda: b.comparison_handler("=="), VMOp.EQ),
    (lambda: b.comparison_handler("<"), VMOp.LT),
    (lambda: b.comparison_handler("<="), VMOp.LTE),
    (b.jump_handler, VMOp.JUMP),
    (b.call_handler, VMOp.CALL),
    (b.tailcall_handler, VMOp.TAILCALL),
    (b.return_handler, VMOp.RETURN),
    (b.forloop_handler, VMOp.FORLOOP),
    (b.forprep_handler, VMOp.FORPREP),
    (b.tforloop_handler, VMOp.TFORLOOP),
    (b.close_handler, VMOp.CLOSE),
    (b.closure_handler, VMOp.CLOSURE),
    (b.vararg_handler, VMOp.VARARG),
]


@pytest.mark.parametrize("build, expected", HANDLER_CASES, ids=[op.value for _, op in HANDLER_CASES])
def test_default_registry_identifies_template_handlers(build, expected) -> None:
    matcher = HandlerMatcher()
    assert matcher.identify_handler(build(), 1) == expected


def test_default_registry_covers_every_operation() -> None:
    signatures = default_signatures()
    assert len(signatures) == 30
    assert {signature.opcode for signature in signatures} == set(VMOp)


def test_arithmetic_requires_both_operand_loads() -> None:
    fn = b.arithmetic_handler("+")
    del fn.body[6]
    signature = ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation")
    assert not signature.matches(fn)
    assert "Expected 2 load constant patterns, found 1" in signature.analyze(fn)


def test_arithmetic_operator_must_agree() -> None:
    fn = b.arithmetic_handler("-")
    assert not ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation").matches(fn)
    assert ArithmeticHandlerSignature(VMOp.SUB, "-", "Subtraction operation").matches(fn)


def test_arithmetic_statement_window() -> None:
    fn = b.arithmetic_handler("+")
    padding = [b.local(f"pad{i}", b.num(i)) for i in range(4)]
    fn.body[5:5] = padding
    assert len(ast.statements(fn)) == 13
    assert not ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation").matches(fn)


def test_load_pattern_needs_constants_and_stack_branches() -> None:
    fn = b.arithmetic_handler("+")
    load_if = fn.body[6]
    load_if.orelse = [b.assign(b.name("lhs"), b.index("upvalues", "b"))]
    assert not ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation").matches(fn)


def test_comparison_counts_conditionals() -> None:
    signature = ComparisonHandlerSignature(VMOp.EQ, "==", 3, "Equality comparison")
    fn = b.comparison_handler("==")
    assert signature.matches(fn)
    assert signature.comparison_operator == "=="

    fn.body.append(ast.If(b.binop(b.name("a"), "==", b.num(0)), [b.bump_pc()]))
    assert not signature.matches(fn)
    assert "If statements: 4 (expected: 3)" in signature.analyze(fn)


def test_comparison_guard_operator() -> None:
    fn = b.comparison_handler("<")
    assert not ComparisonHandlerSignature(VMOp.EQ, "==", 3, "Equality comparison").matches(fn)
    assert ComparisonHandlerSignature(VMOp.LT, "<", 3, "Less than comparison").matches(fn)


def test_unary_signatures_do_not_shadow_each_other() -> None:
    unm = SimpleAssignHandlerSignature(VMOp.UNM, simple_assign.UNARY_OP, "Unary minus", unary_operator="-")
    length = SimpleAssignHandlerSignature(VMOp.LEN, simple_assign.UNARY_OP, "Length operator", unary_operator="#")
    fn = b.unary_handler("#")
    assert not unm.matches(fn)
    assert length.matches(fn)


def test_simple_assign_rejects_loops() -> None:
    fn = b.move_handler()
    fn.body.insert(5, ast.While(ast.FalseExpr(), []))
    signature = SimpleAssignHandlerSignature(VMOp.MOVE, simple_assign.VAR_TO_VAR, "Move operation")
    assert not signature.matches(fn)
    assert signature.stack_operands() == frozenset({VMOperand.A, VMOperand.B})


def test_simple_assign_unknown_pattern_is_rejected() -> None:
    with pytest.raises(ValueError):
        SimpleAssignHandlerSignature(VMOp.MOVE, "SOMETHING", "Move operation")


def test_setlist_batch_comes_from_configuration() -> None:
    fn = b.setlist_handler(batch=32)
    assert not LoadHandlerSignature(VMOp.SETLIST, load.SETLIST, "Set list").matches(fn)
    config = DevirtualizerConfig(setlist_batch=32)
    assert LoadHandlerSignature(VMOp.SETLIST, load.SETLIST, "Set list", config=config).matches(fn)


def test_loadbool_needs_skip_branch() -> None:
    fn = b.loadbool_handler()
    fn.body[6].orelse = [b.bump_pc()]
    assert not LoadHandlerSignature(VMOp.LOADBOOL, load.LOADBOOL, "Load boolean").matches(fn)


def test_loadnil_loop_must_store_nil() -> None:
    fn = b.loadnil_handler()
    fn.body[5].body[0] = b.assign(b.stack("i"), ast.FalseExpr())
    assert not LoadHandlerSignature(VMOp.LOADNIL, load.LOADNIL, "Load nil").matches(fn)


def test_call_and_tailcall_through_return_helper() -> None:
    call = ControlFlowHandlerSignature(VMOp.CALL, control_flow.CALL, "Function call")
    tailcall = ControlFlowHandlerSignature(VMOp.TAILCALL, control_flow.TAILCALL, "Tail call")
    guard = ast.If(b.binop(b.name("c"), "~=", b.num(0)), [ast.CallStmt(b.call("handle_return", b.name("a")))])

    plain = b.handler(guard)
    assert call.matches(plain)
    assert not tailcall.matches(plain)

    tail = b.handler(guard, ast.Return([b.name("a")]))
    assert tailcall.matches(tail)
    assert not call.matches(tail)


def test_helper_names_come_from_configuration() -> None:
    config = DevirtualizerConfig(assert_name="check")
    forprep = ControlFlowHandlerSignature(VMOp.FORPREP, control_flow.FORPREP, "For loop preparation", config=config)
    assert not forprep.matches(b.forprep_handler())

    fn = b.forprep_handler()
    fn.body[5].call.func = b.name("check")
    assert forprep.matches(fn)


def test_vararg_marker_from_configuration() -> None:
    config = DevirtualizerConfig(vararg_marker="extra_args")
    signature = ControlFlowHandlerSignature(VMOp.VARARG, control_flow.VARARG, "Variable arguments", config=config)
    assert not signature.matches(b.vararg_handler())


def test_control_flow_unknown_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        ControlFlowHandlerSignature(VMOp.JUMP, "GOTO", "Jump operation")


def test_signature_properties() -> None:
    by_opcode = {signature.opcode: signature for signature in default_signatures()}
    assert by_opcode[VMOp.ADD].arithmetic_operator == "+"
    assert by_opcode[VMOp.ADD].has_conditionals
    assert not by_opcode[VMOp.ADD].has_loops
    assert by_opcode[VMOp.JUMP].arithmetic_operator == "+"
    assert by_opcode[VMOp.JUMP].stack_operands() == frozenset({VMOperand.sBx})
    assert by_opcode[VMOp.SETLIST].arithmetic_operator == "*"
    assert by_opcode[VMOp.LOADNIL].has_loops
    assert by_opcode[VMOp.CLOSE].has_loops
    assert by_opcode[VMOp.RETURN].has_conditionals
    assert str(by_opcode[VMOp.MOVE]) == "MOVE: Move operation"


def test_analyze_reports_structure() -> None:
    signature = ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation")
    report = signature.analyze(b.arithmetic_handler("+"))
    assert report.startswith("Arithmetic Handler Analysis for ADD:")
    assert "Function has 9 statements" in report
    assert "Final operation: + (expected: +)" in report


def _counting_loop() -> ast.NumericFor:
    return ast.NumericFor("i", b.num(1), b.num(2), None, [b.bump_pc()])


def test_arithmetic_rejects_loops() -> None:
    fn = b.arithmetic_handler("+")
    fn.body.insert(5, _counting_loop())
    assert MIN_ARITHMETIC <= len(ast.statements(fn)) <= MAX_ARITHMETIC
    assert not ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation").matches(fn)


def test_comparison_rejects_loops() -> None:
    fn = b.comparison_handler("==")
    fn.body.insert(5, _counting_loop())
    assert not ComparisonHandlerSignature(VMOp.EQ, "==", 3, "Equality comparison").matches(fn)


def _swap_jump_operator(fn: ast.Function) -> None:
    fn.body[5].values[0].op = "-"


def _add_forloop_else(fn: ast.Function) -> None:
    fn.body[8].orelse = [b.bump_pc()]


def _compare_tforloop_result_with_eq(fn: ast.Function) -> None:
    fn.body[6].test.op = "=="


def _close_with_pairs(fn: ast.Function) -> None:
    fn.body[5].body[0].iterables[0] = b.name("pairs")


def _closure_without_setmetatable(fn: ast.Function) -> None:
    fn.body[6].values[0].func = b.name("rawset")


def _forprep_without_assert(fn: ast.Function) -> None:
    fn.body[5].call.func = b.name("print")


CONTROL_FLOW_PERTURBATIONS = [
    (b.jump_handler, _swap_jump_operator, VMOp.JUMP, control_flow.JUMP),
    (b.forloop_handler, _add_forloop_else, VMOp.FORLOOP, control_flow.FORLOOP),
    (b.tforloop_handler, _compare_tforloop_result_with_eq, VMOp.TFORLOOP, control_flow.TFORLOOP),
    (b.close_handler, _close_with_pairs, VMOp.CLOSE, control_flow.CLOSE),
    (b.closure_handler, _closure_without_setmetatable, VMOp.CLOSURE, control_flow.CLOSURE),
    (b.forprep_handler, _forprep_without_assert, VMOp.FORPREP, control_flow.FORPREP),
]


@pytest.mark.parametrize(
    "build, perturb, opcode, flow_type",
    CONTROL_FLOW_PERTURBATIONS,
    ids=[case[2].value for case in CONTROL_FLOW_PERTURBATIONS],
)
def test_control_flow_rejects_altered_handlers(build, perturb, opcode, flow_type) -> None:
    signature = ControlFlowHandlerSignature(opcode, flow_type, opcode.value)
    fn = build()
    assert signature.matches(fn)
    perturb(fn)
    assert not signature.matches(fn)


def test_jump_rejects_extra_statement() -> None:
    fn = b.jump_handler()
    fn.body.append(b.bump_pc())
    assert not ControlFlowHandlerSignature(VMOp.JUMP, control_flow.JUMP, "Jump operation").matches(fn)
