"""Structural handler signatures, one family per opcode category."""

from __future__ import annotations

from typing import List

from ..config import DEFAULT_CONFIG, DevirtualizerConfig
from ..vm.opcodes import VMOp
from . import control_flow, load, simple_assign
from .arithmetic import ArithmeticHandlerSignature
from .base import BaseHandlerSignature, HandlerSignature
from .comparison import ComparisonHandlerSignature
from .control_flow import ControlFlowHandlerSignature
from .load import LoadHandlerSignature
from .simple_assign import SimpleAssignHandlerSignature

__all__ = [
    "ArithmeticHandlerSignature",
    "BaseHandlerSignature",
    "ComparisonHandlerSignature",
    "ControlFlowHandlerSignature",
    "HandlerSignature",
    "LoadHandlerSignature",
    "SimpleAssignHandlerSignature",
    "default_signatures",
]


def default_signatures(config: DevirtualizerConfig = DEFAULT_CONFIG) -> List[HandlerSignature]:
    """Return the built-in registry in registration order."""

    kw = {"config": config}
    return [
        ArithmeticHandlerSignature(VMOp.ADD, "+", "Addition operation", **kw),
        ArithmeticHandlerSignature(VMOp.SUB, "-", "Subtraction operation", **kw),
        ArithmeticHandlerSignature(VMOp.MUL, "*", "Multiplication operation", **kw),
        ArithmeticHandlerSignature(VMOp.DIV, "/", "Division operation", **kw),
        ArithmeticHandlerSignature(VMOp.MOD, "%", "Modulo operation", **kw),
        ArithmeticHandlerSignature(VMOp.POW, "^", "Power operation", **kw),
        SimpleAssignHandlerSignature(VMOp.MOVE, simple_assign.VAR_TO_VAR, "Move operation", **kw),
        SimpleAssignHandlerSignature(VMOp.LOADK, simple_assign.STACK_FROM_CONSTANTS, "Load constant", **kw),
        SimpleAssignHandlerSignature(VMOp.GETGLOBAL, simple_assign.STACK_FROM_ENVIRONMENT, "Get global", **kw),
        SimpleAssignHandlerSignature(VMOp.GETUPVAL, simple_assign.STACK_FROM_UPVALUES, "Get upvalue", **kw),
        SimpleAssignHandlerSignature(VMOp.NEWTABLE, simple_assign.TABLE_CONSTRUCT, "New table", **kw),
        SimpleAssignHandlerSignature(VMOp.UNM, simple_assign.UNARY_OP, "Unary minus", unary_operator="-", **kw),
        SimpleAssignHandlerSignature(VMOp.NOT, simple_assign.UNARY_OP, "Logical not", unary_operator="not", **kw),
        SimpleAssignHandlerSignature(VMOp.LEN, simple_assign.UNARY_OP, "Length operator", unary_operator="#", **kw),
        LoadHandlerSignature(VMOp.LOADBOOL, load.LOADBOOL, "Load boolean", **kw),
        LoadHandlerSignature(VMOp.LOADNIL, load.LOADNIL, "Load nil", **kw),
        LoadHandlerSignature(VMOp.SETLIST, load.SETLIST, "Set list", **kw),
        ComparisonHandlerSignature(VMOp.EQ, "==", 3, "Equality comparison", **kw),
        ComparisonHandlerSignature(VMOp.LT, "<", 3, "Less than comparison", **kw),
        ComparisonHandlerSignature(VMOp.LTE, "<=", 3, "Less than or equal comparison", **kw),
        ControlFlowHandlerSignature(VMOp.JUMP, control_flow.JUMP, "Jump operation", **kw),
        ControlFlowHandlerSignature(VMOp.CALL, control_flow.CALL, "Function call", **kw),
        ControlFlowHandlerSignature(VMOp.TAILCALL, control_flow.TAILCALL, "Tail call", **kw),
        ControlFlowHandlerSignature(VMOp.RETURN, control_flow.RETURN, "Return from function", **kw),
        ControlFlowHandlerSignature(VMOp.FORLOOP, control_flow.FORLOOP, "For loop iteration", **kw),
        ControlFlowHandlerSignature(VMOp.FORPREP, control_flow.FORPREP, "For loop preparation", **kw),
        ControlFlowHandlerSignature(VMOp.TFORLOOP, control_flow.TFORLOOP, "Table for loop", **kw),
        ControlFlowHandlerSignature(VMOp.CLOSE, control_flow.CLOSE, "Close variable scope", **kw),
        ControlFlowHandlerSignature(VMOp.CLOSURE, control_flow.CLOSURE, "Create closure", **kw),
        ControlFlowHandlerSignature(VMOp.VARARG, control_flow.VARARG, "Variable arguments", **kw),
    ]
