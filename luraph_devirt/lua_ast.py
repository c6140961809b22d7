"""Closed Lua syntax tree consumed by the devirtualizer.

The node set is deliberately small and closed: every consumer dispatches over
the concrete classes below and :func:`children` raises for anything else, so a
new node kind surfaces as an error instead of being silently skipped.  The
front end (:mod:`luraph_devirt.frontend`) converts luaparser trees into these
nodes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Type, TypeVar, Union


# ---------------------------------------------------------------------------
# Expression nodes


class Expr:
    """Base class for all Lua expression nodes."""


@dataclass(slots=True)
class Nil(Expr):
    pass


@dataclass(slots=True)
class TrueExpr(Expr):
    pass


@dataclass(slots=True)
class FalseExpr(Expr):
    pass


@dataclass(slots=True)
class Number(Expr):
    value: Union[int, float]


@dataclass(slots=True)
class String(Expr):
    value: str


@dataclass(slots=True)
class Vararg(Expr):
    pass


@dataclass(slots=True)
class Name(Expr):
    ident: str


@dataclass(slots=True)
class Index(Expr):
    table: Expr
    key: Expr


@dataclass(slots=True)
class Call(Expr):
    func: Expr
    args: List[Expr] = field(default_factory=list)


@dataclass(slots=True)
class MethodCall(Expr):
    source: Expr
    method: str
    args: List[Expr] = field(default_factory=list)


@dataclass(slots=True)
class BinOp(Expr):
    left: Expr
    op: str
    right: Expr


@dataclass(slots=True)
class UnOp(Expr):
    op: str
    operand: Expr


@dataclass(slots=True)
class Field:
    key: Optional[Expr]
    value: Expr


@dataclass(slots=True)
class TableConstructor(Expr):
    fields: List[Field] = field(default_factory=list)


@dataclass(slots=True, eq=False)
class Function(Expr):
    """A function body; also the unit a handler signature is evaluated on.

    Functions compare by identity so they can key handler mappings.
    """

    params: List[str] = field(default_factory=list)
    body: List["Stmt"] = field(default_factory=list)
    name: Optional[str] = None
    is_vararg: bool = False


# ---------------------------------------------------------------------------
# Statement nodes


class Stmt:
    """Base class for Lua statements."""


@dataclass(slots=True)
class LocalAssign(Stmt):
    targets: List[str]
    values: List[Expr] = field(default_factory=list)


@dataclass(slots=True)
class Assign(Stmt):
    targets: List[Expr]
    values: List[Expr]


@dataclass(slots=True)
class CallStmt(Stmt):
    call: Union[Call, MethodCall]


@dataclass(slots=True)
class Return(Stmt):
    values: List[Expr] = field(default_factory=list)


@dataclass(slots=True)
class ElseIf:
    test: Expr
    body: List[Stmt] = field(default_factory=list)


@dataclass(slots=True)
class If(Stmt):
    test: Expr
    body: List[Stmt] = field(default_factory=list)
    elseifs: List[ElseIf] = field(default_factory=list)
    orelse: Optional[List[Stmt]] = None


@dataclass(slots=True)
class While(Stmt):
    test: Expr
    body: List[Stmt]


@dataclass(slots=True)
class Repeat(Stmt):
    body: List[Stmt]
    test: Expr


@dataclass(slots=True)
class NumericFor(Stmt):
    var: str
    start: Expr
    stop: Expr
    step: Optional[Expr]
    body: List[Stmt]


@dataclass(slots=True)
class GenericFor(Stmt):
    vars: List[str]
    iterables: List[Expr]
    body: List[Stmt]


@dataclass(slots=True)
class Do(Stmt):
    body: List[Stmt] = field(default_factory=list)


@dataclass(slots=True)
class Break(Stmt):
    pass


@dataclass(slots=True)
class LocalFunction(Stmt):
    name: str
    func: Function


@dataclass(slots=True)
class FunctionStmt(Stmt):
    target: Expr
    func: Function


@dataclass(slots=True)
class Chunk:
    body: List[Stmt] = field(default_factory=list)


Node = Union[Expr, Stmt, Field, ElseIf, Chunk]
LOOP_TYPES = (NumericFor, GenericFor, While, Repeat)

N = TypeVar("N")

LUA_KEYWORDS = frozenset(
    {
        "and", "break", "do", "else", "elseif", "end", "false", "for", "function", "goto",
        "if", "in", "local", "nil", "not", "or", "repeat", "return", "then", "true",
        "until", "while",
    }
)


# ---------------------------------------------------------------------------
# Traversal


def children(node: object) -> Iterator[object]:
    """Yield the direct child nodes of *node* in source order."""

    if isinstance(node, (Nil, TrueExpr, FalseExpr, Number, String, Vararg, Name, Break)):
        return
    if isinstance(node, Index):
        yield node.table
        yield node.key
    elif isinstance(node, Call):
        yield node.func
        yield from node.args
    elif isinstance(node, MethodCall):
        yield node.source
        yield from node.args
    elif isinstance(node, BinOp):
        yield node.left
        yield node.right
    elif isinstance(node, UnOp):
        yield node.operand
    elif isinstance(node, Field):
        if node.key is not None:
            yield node.key
        yield node.value
    elif isinstance(node, TableConstructor):
        yield from node.fields
    elif isinstance(node, Function):
        yield from node.body
    elif isinstance(node, LocalAssign):
        yield from node.values
    elif isinstance(node, Assign):
        yield from node.targets
        yield from node.values
    elif isinstance(node, CallStmt):
        yield node.call
    elif isinstance(node, Return):
        yield from node.values
    elif isinstance(node, ElseIf):
        yield node.test
        yield from node.body
    elif isinstance(node, If):
        yield node.test
        yield from node.body
        yield from node.elseifs
        if node.orelse is not None:
            yield from node.orelse
    elif isinstance(node, While):
        yield node.test
        yield from node.body
    elif isinstance(node, Repeat):
        yield from node.body
        yield node.test
    elif isinstance(node, NumericFor):
        yield node.start
        yield node.stop
        if node.step is not None:
            yield node.step
        yield from node.body
    elif isinstance(node, GenericFor):
        yield from node.iterables
        yield from node.body
    elif isinstance(node, Do):
        yield from node.body
    elif isinstance(node, LocalFunction):
        yield node.func
    elif isinstance(node, FunctionStmt):
        yield node.target
        yield node.func
    elif isinstance(node, Chunk):
        yield from node.body
    elif isinstance(node, list):
        yield from node
    else:
        raise TypeError(f"Unsupported node: {node!r}")


def walk(node: object) -> Iterator[object]:
    """Pre-order traversal of *node* and all of its descendants."""

    stack = [node]
    while stack:
        current = stack.pop()
        if not isinstance(current, list):
            yield current
        stack.extend(reversed(list(children(current))))


def walk_scope(node: object) -> Iterator[object]:
    """Like :func:`walk` but does not enter nested function bodies."""

    stack = [node]
    while stack:
        current = stack.pop()
        if not isinstance(current, list):
            yield current
        if isinstance(current, Function) and current is not node:
            continue
        stack.extend(reversed(list(children(current))))


def find_all(node: object, kind: Union[Type[N], tuple]) -> List[N]:
    """Return every descendant of *node* (excluding *node*) that is a *kind*."""

    return [item for item in walk(node) if item is not node and isinstance(item, kind)]


def find_first(node: object, kind: Union[Type[N], tuple]) -> Optional[N]:
    for item in walk(node):
        if item is not node and isinstance(item, kind):
            return item  # type: ignore[return-value]
    return None


def symbol(expr: object) -> Optional[str]:
    """Return the root identifier of a ``Name``/``Index``/``Call`` chain."""

    while True:
        if isinstance(expr, Name):
            return expr.ident
        if isinstance(expr, Index):
            expr = expr.table
        elif isinstance(expr, Call):
            expr = expr.func
        elif isinstance(expr, MethodCall):
            expr = expr.source
        else:
            return None


def statements(fn: Function) -> List[Stmt]:
    """Body statements of *fn* without a trailing ``return``."""

    if fn.body and isinstance(fn.body[-1], Return):
        return fn.body[:-1]
    return list(fn.body)


def trailing_return(fn: Function) -> Optional[Return]:
    if fn.body and isinstance(fn.body[-1], Return):
        return fn.body[-1]  # type: ignore[return-value]
    return None


def number_value(expr: object) -> Optional[Union[int, float]]:
    """Literal numeric value of *expr*, folding a unary minus."""

    if isinstance(expr, Number):
        return expr.value
    if isinstance(expr, UnOp) and expr.op == "-" and isinstance(expr.operand, Number):
        return -expr.operand.value
    return None


# ---------------------------------------------------------------------------
# Source renderer


def _render_number(value: Union[int, float]) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "(0/0)"
    if math.isinf(value):
        return "math.huge" if value > 0 else "(-math.huge)"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _render_string(value: str) -> str:
    out: List[str] = ['"']
    for ch in value:
        code = ord(ch)
        raw = [code] if code < 256 else list(ch.encode("utf-8"))
        for byte in raw:
            if byte == 0x5C:
                out.append("\\\\")
            elif byte == 0x22:
                out.append('\\"')
            elif byte == 0x0A:
                out.append("\\n")
            elif byte == 0x0D:
                out.append("\\r")
            elif byte == 0x09:
                out.append("\\t")
            elif 0x20 <= byte < 0x7F:
                out.append(chr(byte))
            else:
                out.append(f"\\{byte:03d}")
    out.append('"')
    return "".join(out)


def _render_prefix(expr: Expr) -> str:
    rendered = render_expr(expr)
    if isinstance(expr, (Name, Index, Call, MethodCall)):
        return rendered
    return f"({rendered})"


def _render_operand(expr: Expr) -> str:
    rendered = render_expr(expr)
    if isinstance(expr, (BinOp, UnOp, Function)):
        return f"({rendered})"
    return rendered


def render_expr(expr: Expr, indent: str = "    ", level: int = 0) -> str:
    if isinstance(expr, Nil):
        return "nil"
    if isinstance(expr, TrueExpr):
        return "true"
    if isinstance(expr, FalseExpr):
        return "false"
    if isinstance(expr, Number):
        return _render_number(expr.value)
    if isinstance(expr, String):
        return _render_string(expr.value)
    if isinstance(expr, Vararg):
        return "..."
    if isinstance(expr, Name):
        return expr.ident
    if isinstance(expr, Index):
        key = expr.key
        if (
            isinstance(key, String)
            and key.value.isidentifier()
            and key.value.isascii()
            and key.value not in LUA_KEYWORDS
        ):
            return f"{_render_prefix(expr.table)}.{key.value}"
        return f"{_render_prefix(expr.table)}[{render_expr(key)}]"
    if isinstance(expr, Call):
        args = ", ".join(render_expr(arg, indent, level) for arg in expr.args)
        return f"{_render_prefix(expr.func)}({args})"
    if isinstance(expr, MethodCall):
        args = ", ".join(render_expr(arg, indent, level) for arg in expr.args)
        return f"{_render_prefix(expr.source)}:{expr.method}({args})"
    if isinstance(expr, BinOp):
        return f"{_render_operand(expr.left)} {expr.op} {_render_operand(expr.right)}"
    if isinstance(expr, UnOp):
        operand = _render_operand(expr.operand)
        if expr.op == "not":
            return f"not {operand}"
        if expr.op == "-" and operand.startswith("-"):
            return f"-({operand})"
        return f"{expr.op}{operand}"
    if isinstance(expr, TableConstructor):
        if not expr.fields:
            return "{}"
        parts: List[str] = []
        for item in expr.fields:
            value = render_expr(item.value, indent, level)
            if item.key is None:
                parts.append(value)
            else:
                parts.append(f"[{render_expr(item.key)}] = {value}")
        return "{" + ", ".join(parts) + "}"
    if isinstance(expr, Function):
        header = f"function({_render_params(expr)})"
        body = _render_block(expr.body, indent, level + 1)
        return "\n".join([header, *body, f"{indent * level}end"])
    raise TypeError(f"Unsupported expression: {expr!r}")


def _render_params(fn: Function) -> str:
    params = list(fn.params)
    if fn.is_vararg:
        params.append("...")
    return ", ".join(params)


def _render_block(body: Sequence[Stmt], indent: str, level: int) -> List[str]:
    lines: List[str] = []
    pad = indent * level

    def expr(node: Expr) -> str:
        return render_expr(node, indent, level)

    for stmt in body:
        if isinstance(stmt, LocalAssign):
            targets = ", ".join(stmt.targets)
            if stmt.values:
                lines.append(f"{pad}local {targets} = {', '.join(expr(v) for v in stmt.values)}")
            else:
                lines.append(f"{pad}local {targets}")
        elif isinstance(stmt, Assign):
            targets = ", ".join(expr(t) for t in stmt.targets)
            lines.append(f"{pad}{targets} = {', '.join(expr(v) for v in stmt.values)}")
        elif isinstance(stmt, CallStmt):
            lines.append(f"{pad}{expr(stmt.call)}")
        elif isinstance(stmt, Return):
            if stmt.values:
                lines.append(f"{pad}return {', '.join(expr(v) for v in stmt.values)}")
            else:
                lines.append(f"{pad}return")
        elif isinstance(stmt, If):
            lines.append(f"{pad}if {expr(stmt.test)} then")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            for clause in stmt.elseifs:
                lines.append(f"{pad}elseif {expr(clause.test)} then")
                lines.extend(_render_block(clause.body, indent, level + 1))
            if stmt.orelse is not None:
                lines.append(f"{pad}else")
                lines.extend(_render_block(stmt.orelse, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, While):
            lines.append(f"{pad}while {expr(stmt.test)} do")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, Repeat):
            lines.append(f"{pad}repeat")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            lines.append(f"{pad}until {expr(stmt.test)}")
        elif isinstance(stmt, NumericFor):
            bounds = f"{expr(stmt.start)}, {expr(stmt.stop)}"
            if stmt.step is not None:
                bounds += f", {expr(stmt.step)}"
            lines.append(f"{pad}for {stmt.var} = {bounds} do")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, GenericFor):
            iterables = ", ".join(expr(e) for e in stmt.iterables)
            lines.append(f"{pad}for {', '.join(stmt.vars)} in {iterables} do")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, Do):
            lines.append(f"{pad}do")
            lines.extend(_render_block(stmt.body, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, Break):
            lines.append(f"{pad}break")
        elif isinstance(stmt, LocalFunction):
            lines.append(f"{pad}local function {stmt.name}({_render_params(stmt.func)})")
            lines.extend(_render_block(stmt.func.body, indent, level + 1))
            lines.append(f"{pad}end")
        elif isinstance(stmt, FunctionStmt):
            lines.append(f"{pad}function {expr(stmt.target)}({_render_params(stmt.func)})")
            lines.extend(_render_block(stmt.func.body, indent, level + 1))
            lines.append(f"{pad}end")
        else:
            raise TypeError(f"Unsupported statement: {stmt!r}")
    return lines


def to_source(node: object, *, indent: str = "    ") -> str:
    """Render *node* (chunk, function, statement list or expression) as Lua."""

    if isinstance(node, Chunk):
        return "\n".join(_render_block(node.body, indent, 0))
    if isinstance(node, Function):
        return "\n".join(_render_block(node.body, indent, 0))
    if isinstance(node, list):
        return "\n".join(_render_block(node, indent, 0))
    if isinstance(node, Stmt):
        return "\n".join(_render_block([node], indent, 0))
    if isinstance(node, Expr):
        return render_expr(node, indent)
    raise TypeError(f"Unsupported node: {node!r}")


__all__ = [
    "Assign",
    "BinOp",
    "Break",
    "Call",
    "CallStmt",
    "Chunk",
    "Do",
    "ElseIf",
    "Expr",
    "FalseExpr",
    "Field",
    "Function",
    "FunctionStmt",
    "GenericFor",
    "If",
    "Index",
    "LOOP_TYPES",
    "LocalAssign",
    "LocalFunction",
    "MethodCall",
    "Name",
    "Nil",
    "Number",
    "NumericFor",
    "Repeat",
    "Return",
    "Stmt",
    "String",
    "TableConstructor",
    "TrueExpr",
    "UnOp",
    "Vararg",
    "While",
    "children",
    "find_all",
    "find_first",
    "number_value",
    "render_expr",
    "statements",
    "symbol",
    "to_source",
    "trailing_return",
    "walk",
    "walk_scope",
]
