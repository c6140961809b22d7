"""Read obfuscated Lua source into :mod:`luraph_devirt.lua_ast` trees.

Parsing is delegated to ``luaparser``; its node tree is converted into the
project's closed node set so nothing downstream depends on the parser's
classes.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from luaparser import ast as lua_parser
from luaparser import astnodes

from . import lua_ast as ast
from .exceptions import InputFormatError

LOG = logging.getLogger(__name__)

__all__ = [
    "BYTECODE_MAGIC",
    "convert",
    "load_tree",
    "parse_source",
    "preprocess_source",
    "reject_bytecode",
]

BYTECODE_MAGIC = b"\x1bLua"

_HEADER_COMMENT_WITH_CODE = re.compile(r"\A(--[^\r\n]*?)([ \t\f\v]+)(return\b)")

_BINARY_OPERATORS: Dict[str, str] = {
    "AddOp": "+",
    "SubOp": "-",
    "MultOp": "*",
    "FloatDivOp": "/",
    "FloorDivOp": "//",
    "ModOp": "%",
    "ExpoOp": "^",
    "Concat": "..",
    "EqToOp": "==",
    "NotEqToOp": "~=",
    "LessThanOp": "<",
    "LessOrEqThanOp": "<=",
    "GreaterThanOp": ">",
    "GreaterOrEqThanOp": ">=",
    "AndLoOp": "and",
    "OrLoOp": "or",
    "BAndOp": "&",
    "BOrOp": "|",
    "BXorOp": "~",
    "BShiftLOp": "<<",
    "BShiftROp": ">>",
}

_UNARY_OPERATORS: Dict[str, str] = {
    "UMinusOp": "-",
    "ULNotOp": "not",
    "ULengthOp": "#",
    "ULengthOP": "#",
    "UBNotOp": "~",
}

_IGNORED_STATEMENTS = frozenset({"SemiColon", "Comment"})


def reject_bytecode(data: bytes, *, source: str = "<input>") -> None:
    """Refuse compiled Lua chunks before any decoding or parsing."""

    if data[:4] == BYTECODE_MAGIC:
        raise InputFormatError(
            "Input appears to be compiled Lua bytecode (.luac). "
            "Provide Luraph-obfuscated Lua source instead.",
            entity=source,
        )


def preprocess_source(text: str) -> str:
    """Move code that shares the header comment's line onto its own line."""

    if not text.startswith("--"):
        return text
    match = _HEADER_COMMENT_WITH_CODE.match(text)
    if match is None:
        return text
    return match.group(1) + "\n" + text[match.start(3):]


class _Converter:
    """luaparser node tree -> :mod:`lua_ast` nodes."""

    def __init__(self) -> None:
        self._statements: Dict[str, Callable[[Any], Optional[ast.Stmt]]] = {
            "LocalAssign": self._local_assign,
            "Assign": self._assign,
            "Call": lambda node: ast.CallStmt(self.expr(node)),
            "Invoke": lambda node: ast.CallStmt(self.expr(node)),
            "Return": self._return,
            "If": self._if,
            "While": lambda node: ast.While(self.expr(node.test), self.block(node.body)),
            "Repeat": lambda node: ast.Repeat(self.block(node.body), self.expr(node.test)),
            "Do": lambda node: ast.Do(self.block(node.body)),
            "Fornum": self._fornum,
            "Forin": self._forin,
            "Break": lambda node: ast.Break(),
            "LocalFunction": self._local_function,
            "Function": self._function_stmt,
            "Method": self._method,
        }

    # -- blocks --------------------------------------------------------

    def chunk(self, tree: Any) -> ast.Chunk:
        return ast.Chunk(self.block(tree.body))

    def block(self, block: Any) -> List[ast.Stmt]:
        if block is None:
            return []
        nodes = block.body if isinstance(block, astnodes.Block) else block
        if not isinstance(nodes, list):
            nodes = [nodes]
        result: List[ast.Stmt] = []
        for node in nodes:
            kind = type(node).__name__
            if kind in _IGNORED_STATEMENTS:
                continue
            handler = self._statements.get(kind)
            if handler is None:
                raise InputFormatError(f"unsupported statement {kind}")
            stmt = handler(node)
            if stmt is not None:
                result.append(stmt)
        return result

    # -- statements ----------------------------------------------------

    def _names(self, targets: Any) -> List[str]:
        names: List[str] = []
        for target in targets:
            if isinstance(target, astnodes.Name):
                names.append(target.id)
            else:
                raise InputFormatError(f"unsupported local target {type(target).__name__}")
        return names

    def _exprs(self, values: Any) -> List[ast.Expr]:
        if values is None or values is False:
            return []
        if not isinstance(values, list):
            values = [values]
        return [self.expr(value) for value in values]

    def _local_assign(self, node: Any) -> ast.Stmt:
        return ast.LocalAssign(self._names(node.targets), self._exprs(node.values))

    def _assign(self, node: Any) -> ast.Stmt:
        return ast.Assign(self._exprs(node.targets), self._exprs(node.values))

    def _return(self, node: Any) -> ast.Stmt:
        return ast.Return(self._exprs(node.values))

    def _if(self, node: Any) -> ast.Stmt:
        stmt = ast.If(self.expr(node.test), self.block(node.body))
        orelse = node.orelse
        while isinstance(orelse, astnodes.ElseIf):
            stmt.elseifs.append(ast.ElseIf(self.expr(orelse.test), self.block(orelse.body)))
            orelse = orelse.orelse
        if orelse is not None:
            stmt.orelse = self.block(orelse)
        return stmt

    def _fornum(self, node: Any) -> ast.Stmt:
        step = self.expr(node.step) if node.step is not None else None
        # luaparser fills in an implicit unit step, as a bare int in 4.x
        if isinstance(step, ast.Number) and step.value == 1:
            step = None
        return ast.NumericFor(
            node.target.id,
            self.expr(node.start),
            self.expr(node.stop),
            step,
            self.block(node.body),
        )

    def _forin(self, node: Any) -> ast.Stmt:
        return ast.GenericFor(self._names(node.targets), self._exprs(node.iter), self.block(node.body))

    def _params(self, args: Any) -> Tuple[List[str], bool]:
        params: List[str] = []
        vararg = False
        for arg in args or []:
            if isinstance(arg, astnodes.Name):
                params.append(arg.id)
            elif isinstance(arg, astnodes.Varargs):
                vararg = True
            else:
                raise InputFormatError(f"unsupported parameter {type(arg).__name__}")
        return params, vararg

    def _func(self, node: Any, name: Optional[str], extra: Tuple[str, ...] = ()) -> ast.Function:
        params, vararg = self._params(node.args)
        return ast.Function(list(extra) + params, self.block(node.body), name=name, is_vararg=vararg)

    def _local_function(self, node: Any) -> ast.Stmt:
        name = node.name.id
        return ast.LocalFunction(name, self._func(node, name))

    def _function_stmt(self, node: Any) -> ast.Stmt:
        target = self.expr(node.name)
        return ast.FunctionStmt(target, self._func(node, ast.render_expr(target)))

    def _method(self, node: Any) -> ast.Stmt:
        target = ast.Index(self.expr(node.source), ast.String(node.name.id))
        return ast.FunctionStmt(target, self._func(node, ast.render_expr(target), ("self",)))

    # -- expressions ---------------------------------------------------

    def expr(self, node: Any) -> ast.Expr:
        if isinstance(node, (int, float)) and not isinstance(node, bool):
            return ast.Number(node)
        kind = type(node).__name__
        if kind in _BINARY_OPERATORS:
            return ast.BinOp(self.expr(node.left), _BINARY_OPERATORS[kind], self.expr(node.right))
        if kind in _UNARY_OPERATORS:
            return ast.UnOp(_UNARY_OPERATORS[kind], self.expr(node.operand))
        if isinstance(node, astnodes.Name):
            return ast.Name(node.id)
        if isinstance(node, astnodes.Number):
            return ast.Number(node.n)
        if isinstance(node, astnodes.String):
            value = node.s
            if isinstance(value, bytes):
                value = value.decode("latin-1")
            return ast.String(value)
        if isinstance(node, astnodes.Nil):
            return ast.Nil()
        if isinstance(node, astnodes.TrueExpr):
            return ast.TrueExpr()
        if isinstance(node, astnodes.FalseExpr):
            return ast.FalseExpr()
        if isinstance(node, astnodes.Varargs):
            return ast.Vararg()
        if isinstance(node, astnodes.Index):
            if node.notation == astnodes.IndexNotation.DOT and isinstance(node.idx, astnodes.Name):
                key: ast.Expr = ast.String(node.idx.id)
            else:
                key = self.expr(node.idx)
            return ast.Index(self.expr(node.value), key)
        if isinstance(node, astnodes.Invoke):
            return ast.MethodCall(self.expr(node.source), node.func.id, self._exprs(node.args))
        if isinstance(node, astnodes.Call):
            return ast.Call(self.expr(node.func), self._exprs(node.args))
        if isinstance(node, astnodes.AnonymousFunction):
            return self._func(node, None)
        if isinstance(node, astnodes.Table):
            return self._table(node)
        raise InputFormatError(f"unsupported expression {kind}")

    def _table(self, node: Any) -> ast.Expr:
        fields: List[ast.Field] = []
        for item in node.fields:
            value = self.expr(item.value)
            key = item.key
            if getattr(item, "between_brackets", False):
                fields.append(ast.Field(self.expr(key), value))
            elif isinstance(key, astnodes.Name):
                fields.append(ast.Field(ast.String(key.id), value))
            else:
                fields.append(ast.Field(None, value))
        return ast.TableConstructor(fields)


def convert(tree: Any) -> ast.Chunk:
    """Convert a parsed luaparser ``Chunk``."""

    return _Converter().chunk(tree)


def parse_source(text: str, *, source: str = "<input>") -> ast.Chunk:
    try:
        tree = lua_parser.parse(text)
    except Exception as exc:
        raise InputFormatError(f"cannot parse Lua source: {exc}", entity=source) from exc
    chunk = convert(tree)
    LOG.debug("parsed %s: %d top-level statements", source, len(chunk.body))
    return chunk


def load_tree(path: Union[str, Path]) -> ast.Chunk:
    """Read, validate, preprocess and parse an obfuscated script."""

    path = Path(path)
    data = path.read_bytes()
    reject_bytecode(data, source=str(path))
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    return parse_source(preprocess_source(text), source=str(path))
