"""Handler signature contract and shared structural helpers.

A signature is a named structural predicate over a handler :class:`Function`.
Signatures never look at identifiers chosen by the obfuscator; the only names
they rely on are the pseudo-registers and helpers the renamer assigns
(``stack``, ``constants`` ...), all of which come from
:class:`~luraph_devirt.config.DevirtualizerConfig`.

Statement-count windows are fingerprints of the obfuscator's code-generation
template.  They drift between versions, which is why every signature also
produces an :meth:`HandlerSignature.analyze` report.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, FrozenSet, List, Optional, Sequence

from .. import lua_ast as ast
from ..config import DEFAULT_CONFIG, DevirtualizerConfig
from ..vm.opcodes import VMOp, VMOperand

__all__ = [
    "ARITHMETIC_OPERATORS",
    "BaseHandlerSignature",
    "HandlerSignature",
    "analyze_structure",
    "count_load_patterns",
    "final_assign",
    "first_arithmetic_operator",
    "function_has_conditionals",
    "function_has_loops",
    "is_load_constant_pattern",
    "is_single_assign",
]

ARITHMETIC_OPERATORS = frozenset({"+", "-", "*", "/", "//", "%", "^"})


class HandlerSignature(ABC):
    """Structural fingerprint identifying the canonical operation of a handler."""

    category: ClassVar[str] = "other"
    default_priority: ClassVar[int] = 1000

    __slots__ = ("_opcode", "_description", "_priority", "_config")

    def __init__(
        self,
        opcode: VMOp,
        description: str,
        *,
        priority: Optional[int] = None,
        config: DevirtualizerConfig = DEFAULT_CONFIG,
    ) -> None:
        self._opcode = opcode
        self._description = description
        self._priority = self.default_priority if priority is None else priority
        self._config = config

    @property
    def opcode(self) -> VMOp:
        return self._opcode

    @property
    def description(self) -> str:
        return self._description

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def config(self) -> DevirtualizerConfig:
        return self._config

    @abstractmethod
    def matches(self, fn: ast.Function) -> bool:
        """Return ``True`` when *fn* has this signature's shape."""

    @abstractmethod
    def analyze(self, fn: ast.Function) -> str:
        """Describe how *fn* compares against this signature."""

    @abstractmethod
    def stack_operands(self) -> FrozenSet[VMOperand]:
        """Operands the handler reads or writes."""

    @property
    @abstractmethod
    def has_loops(self) -> bool:
        ...

    @property
    @abstractmethod
    def has_conditionals(self) -> bool:
        ...

    @property
    @abstractmethod
    def arithmetic_operator(self) -> Optional[str]:
        ...

    def __str__(self) -> str:
        return f"{self._opcode.value}: {self._description}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._opcode.value} priority={self._priority}>"


# ---------------------------------------------------------------------------
# Structural helpers


def function_has_loops(fn: ast.Function) -> bool:
    return ast.find_first(fn, ast.LOOP_TYPES) is not None


def function_has_conditionals(fn: ast.Function) -> bool:
    return ast.find_first(fn, ast.If) is not None


def first_arithmetic_operator(fn: ast.Function) -> Optional[str]:
    for node in ast.find_all(fn, ast.BinOp):
        if node.op in ARITHMETIC_OPERATORS:
            return node.op
    return None


def is_single_assign(stmt: object) -> bool:
    return isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 and len(stmt.values) == 1


def final_assign(stmts: Sequence[ast.Stmt]) -> Optional[ast.Assign]:
    """Last top-level assignment in *stmts*."""

    for stmt in reversed(stmts):
        if isinstance(stmt, ast.Assign):
            return stmt
    return None


def is_load_constant_pattern(stmt: object, config: DevirtualizerConfig = DEFAULT_CONFIG) -> bool:
    """``if x > K then v = constants[..] else v = stack[..] end``."""

    if not isinstance(stmt, ast.If) or stmt.elseifs:
        return False
    if not (isinstance(stmt.test, ast.BinOp) and stmt.test.op == ">"):
        return False
    if len(stmt.body) != 1 or not is_single_assign(stmt.body[0]):
        return False
    if stmt.orelse is None or len(stmt.orelse) != 1 or not is_single_assign(stmt.orelse[0]):
        return False
    from_constants = ast.symbol(stmt.body[0].values[0]) == config.constants_name
    from_stack = ast.symbol(stmt.orelse[0].values[0]) == config.stack_name
    return from_constants and from_stack


def count_load_patterns(nodes: Sequence[object], config: DevirtualizerConfig = DEFAULT_CONFIG) -> int:
    return sum(1 for node in nodes if is_load_constant_pattern(node, config))


def analyze_structure(fn: ast.Function) -> str:
    stmts = ast.statements(fn)
    lines: List[str] = [f"Function has {len(stmts)} statements"]
    lines.append(
        "If statements: {ifs}, Assigns: {assigns}, NumericFor: {nfor}, GenericFor: {gfor}, LocalDecl: {local}".format(
            ifs=len(ast.find_all(fn, ast.If)),
            assigns=len(ast.find_all(fn, ast.Assign)),
            nfor=len(ast.find_all(fn, ast.NumericFor)),
            gfor=len(ast.find_all(fn, ast.GenericFor)),
            local=len(ast.find_all(fn, ast.LocalAssign)),
        )
    )
    operator = first_arithmetic_operator(fn)
    if operator is not None:
        lines.append(f"Arithmetic operator: {operator}")
    lines.append(
        f"Has conditionals: {function_has_conditionals(fn)}, Has loops: {function_has_loops(fn)}"
    )
    return "\n".join(lines) + "\n"


class BaseHandlerSignature(HandlerSignature):
    """Signature with the common helpers bound to its configuration."""

    __slots__ = ()

    def is_stack_assign(self, stmt: object) -> bool:
        return is_single_assign(stmt) and ast.symbol(stmt.targets[0]) == self.config.stack_name

    def assigns_from(self, stmt: object, source: str) -> bool:
        """``stack[..] = <source>[..]``."""

        if not self.is_stack_assign(stmt):
            return False
        value = stmt.values[0]
        return isinstance(value, (ast.Name, ast.Index)) and ast.symbol(value) == source

    def header(self, fn: ast.Function, title: str) -> str:
        return f"{title} Handler Analysis for {self.opcode.value}:\n" + analyze_structure(fn)
