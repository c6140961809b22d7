"""Registry of handler signatures and first-match identification."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import lua_ast as ast
from .config import DEFAULT_CONFIG, DevirtualizerConfig
from .signatures import HandlerSignature, default_signatures
from .vm.opcodes import VMOp

LOG = logging.getLogger(__name__)

__all__ = [
    "HandlerMatcher",
    "MatchDiagnostic",
    "MatchResult",
    "SignatureEvaluation",
]

_RULE = "-" * 61


@dataclass(frozen=True)
class SignatureEvaluation:
    """Outcome of testing one signature against one handler."""

    signature: HandlerSignature
    matched: bool
    analysis: str


@dataclass(frozen=True)
class MatchDiagnostic:
    """Per-signature evaluation of a handler, in registry order."""

    index: int
    statement_count: int
    evaluations: Tuple[SignatureEvaluation, ...]

    @property
    def matched(self) -> Tuple[HandlerSignature, ...]:
        return tuple(item.signature for item in self.evaluations if item.matched)

    def summary(self) -> str:
        return (
            f"handler {self.index}: {self.statement_count} statements, "
            f"{len(self.matched)} of {len(self.evaluations)} signatures matched"
        )

    def render(self) -> str:
        lines = [
            f"Detailed analysis for handler at opcode index {self.index}:",
            "=" * 61,
        ]
        for item in self.evaluations:
            lines.append("")
            lines.append(f"Testing signature: {item.signature}")
            lines.append("Signature analysis:")
            lines.append(item.analysis.rstrip("\n"))
            lines.append(f"Match result: {'MATCH' if item.matched else 'NO MATCH'}")
            lines.append(_RULE)
        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class MatchResult:
    """Identified opcode, or ``None`` together with the reason."""

    opcode: Optional[VMOp]
    diagnostic: Optional[MatchDiagnostic] = None

    @property
    def identified(self) -> bool:
        return self.opcode is not None


class HandlerMatcher:
    """Ordered signature registry.

    Signatures are tried by ascending ``priority``; equal priorities keep
    registration order.  The first match wins.
    """

    def __init__(
        self,
        signatures: Optional[Iterable[HandlerSignature]] = None,
        *,
        config: DevirtualizerConfig = DEFAULT_CONFIG,
    ) -> None:
        self._config = config
        self._entries: List[Tuple[int, int, HandlerSignature]] = []
        self._counter = 0
        if signatures is None:
            signatures = default_signatures(config)
        for signature in signatures:
            self.add_signature(signature)

    @property
    def config(self) -> DevirtualizerConfig:
        return self._config

    # -- registry ------------------------------------------------------

    def add_signature(self, signature: HandlerSignature) -> None:
        self._entries.append((signature.priority, self._counter, signature))
        self._counter += 1
        self._entries.sort(key=lambda entry: (entry[0], entry[1]))

    def remove_signature(self, opcode: VMOp) -> bool:
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry[2].opcode != opcode]
        return len(self._entries) != before

    def signatures(self) -> List[HandlerSignature]:
        return [entry[2] for entry in self._entries]

    def has_signature_for(self, opcode: VMOp) -> bool:
        return any(entry[2].opcode == opcode for entry in self._entries)

    def coverage_for(self, opcode: VMOp) -> List[HandlerSignature]:
        return [entry[2] for entry in self._entries if entry[2].opcode == opcode]

    def coverage_stats(self) -> Dict[str, int]:
        counts = Counter(entry[2].category for entry in self._entries)
        stats: Dict[str, int] = {"total": len(self._entries)}
        for category in sorted(counts):
            stats[category] = counts[category]
        return stats

    def __len__(self) -> int:
        return len(self._entries)

    # -- matching ------------------------------------------------------

    def matching_signatures(self, fn: ast.Function) -> List[HandlerSignature]:
        return [entry[2] for entry in self._entries if entry[2].matches(fn)]

    def identify_handler(self, fn: ast.Function, index: int) -> Optional[VMOp]:
        return self.identify(fn, index).opcode

    def identify(self, fn: ast.Function, index: int) -> MatchResult:
        LOG.debug("Attempting to identify handler at opcode index %d", index)
        for _, _, signature in self._entries:
            if signature.matches(fn):
                LOG.info("Matched handler at index %d: %s", index, signature)
                return MatchResult(signature.opcode)
        diagnostic = self.diagnose(fn, index)
        LOG.warning("Failed to identify handler at opcode index %d", index)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("%s", diagnostic.render())
        else:
            LOG.info(
                "Handler structure: %d statements, %d ifs, %d assigns",
                diagnostic.statement_count,
                len(ast.find_all(fn, ast.If)),
                len(ast.find_all(fn, ast.Assign)),
            )
        return MatchResult(None, diagnostic)

    def diagnose(self, fn: ast.Function, index: int) -> MatchDiagnostic:
        evaluations = tuple(
            SignatureEvaluation(signature, signature.matches(fn), signature.analyze(fn))
            for _, _, signature in self._entries
        )
        return MatchDiagnostic(index, len(ast.statements(fn)), evaluations)

    def identify_all(self, handlers: Sequence[Tuple[int, ast.Function]]) -> Dict[int, MatchResult]:
        """Identify every ``(index, handler)`` pair."""

        return {index: self.identify(fn, index) for index, fn in handlers}
