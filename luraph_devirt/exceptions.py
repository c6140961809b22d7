"""Exception hierarchy for the devirtualizer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .matcher import MatchDiagnostic


class DevirtualizationError(Exception):
    """Base class for all devirtualization related errors.

    ``stage`` names the pipeline stage that failed and ``entity`` the opcode,
    index or file involved, when there is one.
    """

    stage = "devirtualize"

    def __init__(self, message: str, *, entity: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity = entity

    def describe(self) -> str:
        if self.entity:
            return f"[{self.stage}] {self.entity}: {self}"
        return f"[{self.stage}] {self}"


class InputFormatError(DevirtualizationError):
    """Raised when the input is compiled bytecode or cannot be parsed."""

    stage = "input"


class MetadataResolutionError(DevirtualizationError):
    """Raised when decode_chunk indices cannot be located."""

    stage = "metadata"

    def __init__(self, missing: Iterable[str], message: Optional[str] = None) -> None:
        self.missing: Tuple[str, ...] = tuple(missing)
        names = ", ".join(self.missing)
        super().__init__(message or f"unresolved decode_chunk indices: {names}", entity=names)


class VMStructureError(DevirtualizationError):
    """Raised when the handler or dispatch tables cannot be discovered."""

    stage = "structure"


class HandlerIdentificationError(DevirtualizationError):
    """Raised when an instruction's handler matches no registered signature."""

    stage = "handlers"

    def __init__(
        self,
        message: str,
        *,
        opcode_num: Optional[int] = None,
        diagnostic: Optional["MatchDiagnostic"] = None,
    ) -> None:
        entity = f"opcode {opcode_num}" if opcode_num is not None else None
        super().__init__(message, entity=entity)
        self.opcode_num = opcode_num
        self.diagnostic = diagnostic


class RedirectionError(DevirtualizationError):
    """Raised for malformed or unexpected redirection shapes."""

    stage = "redirection"


class PayloadCaptureError(DevirtualizationError):
    """Raised when the decode routine cannot be executed to capture the payload."""

    stage = "capture"


class BytecodeWriteError(DevirtualizationError):
    """Raised when a chunk cannot be written to disk."""

    stage = "write"


class BytecodeReadError(DevirtualizationError):
    """Raised when a Lua 5.1 bytecode blob is malformed."""

    stage = "read"


__all__ = [
    "BytecodeReadError",
    "BytecodeWriteError",
    "DevirtualizationError",
    "HandlerIdentificationError",
    "InputFormatError",
    "MetadataResolutionError",
    "PayloadCaptureError",
    "RedirectionError",
    "VMStructureError",
]
