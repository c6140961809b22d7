"""Logging helpers for the per-run handler diagnostics dump."""

from __future__ import annotations

import logging
from pathlib import Path

__all__ = [
    "DIAGNOSTICS_LOGGER",
    "configure_debug_file_logger",
    "close_debug_logger",
]

DIAGNOSTICS_LOGGER = "luraph_devirt.diagnostics"

_MARKER = "_devirt_debug_dump"


def _remove_dump_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def configure_debug_file_logger(
    name: str,
    path: Path,
    *,
    level: int = logging.DEBUG,
    formatter: logging.Formatter | None = None,
) -> logging.Logger:
    """Return a logger writing debug traces to ``path``.

    Handlers installed by an earlier call on ``name`` are removed first, so a
    second run replaces the previous dump instead of appending to it.  The
    logger does not propagate: the dump never reaches the console handlers.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    _remove_dump_handlers(logger)

    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    setattr(handler, _MARKER, True)
    handler.setFormatter(formatter or logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger


def close_debug_logger(logger: logging.Logger) -> None:
    """Tear down handlers installed by :func:`configure_debug_file_logger`."""

    _remove_dump_handlers(logger)
