"""Command line interface for the devirtualizer."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import lua_ast as ast
from .chunk_optimizer import ChunkOptimizer, remove_closure_anti_symbolic_trick
from .config import DEFAULT_CONFIG, DevirtualizerConfig, load_config
from .devirtualizer import Devirtualizer
from .exceptions import DevirtualizationError, HandlerIdentificationError
from .frontend import load_tree
from .logging_config import DIAGNOSTICS_LOGGER, close_debug_logger, configure_debug_file_logger
from .luac_reader import load_bytecode
from .luac_writer import write_bytecode
from .matcher import HandlerMatcher
from .payload import load_payload_json
from .redirection import is_redirector
from .vm_layout import discover_structure

LOG = logging.getLogger(__name__)

__all__ = ["build_parser", "configure_logging", "main"]


def configure_logging(verbose: bool) -> None:
    """Configure root logging handlers."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    stream = logging.StreamHandler()
    stream.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(stream)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="luraph-devirt",
        description="Recover Lua 5.1 bytecode from a renamed, constant-folded Luraph script",
    )
    parser.add_argument("-i", "--input", type=Path, help="obfuscated Lua source")
    parser.add_argument("-b", "--bytecode", action="store_true", help="print the recovered bytecode listing")
    parser.add_argument("-o", "--output", type=Path, help="write the recovered chunk as a .luac file")
    parser.add_argument("--payload", type=Path, help="pre-captured decode_chunk result as JSON")
    parser.add_argument("--config", type=Path, help="JSON configuration overriding the template constants")
    parser.add_argument("--diagnostics", type=Path, help="write per-handler signature analysis to this file")
    parser.add_argument("--disassemble", type=Path, metavar="LUAC", help="print the listing of a .luac file")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def dump_diagnostics(tree: ast.Chunk, config: DevirtualizerConfig, path: Path) -> int:
    """Write the full signature evaluation of every handler to *path*."""

    structure = discover_structure(tree)
    matcher = HandlerMatcher(config=config)
    logger = configure_debug_file_logger(DIAGNOSTICS_LOGGER, path)
    count = 0
    try:
        for index, fn in sorted(structure.handler_table.handlers.items()):
            if is_redirector(fn, structure.dispatch_table.name):
                logger.debug("handler %d: redirector\n", index)
                continue
            logger.debug("%s", matcher.diagnose(fn, index).render())
            count += 1
    finally:
        close_debug_logger(logger)
    LOG.info("wrote diagnostics for %d handlers to %s", count, path)
    return count


def _disassemble(path: Path) -> int:
    load_bytecode(path).print()
    return 0


def _devirtualize(args: argparse.Namespace) -> int:
    config = load_config(args.config) if args.config else DEFAULT_CONFIG
    if args.output is not None and args.output.exists():
        print("ERROR: Output file already exists.", file=sys.stderr)
        return 1

    tree = load_tree(args.input)
    if args.diagnostics is not None:
        dump_diagnostics(tree, config, args.diagnostics)
    payload = load_payload_json(args.payload) if args.payload else None

    result = Devirtualizer(tree, payload, config=config).process()
    chunk = ChunkOptimizer().optimize(result.chunk)
    chunk = remove_closure_anti_symbolic_trick(chunk)

    if not result.clean:
        print(
            f"WARNING: {len(result.warnings)} redirection(s) could not be processed; output is best effort",
            file=sys.stderr,
        )
        for warning in result.warnings:
            print(f"  {warning}", file=sys.stderr)
    if result.unresolved:
        print(
            "WARNING: unidentified opcode ids (unused by the payload): "
            + ", ".join(str(num) for num in result.unresolved),
            file=sys.stderr,
        )

    if args.bytecode:
        chunk.print()
    if args.output is not None:
        write_bytecode(chunk, args.output, size_t_width=config.size_t_width)
        LOG.info("wrote %s", args.output)

    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.input is None and args.disassemble is None:
        parser.error("one of -i/--input or --disassemble is required")

    configure_logging(args.verbose)
    try:
        if args.disassemble is not None:
            return _disassemble(args.disassemble)
        return _devirtualize(args)
    except DevirtualizationError as exc:
        print(f"ERROR: {exc.describe()}", file=sys.stderr)
        if isinstance(exc, HandlerIdentificationError) and exc.diagnostic is not None:
            print(exc.diagnostic.render(), file=sys.stderr, end="")
        return 1
    except (OSError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI wrapper
    raise SystemExit(main())
