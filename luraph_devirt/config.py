"""Run configuration for the devirtualizer.

The defaults describe the code-generation template of the supported
obfuscator versions: helper names the renamer assigns, the pseudo-register
names handlers operate on and the bytecode writer options.  A JSON file with
the same field names can override any of them, which is how new obfuscator
versions are adapted without touching the signatures.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from .vm.instruction import InstructionLayout

LOG = logging.getLogger(__name__)

__all__ = ["DevirtualizerConfig", "DEFAULT_CONFIG", "config_from_mapping", "load_config"]


@dataclass(frozen=True)
class DevirtualizerConfig:
    stack_name: str = "stack"
    constants_name: str = "constants"
    environment_name: str = "environment"
    upvalues_name: str = "upvalues"

    handle_return_name: str = "handle_return"
    assert_name: str = "assert"
    next_name: str = "next"
    setmetatable_name: str = "setmetatable"
    vararg_marker: str = "varargsz"
    setlist_batch: int = 50
    rk_threshold: int = 255

    decode_routine: str = "decode_chunk"
    layout: Optional[InstructionLayout] = None

    source_name: str = "@devirtualized"
    size_t_width: int = 8

    strict_redirection: bool = False
    capture_timeout: float = 10.0

    def with_layout(self, layout: InstructionLayout) -> "DevirtualizerConfig":
        return dataclasses.replace(self, layout=layout)


DEFAULT_CONFIG = DevirtualizerConfig()


def _layout_from(value: Any) -> InstructionLayout:
    if not isinstance(value, Mapping):
        raise ValueError("layout must be an object with opcode/a/b/c/bx fields")
    allowed = {f.name for f in dataclasses.fields(InstructionLayout)}
    unknown = set(value) - allowed
    if unknown:
        raise ValueError(f"unknown layout fields: {', '.join(sorted(unknown))}")
    return InstructionLayout(**{key: int(item) for key, item in value.items() if item is not None})


def config_from_mapping(data: Mapping[str, Any]) -> DevirtualizerConfig:
    allowed = {f.name for f in dataclasses.fields(DevirtualizerConfig)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
    values = dict(data)
    if values.get("layout") is not None:
        values["layout"] = _layout_from(values["layout"])
    if values.get("size_t_width", 8) not in (4, 8):
        raise ValueError("size_t_width must be 4 or 8")
    if float(values.get("capture_timeout", 1)) <= 0:
        raise ValueError("capture_timeout must be positive")
    return dataclasses.replace(DEFAULT_CONFIG, **values)


def load_config(path: Path) -> DevirtualizerConfig:
    """Read a JSON configuration file."""

    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise ValueError(f"{path}: configuration must be a JSON object")
    config = config_from_mapping(data)
    LOG.debug("loaded configuration from %s", path)
    return config
