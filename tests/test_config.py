from __future__ import annotations

import json

import pytest

from luraph_devirt.config import DEFAULT_CONFIG, DevirtualizerConfig, config_from_mapping, load_config
from luraph_devirt.vm.instruction import InstructionLayout


def test_defaults() -> None:
    assert DEFAULT_CONFIG.setlist_batch == 50
    assert DEFAULT_CONFIG.decode_routine == "decode_chunk"
    assert DEFAULT_CONFIG.size_t_width == 8
    assert DEFAULT_CONFIG.layout is None
    assert not DEFAULT_CONFIG.strict_redirection


def test_with_layout_returns_a_copy() -> None:
    layout = InstructionLayout(opcode=1, a=2, b=3, c=4, bx=5)
    config = DEFAULT_CONFIG.with_layout(layout)
    assert config.layout is layout
    assert DEFAULT_CONFIG.layout is None


def test_mapping_overrides_fields() -> None:
    config = config_from_mapping({"setlist_batch": 25, "stack_name": "regs", "strict_redirection": True})
    assert config == DevirtualizerConfig(setlist_batch=25, stack_name="regs", strict_redirection=True)


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValueError, match="stack_nmae"):
        config_from_mapping({"stack_nmae": "regs"})


def test_size_t_width_is_checked() -> None:
    assert config_from_mapping({"size_t_width": 4}).size_t_width == 4
    with pytest.raises(ValueError):
        config_from_mapping({"size_t_width": 2})


def test_layout_from_mapping() -> None:
    config = config_from_mapping({"layout": {"opcode": 4, "a": 1, "b": 2, "c": 3, "bx": 5, "sbx": None}})
    assert config.layout == InstructionLayout(opcode=4, a=1, b=2, c=3, bx=5)
    with pytest.raises(ValueError):
        config_from_mapping({"layout": {"opcode": 1, "a": 2, "b": 3, "c": 4, "bx": 5, "d": 6}})
    with pytest.raises(ValueError):
        config_from_mapping({"layout": [1, 2, 3]})


def test_load_config(tmp_path) -> None:
    path = tmp_path / "devirt.json"
    path.write_text(json.dumps({"assert_name": "ensure", "source_name": "@script"}), encoding="utf-8")
    config = load_config(path)
    assert config.assert_name == "ensure"
    assert config.source_name == "@script"


def test_load_config_requires_an_object(tmp_path) -> None:
    path = tmp_path / "devirt.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        load_config(path)
