"""Test configuration ensuring the project source tree is importable."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
TESTS = ROOT / "tests"

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)
else:
    idx = sys.path.index(root_str)
    if idx != 0:
        sys.path.insert(0, sys.path.pop(idx))

if str(TESTS) not in sys.path:
    sys.path.insert(1, str(TESTS))


@pytest.fixture
def vm_tree():
    from builders import build_vm

    return build_vm()


@pytest.fixture
def vm_payload():
    from builders import sample_payload

    return sample_payload()
