from __future__ import annotations

import copy

import pytest

from buildmatrix.ui.console import Console, set_console

from support import RUST_TRAVIS


@pytest.fixture(autouse=True)
def fresh_console():
    set_console(Console())
    yield
    set_console(Console())


@pytest.fixture
def rust_travis():
    return copy.deepcopy(RUST_TRAVIS)
