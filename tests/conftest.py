from __future__ import annotations

import pytest

from fakes import FakeGraph
from support import Harness


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def harness(graph: FakeGraph) -> Harness:
    return Harness(graph)
