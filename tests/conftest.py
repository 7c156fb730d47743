from __future__ import annotations

import pytest

from helpers import FakeSpawner


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()
