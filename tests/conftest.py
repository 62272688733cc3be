from __future__ import annotations

from collections.abc import Iterator

import pytest

from apps.api import main as api_main


@pytest.fixture(autouse=True)
def _fresh_api_manager() -> Iterator[None]:
    api_main._reset_manager()
    yield
    api_main._reset_manager()
