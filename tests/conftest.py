import sys
from pathlib import Path

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from helpers import FakeCompletionSource  # noqa: E402
from tickrelay.services.session_store import InMemorySessionStore  # noqa: E402


@pytest.fixture
def store() -> InMemorySessionStore:
    """Fresh in-memory session store."""
    return InMemorySessionStore()


@pytest.fixture
def completion_factory() -> type[FakeCompletionSource]:
    return FakeCompletionSource
