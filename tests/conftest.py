import sys
from pathlib import Path

import pytest

# Ensure the `extraction_worker` package and the shared fakes are importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
TESTS = Path(__file__).resolve().parent
for path in (ROOT, TESTS):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from extraction_worker.core import config  # noqa: E402
from fakes import InMemoryEntityStore  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache():
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def store():
    return InMemoryEntityStore()

