import os
import tempfile

# Modules build their default store from LIBRARY_DB_FILE at import time;
# keep it out of the working directory during tests
os.environ.setdefault(
    "LIBRARY_DB_FILE", os.path.join(tempfile.mkdtemp(prefix="bookshelf-tests-"), "bookshelf.db")
)

import httpx
import pytest

from bookshelf.library import Library
from bookshelf.search_history import SearchHistory
from bookshelf.services.http_client import OptimizedHTTPClient


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file for each test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    return Library(db_file=db_file)


@pytest.fixture
def history(db_file):
    return SearchHistory(db_file)


@pytest.fixture
def mock_http():
    """Build an HTTP client whose requests are answered by ``handler``."""
    def _make(handler):
        return OptimizedHTTPClient(transport=httpx.MockTransport(handler))
    return _make


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing timestamps for library writes."""
    ticks = iter(range(1, 100000))

    def _now():
        return f"2024-01-01T00:00:00.{next(ticks):06d}+00:00"

    monkeypatch.setattr("bookshelf.library._utcnow", _now)
    return _now
