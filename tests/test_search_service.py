import asyncio
import time

import httpx
import pytest

from bookshelf.errors import UpstreamError, ValidationError
from bookshelf.services.cache_manager import CacheManager
from bookshelf.services.open_library_service import OpenLibraryService
from bookshelf.services.search_service import SearchService

SEARCH_PAYLOAD = {
    "start": 0,
    "num_found": 3,
    "numFound": 3,
    "numFoundExact": True,
    "docs": [
        {"key": "/works/OL1W", "title": "Dune", "author_name": ["Frank Herbert"], "cover_i": 5},
        {"key": "OL2W", "title": "Dune Messiah", "author_name": ["Frank Herbert"], "cover_i": 7},
        {"key": "/works/OL3W", "title": "Dune Encyclopedia", "cover_i": None},
    ],
}


@pytest.fixture
def upstream():
    """Records search requests and answers with ``upstream.payload``."""
    class Upstream:
        payload = SEARCH_PAYLOAD
        status = 200
        requests = []

    state = Upstream()
    state.requests = []

    def handler(request: httpx.Request):
        state.requests.append(request)
        return httpx.Response(state.status, json=state.payload)

    state.handler = handler
    return state


@pytest.fixture
def make_service(lib, history, mock_http, upstream):
    def _make(**kwargs):
        return SearchService(OpenLibraryService(mock_http(upstream.handler)), lib, history, **kwargs)
    return _make


def test_search_enriches_docs(lib, make_service, upstream):
    lib.upsert("alice", "/works/OL1W", "Dune", cover_id=5, cover_image=b"img")

    result = asyncio.run(make_service().search("  dune ", "alice"))

    assert result["q"] == "dune"
    assert result["num_found"] == 3
    assert result["numFoundExact"] is True
    assert "offset" in result and result["offset"] is None
    assert result["documentation_url"].startswith("https://openlibrary.org")

    owned, other, no_cover = result["docs"]
    assert owned["inMyLibrary"] is True
    assert owned["coverUrl"] == "/api/books/library/front-cover/5"
    assert owned["openLibraryKeyNormalized"] == "/works/OL1W"

    assert other["inMyLibrary"] is False
    assert other["openLibraryKeyNormalized"] == "/works/OL2W"
    assert other["coverUrl"] == "https://covers.openlibrary.org/b/id/7-M.jpg"

    assert no_cover["inMyLibrary"] is False
    assert "coverUrl" not in no_cover
    assert "cover_i" not in no_cover
    assert no_cover["author_name"] == []
    assert no_cover["author_key"] == []

    request = upstream.requests[0]
    assert request.url.path == "/search.json"
    assert request.url.params["q"] == "dune"
    assert request.url.params["limit"] == "10"


def test_owned_without_stored_image_uses_catalog_cover(lib, make_service):
    lib.upsert("alice", "/works/OL1W", "Dune", cover_id=5)

    doc = asyncio.run(make_service().search("dune", "alice"))["docs"][0]

    assert doc["inMyLibrary"] is True
    assert doc["coverUrl"] == "https://covers.openlibrary.org/b/id/5-M.jpg"


def test_membership_is_per_owner(lib, make_service):
    lib.upsert("alice", "/works/OL1W", "Dune")
    docs = asyncio.run(make_service().search("dune", "bob"))["docs"]
    assert not any(doc["inMyLibrary"] for doc in docs)


def test_results_are_capped(make_service, upstream):
    upstream.payload = {"num_found": 40, "docs": [{"key": f"/works/OL{i}W", "title": str(i)} for i in range(15)]}

    result = asyncio.run(make_service().search("many", "alice"))

    assert len(result["docs"]) == 10
    assert result["num_found"] == 40
    assert result["start"] == 0


def test_lookup_failure_degrades(lib, make_service, monkeypatch):
    lib.upsert("alice", "/works/OL1W", "Dune", cover_id=5, cover_image=b"img")

    def broken(owner_id, keys):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(lib, "bulk_exists", broken)

    result = asyncio.run(make_service().search("dune", "alice"))

    assert len(result["docs"]) == 3
    assert all(doc["inMyLibrary"] is False for doc in result["docs"])
    assert result["docs"][0]["coverUrl"] == "https://covers.openlibrary.org/b/id/5-M.jpg"


def test_slow_lookup_degrades(lib, make_service, monkeypatch):
    lib.upsert("alice", "/works/OL1W", "Dune")

    def slow(owner_id, keys):
        time.sleep(0.3)
        return {key: {"exists": True} for key in keys}

    monkeypatch.setattr(lib, "bulk_exists", slow)

    result = asyncio.run(make_service(lookup_timeout=0.05).search("dune", "alice"))

    assert all(doc["inMyLibrary"] is False for doc in result["docs"])


@pytest.mark.parametrize("query", ["", "   ", "a"])
def test_invalid_query_makes_no_request(make_service, upstream, history, query):
    with pytest.raises(ValidationError):
        asyncio.run(make_service().search(query, "alice"))
    assert upstream.requests == []
    assert history.last("alice") == []


def test_upstream_status_error(make_service, upstream, history):
    upstream.status = 503
    with pytest.raises(UpstreamError):
        asyncio.run(make_service().search("dune", "alice"))
    assert history.last("alice") == []


def test_upstream_timeout(lib, history, mock_http):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    service = SearchService(OpenLibraryService(mock_http(handler)), lib, history)
    with pytest.raises(UpstreamError, match="timed out"):
        asyncio.run(service.search("dune", "alice"))


def test_upstream_invalid_body(lib, history, mock_http):
    service = SearchService(
        OpenLibraryService(mock_http(lambda request: httpx.Response(200, content=b"<html>"))), lib, history
    )
    with pytest.raises(UpstreamError):
        asyncio.run(service.search("dune", "alice"))


def test_search_records_history(make_service, history):
    asyncio.run(make_service().search(" dune ", "alice"))
    assert [item["q"] for item in history.last("alice")] == ["dune"]


def test_history_failure_is_swallowed(make_service, history, monkeypatch):
    def broken(owner_id, query):
        raise RuntimeError("disk full")

    monkeypatch.setattr(history, "record", broken)

    result = asyncio.run(make_service().search("dune", "alice"))
    assert len(result["docs"]) == 3


def test_anonymous_search(make_service, history):
    asyncio.run(make_service().search("dune", None))
    assert [item["q"] for item in history.last("anonymous")] == ["dune"]


def test_cached_search_skips_upstream(make_service, upstream, history):
    service = make_service(cache=CacheManager())

    first = asyncio.run(service.search("dune", "alice"))
    second = asyncio.run(service.search("dune ", "alice"))

    assert second == first
    assert len(upstream.requests) == 1
    # Every search is recorded, cached or not
    assert len(history.last("alice")) == 2


def test_cache_is_per_owner_and_invalidated(lib, make_service, upstream):
    service = make_service(cache=CacheManager())

    assert asyncio.run(service.search("dune", "alice"))["docs"][0]["inMyLibrary"] is False
    asyncio.run(service.search("dune", "bob"))
    assert len(upstream.requests) == 2

    lib.upsert("alice", "/works/OL1W", "Dune")
    assert service.invalidate_owner("alice") == 1

    assert asyncio.run(service.search("dune", "alice"))["docs"][0]["inMyLibrary"] is True
    assert len(upstream.requests) == 3
