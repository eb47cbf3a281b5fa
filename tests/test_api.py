import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from bookshelf.api import create_app
from bookshelf.services.cache_manager import CacheManager

ALICE = {"userid": "alice"}
BOB = {"userid": "bob"}


def openlibrary_handler(request: httpx.Request):
    path = request.url.path
    if path == "/search.json":
        if request.url.params.get("q") == "broken":
            return httpx.Response(503)
        return httpx.Response(200, json={
            "start": 0,
            "num_found": 2,
            "docs": [
                {"key": "/works/OL1W", "title": "Dune", "author_name": ["Frank Herbert"], "cover_i": 42},
                {"key": "/works/OL2W", "title": "Dune Messiah", "author_name": ["Frank Herbert"]},
            ],
        })
    if path == "/works/OL2W.json":
        return httpx.Response(200, json={"key": "/works/OL2W", "covers": [77]})
    if path in ("/b/id/42-L.jpg", "/b/id/77-L.jpg"):
        return httpx.Response(200, content=b"cover-" + path.encode(), headers={"content-type": "image/jpeg"})
    return httpx.Response(404)


@pytest.fixture
def client(lib, history, mock_http):
    app = create_app(library=lib, history=history, http_client=mock_http(openlibrary_handler),
                     cache=CacheManager())
    return TestClient(app)


def add_book(client, headers=ALICE, **overrides):
    payload = {"open_library_key": "/works/OL1W", "title": "Dune", "authors": ["Frank Herbert"],
               "first_publish_year": 1965, "cover_i": 42}
    payload.update(overrides)
    return client.post("/api/books/my-library", json=payload, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_health_reports_cache_stats(client):
    client.get("/api/books/search", params={"q": "dune"}, headers=ALICE)
    client.get("/api/books/search", params={"q": "dune"}, headers=ALICE)

    cache = client.get("/health").json()["cache"]
    assert cache["hits"] == 1
    assert cache["misses"] == 1
    assert cache["redis_available"] is False


def test_search(client):
    response = client.get("/api/books/search", params={"q": "dune"}, headers=ALICE)

    assert response.status_code == 200
    body = response.json()
    assert body["q"] == "dune"
    assert [doc["inMyLibrary"] for doc in body["docs"]] == [False, False]
    assert body["docs"][0]["coverUrl"] == "https://covers.openlibrary.org/b/id/42-M.jpg"
    assert response.headers["cache-control"].startswith("private")
    assert "userid" in response.headers["vary"]


def test_search_validation_error(client):
    response = client.get("/api/books/search", params={"q": "d"}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    assert client.get("/api/books/search").status_code == 400


def test_search_upstream_error(client):
    response = client.get("/api/books/search", params={"q": "broken"}, headers=ALICE)
    assert response.status_code == 502
    assert response.json()["code"] == "UPSTREAM_ERROR"


def test_add_downloads_cover_and_marks_search(client):
    assert client.get("/api/books/search", params={"q": "dune"}, headers=ALICE).json()["docs"][0]["inMyLibrary"] is False

    response = add_book(client)
    assert response.status_code == 200
    entry = response.json()
    assert entry["work_key"] == "/works/OL1W"
    assert entry["owner_id"] == "alice"
    assert entry["has_cover_image"] is True
    assert entry["cover_url"] == "/api/books/library/front-cover/42"
    assert entry["cover_content_type"] == "image/jpeg"
    assert "cover_image" not in entry

    # Adding invalidates the cached search of this caller
    doc = client.get("/api/books/search", params={"q": "dune"}, headers=ALICE).json()["docs"][0]
    assert doc["inMyLibrary"] is True
    assert doc["coverUrl"] == "/api/books/library/front-cover/42"

    other = client.get("/api/books/search", params={"q": "dune"}, headers=BOB).json()["docs"][0]
    assert other["inMyLibrary"] is False


def test_add_resolves_cover_from_work(client):
    entry = add_book(client, open_library_key="OL2W", title="Dune Messiah", cover_i=None).json()
    assert entry["work_key"] == "/works/OL2W"
    assert entry["has_cover_image"] is True


def test_add_with_base64_cover(client):
    encoded = base64.b64encode(b"\x89PNG-data").decode()
    entry = add_book(client, cover_i=9, cover_base64=encoded, cover_content_type="image/png").json()

    image = client.get("/api/books/library/front-cover/9")
    assert image.status_code == 200
    assert image.content == b"\x89PNG-data"
    assert image.headers["content-type"] == "image/png"
    # Client uploads may be replaced, so they are not cached for long
    assert image.headers["cache-control"] == "public, max-age=120"
    assert entry["has_cover_image"] is True


def test_add_with_invalid_base64(client):
    response = add_book(client, cover_base64="not base64!")
    assert response.status_code == 400
    assert response.json() == {"code": "VALIDATION_ERROR", "message": "cover_base64 is not valid base64."}


def test_add_twice_keeps_one_entry(client):
    first = add_book(client, review="Great").json()
    second = add_book(client, title="Dune (Deluxe)", rating=5).json()

    assert second["id"] == first["id"]
    assert second["created_at"] == first["created_at"]
    assert second["review"] == "Great"
    assert client.get("/api/books/my-library", headers=ALICE).json()["total"] == 1


@pytest.mark.parametrize("overrides", [{"rating": 6}, {"review": "x" * 2001}, {"title": ""}])
def test_add_rejects_invalid_body(client, overrides):
    assert add_book(client, **overrides).status_code == 422


def test_cover_proxy(client):
    response = client.get("/api/books/library/front-cover/77")
    assert response.status_code == 200
    assert response.content == b"cover-/b/id/77-L.jpg"
    assert response.headers["cache-control"] == "public, max-age=120"


def test_cover_not_available(client):
    response = client.get("/api/books/library/front-cover/404")
    assert response.status_code == 404
    assert response.json() == {"code": "NOT_FOUND", "message": "Cover not available."}


def test_cover_id_must_be_numeric(client):
    assert client.get("/api/books/library/front-cover/abc").status_code == 422


def test_list_filters_and_pagination(client):
    add_book(client)
    add_book(client, open_library_key="/works/OL3W", title="Emma", authors=["Jane Austen"], review="Witty",
             cover_i=None)

    body = client.get("/api/books/my-library", params={"author": "austen"}, headers=ALICE).json()
    assert [item["title"] for item in body["items"]] == ["Emma"]

    body = client.get("/api/books/my-library", params={"hasReview": "false"}, headers=ALICE).json()
    assert [item["title"] for item in body["items"]] == ["Dune"]

    body = client.get("/api/books/my-library", params={"limit": 1, "page": 2}, headers=ALICE).json()
    assert body["total"] == 2
    assert body["page"] == 2
    assert body["page_size"] == 1
    assert len(body["items"]) == 1

    assert client.get("/api/books/my-library", params={"limit": 101}, headers=ALICE).status_code == 422
    assert client.get("/api/books/my-library", params={"page": 0}, headers=ALICE).status_code == 422


def test_library_routes_are_private(client):
    response = client.get("/api/books/my-library", headers=ALICE)
    assert response.headers["cache-control"] == "private, no-store"
    assert "userid" in response.headers["vary"]


def test_get_update_delete(client):
    entry = add_book(client, review="Good", rating=4).json()
    url = f"/api/books/my-library/{entry['id']}"

    assert client.get(url, headers=ALICE).json()["title"] == "Dune"
    assert client.get(url, headers=BOB).status_code == 404

    updated = client.put(url, json={"rating": 5}, headers=ALICE).json()
    assert updated["rating"] == 5
    assert updated["review"] == "Good"

    cleared = client.put(url, json={"review": None}, headers=ALICE).json()
    assert cleared["review"] is None
    assert cleared["rating"] == 5

    assert client.put(url, json={"rating": 3}, headers=BOB).status_code == 404
    assert client.delete(url, headers=BOB).status_code == 404

    assert client.delete(url, headers=ALICE).json() == {"ok": True}
    assert client.get(url, headers=ALICE).status_code == 404
    assert client.delete(url, headers=ALICE).json()["code"] == "NOT_FOUND"


def test_last_search(client):
    for q in ["dune", "emma", "ulysses", "dune"]:
        client.get("/api/books/search", params={"q": q}, headers=ALICE)

    response = client.get("/api/books/last-search", headers=ALICE)
    assert response.status_code == 200
    assert [item["q"] for item in response.json()] == ["dune", "ulysses", "emma", "dune"]
    assert client.get("/api/books/last-search", headers=BOB).json() == []


def test_caller_identity_fallbacks(client):
    add_book(client, headers={"x-user-id": "carol"})
    assert client.get("/api/books/my-library", headers={"x-user-id": "carol"}).json()["total"] == 1

    # Without identity headers the client address is the owner
    add_book(client, headers={})
    assert client.get("/api/books/my-library").json()["total"] == 1
    assert client.get("/api/books/my-library", headers=ALICE).json()["total"] == 0


def test_add_with_unusable_work_key_still_saves(client):
    response = add_book(client, open_library_key="/works/OL1W\t", cover_i=None)
    assert response.status_code == 200
    assert response.json()["work_key"] == "/works/OL1W"

    response = add_book(client, open_library_key="/works/OL5W\x7f", title="Odd", cover_i=None)
    assert response.status_code == 200
    assert response.json()["has_cover_image"] is False


def test_page_beyond_integer_range(client):
    add_book(client)
    response = client.get("/api/books/my-library", params={"page": "10000000000000000000"}, headers=ALICE)
    assert response.status_code == 200
    body = response.json()
    assert body["items"] == []
    assert body["total"] == 1


def test_add_again_reuses_stored_cover(lib, history, mock_http):
    downloads = []

    def counting_handler(request: httpx.Request):
        if request.url.path.startswith("/b/id/"):
            downloads.append(request.url.path)
        return openlibrary_handler(request)

    client = TestClient(create_app(library=lib, history=history, http_client=mock_http(counting_handler),
                                   cache=CacheManager()))
    add_book(client)
    add_book(client, rating=4)
    assert downloads == ["/b/id/42-L.jpg"]

    # A different cover id is fetched again
    entry = add_book(client, cover_i=77).json()
    assert downloads == ["/b/id/42-L.jpg", "/b/id/77-L.jpg"]
    assert entry["cover_url"] == "/api/books/library/front-cover/77"


def test_uploaded_cover_does_not_shadow_open_library(client):
    fake = base64.b64encode(b"not the real cover").decode()
    add_book(client, headers=BOB, cover_base64=fake)

    image = client.get("/api/books/library/front-cover/42")
    assert image.content == b"not the real cover"
    assert image.headers["cache-control"] == "public, max-age=120"

    add_book(client)
    image = client.get("/api/books/library/front-cover/42")
    assert image.content == b"cover-/b/id/42-L.jpg"
    assert "immutable" in image.headers["cache-control"]
