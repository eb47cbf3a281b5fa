import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from bookshelf.config import settings
from bookshelf.errors import DegradedLookupError, UpstreamError
from bookshelf.services.http_client import OptimizedHTTPClient


logger = logging.getLogger(__name__)

# Fields requested from search.json; everything returned is passed through
SEARCH_FIELDS = (
    "key",
    "title",
    "author_key",
    "author_name",
    "cover_edition_key",
    "cover_i",
    "ebook_access",
    "edition_count",
    "first_publish_year",
    "has_fulltext",
    "language",
    "public_scan_b",
)

SEARCH_DOCUMENTATION_URL = "https://openlibrary.org/dev/docs/api/search"


class OpenLibraryService:
    """Client for the Open Library search, works and covers endpoints"""

    def __init__(self, http_client: OptimizedHTTPClient, base_url: Optional[str] = None,
                 covers_url: Optional[str] = None):
        self.http_client = http_client
        self.base_url = (base_url or settings.openlibrary_base_url).rstrip("/")
        self.covers_url = (covers_url or settings.openlibrary_covers_url).rstrip("/")
        self.search_timeout = settings.openlibrary_search_timeout
        self.work_timeout = settings.openlibrary_work_timeout
        self.cover_timeout = settings.openlibrary_cover_timeout

    # ------------------------- URL builders ------------------------- #
    def cover_url_by_id(self, cover_id: int, size: str = "L") -> str:
        return f"{self.covers_url}/b/id/{cover_id}-{size}.jpg"

    def cover_url_by_olid(self, edition_key: str, size: str = "L") -> str:
        return f"{self.covers_url}/b/olid/{edition_key}-{size}.jpg"

    def work_url(self, work_key: str) -> str:
        return f"{self.base_url}{work_key}.json"

    # ------------------------- Requests ------------------------- #
    async def search(self, query: str, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Run a catalog search.

        Args:
            query: Search text, sent URL-encoded as ``q``
            limit: Maximum number of docs to ask for

        Returns:
            The decoded search.json payload

        Raises:
            UpstreamError: on network failure, timeout, non-success status or
                an undecodable body. A single attempt is made.
        """
        params: Dict[str, Any] = {"q": query, "fields": ",".join(SEARCH_FIELDS)}
        if limit:
            params["limit"] = limit

        start_time = time.time()
        try:
            response = await self.http_client.get(
                f"{self.base_url}/search.json", params=params, timeout=self.search_timeout
            )
        except httpx.TimeoutException as exc:
            logger.error(f"Open Library search timed out after {self.search_timeout}s: q={query!r}")
            raise UpstreamError("Open Library search timed out.") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Open Library search failed: {exc}")
            raise UpstreamError("Open Library is unreachable.") from exc

        response_time_ms = int((time.time() - start_time) * 1000)
        if response.status_code != 200:
            logger.error(f"Open Library search returned {response.status_code} in {response_time_ms}ms")
            raise UpstreamError(f"Open Library search failed with status {response.status_code}.")

        try:
            data = response.json()
        except ValueError as exc:
            logger.error(f"Open Library search returned an invalid body: {exc}")
            raise UpstreamError("Open Library returned an invalid response.") from exc
        if not isinstance(data, dict):
            raise UpstreamError("Open Library returned an invalid response.")

        logger.info(f"Open Library search q={query!r} answered in {response_time_ms}ms")
        return data

    async def fetch_work(self, work_key: str) -> Dict[str, Any]:
        """Fetch a work's metadata document, e.g. ``/works/OL45804W``."""
        url = self.work_url(work_key)
        try:
            response = await self.http_client.get(url, timeout=self.work_timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DegradedLookupError(f"Work lookup failed for {work_key}: {exc}") from exc
        if response.status_code != 200:
            raise DegradedLookupError(f"Work lookup for {work_key} returned {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise DegradedLookupError(f"Work lookup for {work_key} returned an invalid body") from exc
        if not isinstance(data, dict):
            raise DegradedLookupError(f"Work lookup for {work_key} returned an invalid body")
        return data

    async def fetch_image(self, url: str) -> Tuple[bytes, str]:
        """Download an image and return its bytes and content type."""
        try:
            response = await self.http_client.get(url, timeout=self.cover_timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DegradedLookupError(f"Image download failed for {url}: {exc}") from exc
        if response.status_code != 200 or not response.content:
            raise DegradedLookupError(f"Image download for {url} returned {response.status_code}")

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = "image/png" if url.lower().endswith(".png") else "image/jpeg"
        return response.content, content_type
