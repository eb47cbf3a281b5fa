import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from bookshelf.errors import DegradedLookupError, NotFoundError
from bookshelf.library import COVER_SOURCE_OPENLIBRARY, Library
from bookshelf.services.open_library_service import OpenLibraryService

logger = logging.getLogger(__name__)

# Covers downloaded from Open Library never change for a given id.
# Proxied covers may appear later upstream and uploads may be replaced.
STORED_CACHE_CONTROL = "public, max-age=31536000, immutable"
PROXIED_CACHE_CONTROL = "public, max-age=120"
UPLOADED_CACHE_CONTROL = "public, max-age=120"


def _is_cover_id(value) -> bool:
    # Open Library uses -1 for "no cover" in some work documents
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class CoverImage:
    """Binary cover payload ready to be sent to a client"""
    content: bytes
    content_type: str
    cache_control: str


class CoverResolver:
    """Picks a fetchable cover URL from whatever identifying hints are known.

    Hints are used in priority order: direct cover id, then edition key,
    then the work's own metadata. A later hint is only consulted when the
    earlier ones are missing, never because an earlier attempt failed.
    """

    def __init__(self, open_library: OpenLibraryService, size: str = "L"):
        self.open_library = open_library
        self.size = size

    async def resolve(self, cover_id: Optional[int] = None, cover_edition_key: Optional[str] = None,
                      work_key: Optional[str] = None) -> Optional[str]:
        if cover_id is not None:
            return self.open_library.cover_url_by_id(cover_id, self.size)
        if cover_edition_key:
            return self.open_library.cover_url_by_olid(cover_edition_key, self.size)
        if not work_key:
            return None

        try:
            work = await self.open_library.fetch_work(work_key)
        except DegradedLookupError as e:
            logger.warning(f"Could not resolve cover from work {work_key}: {e}")
            return None

        covers = work.get("covers")
        if isinstance(covers, list) and covers and _is_cover_id(covers[0]):
            return self.open_library.cover_url_by_id(covers[0], self.size)
        logger.info(f"Work {work_key} lists no cover")
        return None


class CoverService:
    """Serves cover images from the library store, falling back to Open Library."""

    def __init__(self, library: Library, open_library: OpenLibraryService,
                 resolver: Optional[CoverResolver] = None):
        self.library = library
        self.open_library = open_library
        self.resolver = resolver or CoverResolver(open_library)

    async def get_cover_image(self, cover_id: int) -> CoverImage:
        """
        Return the cover for ``cover_id``.

        Stored bytes win. Those downloaded from Open Library are marked
        immutable, client uploads get a short cache lifetime. Otherwise the
        image is proxied from Open Library with a short cache lifetime.

        Raises:
            NotFoundError: when nothing is stored and the upstream fetch fails
        """
        stored = await asyncio.to_thread(self.library.get_cover_image, cover_id)
        if stored:
            content, content_type, source = stored
            if source == COVER_SOURCE_OPENLIBRARY:
                return CoverImage(content, content_type, STORED_CACHE_CONTROL)
            return CoverImage(content, content_type, UPLOADED_CACHE_CONTROL)

        url = self.open_library.cover_url_by_id(cover_id, "L")
        try:
            content, content_type = await self.open_library.fetch_image(url)
        except DegradedLookupError as e:
            logger.warning(f"Cover {cover_id} not available upstream: {e}")
            raise NotFoundError("Cover not available.") from e
        return CoverImage(content, content_type, PROXIED_CACHE_CONTROL)

    async def download_cover(self, *, cover_id: Optional[int] = None, cover_edition_key: Optional[str] = None,
                             work_key: Optional[str] = None) -> Optional[Tuple[bytes, str]]:
        """Fetch cover bytes for a new library entry. Failures are logged and give ``None``."""
        url = await self.resolver.resolve(cover_id, cover_edition_key, work_key)
        if not url:
            return None
        try:
            return await self.open_library.fetch_image(url)
        except DegradedLookupError as e:
            logger.warning(f"Could not download cover from Open Library: url={url} error={e}")
            return None
