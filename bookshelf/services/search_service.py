import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from bookshelf.config import settings
from bookshelf.library import ANONYMOUS, Library
from bookshelf.search_history import SearchHistory
from bookshelf.services.cache_manager import CacheManager
from bookshelf.services.open_library_service import SEARCH_DOCUMENTATION_URL, OpenLibraryService
from bookshelf.utils.validators import TextValidator, normalize_work_key

logger = logging.getLogger(__name__)

LIBRARY_COVER_PATH = "/api/books/library/front-cover/{cover_id}"
SEARCH_COVER_SIZE = "M"


def owner_cache_prefix(owner_id: str) -> str:
    return f"search:{owner_id}:"


def search_cache_key(owner_id: str, query: str) -> str:
    return owner_cache_prefix(owner_id) + query


class SearchService:
    """Catalog search enriched with the caller's library membership.

    Only the catalog call itself may fail a search. The membership lookup
    and the history append degrade to "not owned" and a no-op respectively.
    """

    def __init__(self, open_library: OpenLibraryService, library: Library, history: SearchHistory,
                 cache: Optional[CacheManager] = None, result_limit: Optional[int] = None,
                 lookup_timeout: Optional[float] = None, cache_ttl: Optional[int] = None):
        self.open_library = open_library
        self.library = library
        self.history = history
        self.cache = cache
        self.result_limit = result_limit or settings.search_result_limit
        self.lookup_timeout = settings.library_lookup_timeout if lookup_timeout is None else lookup_timeout
        self.cache_ttl = settings.search_cache_ttl if cache_ttl is None else cache_ttl

    async def search(self, query: str, owner_id: Optional[str]) -> Dict[str, Any]:
        """
        Search the catalog for ``query`` on behalf of ``owner_id``.

        Raises:
            ValidationError: the query is empty or too short (no I/O happens)
            UpstreamError: the catalog search failed
        """
        q = TextValidator.clean_query(query)
        owner = owner_id or ANONYMOUS

        if self.cache is not None:
            cached = self.cache.get(search_cache_key(owner, q))
            if cached is not None:
                await self._record_history(owner, q)
                return cached

        response = await self.aggregate(q, owner)
        if self.cache is not None and self.cache_ttl > 0:
            self.cache.set(search_cache_key(owner, q), response, ttl_seconds=self.cache_ttl)
        return response

    def invalidate_owner(self, owner_id: Optional[str]) -> int:
        """Forget cached searches of an owner whose library just changed."""
        if self.cache is None:
            return 0
        return self.cache.invalidate_prefix(owner_cache_prefix(owner_id or ANONYMOUS))

    async def aggregate(self, q: str, owner: str) -> Dict[str, Any]:
        data = await self.open_library.search(q, limit=self.result_limit)

        raw_docs = data.get("docs")
        docs = [d for d in raw_docs if isinstance(d, dict)] if isinstance(raw_docs, list) else []
        docs = docs[:self.result_limit]

        keys = [normalize_work_key(d["key"]) if isinstance(d.get("key"), str) else None for d in docs]
        membership = await self._lookup_membership(owner, [k for k in keys if k])

        enriched = [self._enrich(doc, key, membership) for doc, key in zip(docs, keys)]

        await self._record_history(owner, q)
        return self._assemble(data, q, enriched)

    async def _lookup_membership(self, owner: str, keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        unique_keys = sorted(set(keys))
        if not unique_keys:
            return {}
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.library.bulk_exists, owner, unique_keys),
                timeout=self.lookup_timeout,
            )
        except Exception as e:
            # Degraded lookup: results are shown as not owned
            logger.warning(f"Library lookup failed for owner={owner}, treating results as not owned: {e!r}")
            return {}

    async def _record_history(self, owner: str, q: str) -> None:
        try:
            await asyncio.to_thread(self.history.record, owner, q)
        except Exception as e:
            logger.warning(f"Could not record search history for owner={owner}: {e!r}")

    def _enrich(self, doc: Dict[str, Any], key: Optional[str],
                membership: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        found = membership.get(key) if key else None
        in_library = bool(found and found.get("exists"))

        enriched = {k: v for k, v in doc.items() if v is not None}
        enriched["author_key"] = doc.get("author_key") or []
        enriched["author_name"] = doc.get("author_name") or []
        if key:
            enriched["openLibraryKeyNormalized"] = key

        cover_url = None
        if in_library and found.get("cover_id") is not None:
            cover_url = LIBRARY_COVER_PATH.format(cover_id=found["cover_id"])
        elif isinstance(doc.get("cover_i"), int) and not isinstance(doc.get("cover_i"), bool):
            cover_url = self.open_library.cover_url_by_id(doc["cover_i"], SEARCH_COVER_SIZE)
        if cover_url:
            enriched["coverUrl"] = cover_url

        enriched["inMyLibrary"] = in_library
        return enriched

    @staticmethod
    def _assemble(data: Dict[str, Any], q: str, docs: List[Dict[str, Any]]) -> Dict[str, Any]:
        num_found = data.get("num_found")
        response = {
            "start": data.get("start") if data.get("start") is not None else 0,
            "num_found": num_found if num_found is not None else len(docs),
            "numFound": data.get("numFound", num_found),
            "numFoundExact": data.get("numFoundExact"),
            "documentation_url": data.get("documentation_url") or SEARCH_DOCUMENTATION_URL,
            "q": q,
            "docs": docs,
        }
        response = {k: v for k, v in response.items() if v is not None}
        # offset is always echoed, null when upstream omits it
        response["offset"] = data.get("offset")
        return response
