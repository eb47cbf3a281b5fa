import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "Bookshelf/1.0 (+https://openlibrary.org/developers/api)"


class OptimizedHTTPClient:
    """Pooled async HTTP client shared by the Open Library services."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Connection limits for concurrent requests
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        # Default timeouts; callers pass a per-request timeout where it matters
        timeout = httpx.Timeout(
            timeout=10.0,
            connect=5.0,
            read=10.0,
            write=5.0
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Async GET over the shared connection pool"""
        return await self._client.get(url, **kwargs)

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
