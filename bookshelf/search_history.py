import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bookshelf.config import settings
from bookshelf.database import get_db_connection, initialize_database

logger = logging.getLogger(__name__)


class SearchHistory:
    """Append-only log of the queries each caller has searched for."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.data_file
        initialize_database(self.db_file)

    def record(self, owner_id: Optional[str], query: str) -> None:
        query = (query or "").strip()
        if not query:
            return
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                "INSERT INTO search_history (owner_id, query, created_at) VALUES (?, ?, ?)",
                (owner_id or "anonymous", query, datetime.now(timezone.utc).isoformat(timespec="microseconds")),
            )
            conn.commit()
        finally:
            conn.close()

    def last(self, owner_id: Optional[str], n: Optional[int] = None) -> List[Dict[str, str]]:
        """Most recent queries first, at most ``n`` of them."""
        limit = settings.search_history_limit if n is None else max(0, int(n))
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                """
                SELECT query, created_at FROM search_history
                WHERE owner_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id or "anonymous", limit),
            ).fetchall()
        finally:
            conn.close()
        return [{"q": row["query"], "at": row["created_at"]} for row in rows]
