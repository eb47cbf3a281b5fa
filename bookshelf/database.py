import logging
import sqlite3
from typing import Optional

from bookshelf.config import settings

logger = logging.getLogger(__name__)

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 5.0


def _contains_ci(haystack: Optional[str], needle: Optional[str]) -> int:
    """Unicode-aware case-insensitive substring test, registered as ``contains_ci``."""
    if haystack is None or needle is None:
        return 0
    return int(needle.casefold() in haystack.casefold())


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with rows addressable by column name."""
    conn = sqlite3.connect(db_file or settings.data_file, timeout=BUSY_TIMEOUT, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while another request is writing
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.create_function("contains_ci", 2, _contains_ci, deterministic=True)
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the library and search history tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS library_entries (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                work_key TEXT NOT NULL,
                title TEXT NOT NULL,
                authors TEXT NOT NULL DEFAULT '[]',
                publish_year INTEGER,
                cover_id INTEGER,
                cover_image BLOB,
                cover_content_type TEXT,
                cover_source TEXT,
                review TEXT,
                rating REAL CHECK(rating IS NULL OR (rating >= 0 AND rating <= 5)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (owner_id, work_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS search_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                query TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        # Columns added after the first schema version
        cursor.execute("PRAGMA table_info(library_entries)")
        columns = {row[1] for row in cursor.fetchall()}
        if "cover_source" not in columns:
            cursor.execute("ALTER TABLE library_entries ADD COLUMN cover_source TEXT")

        # Indexes backing the listing order, filters and cover lookups
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_library_owner_updated ON library_entries(owner_id, updated_at DESC)"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_library_owner_title ON library_entries(owner_id, title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_library_cover_id ON library_entries(cover_id)")
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_search_history_owner_created ON search_history(owner_id, created_at DESC)"
        )
        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready: {db_file or settings.data_file}")
