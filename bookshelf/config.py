import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "3001"))
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000"]
        + ([os.environ["CORS_ORIGIN"]] if os.getenv("CORS_ORIGIN") else [])
    )

    # Database settings
    data_file: str = os.getenv("LIBRARY_DB_FILE", "bookshelf.db")

    # Redis cache (memory only when unset)
    redis_url: Optional[str] = os.getenv("REDIS_URL")

    # Open Library endpoints
    openlibrary_base_url: str = os.getenv("OPENLIBRARY_BASE_URL", "https://openlibrary.org")
    openlibrary_covers_url: str = os.getenv("OPENLIBRARY_COVERS_URL", "https://covers.openlibrary.org")
    openlibrary_search_timeout: float = float(os.getenv("OPENLIBRARY_SEARCH_TIMEOUT", "12"))
    openlibrary_work_timeout: float = float(os.getenv("OPENLIBRARY_WORK_TIMEOUT", "5"))
    openlibrary_cover_timeout: float = float(os.getenv("OPENLIBRARY_COVER_TIMEOUT", "7"))

    # Search settings
    library_lookup_timeout: float = float(os.getenv("LIBRARY_LOOKUP_TIMEOUT", "1.5"))
    search_result_limit: int = int(os.getenv("SEARCH_RESULT_LIMIT", "10"))
    search_min_query_length: int = int(os.getenv("SEARCH_MIN_QUERY_LENGTH", "2"))
    search_cache_ttl: int = int(os.getenv("SEARCH_CACHE_TTL", "30"))
    search_history_limit: int = int(os.getenv("SEARCH_HISTORY_LIMIT", "5"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Library entry limits
    max_review_length: int = int(os.getenv("MAX_REVIEW_LENGTH", "2000"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Bookshelf")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
