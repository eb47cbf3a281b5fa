import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from bookshelf.config import settings
from bookshelf.database import get_db_connection
from bookshelf.entry import LibraryEntry
from bookshelf.errors import BookshelfError, ValidationError
from bookshelf.library import ANONYMOUS, COVER_SOURCE_OPENLIBRARY, COVER_SOURCE_UPLOAD, UNSET, Library
from bookshelf.search_history import SearchHistory
from bookshelf.services.cache_manager import CacheManager, cache_manager
from bookshelf.services.cover_service import CoverService
from bookshelf.services.http_client import OptimizedHTTPClient
from bookshelf.services.open_library_service import OpenLibraryService
from bookshelf.services.search_service import LIBRARY_COVER_PATH, SearchService
from bookshelf.utils.validators import normalize_work_key

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

PRIVATE_PATHS = ("/api/books/my-library", "/api/books/last-search")


# --- Models ---
class LibraryEntryCreateModel(BaseModel):
    """Body of an add request; field names follow the Open Library search docs."""
    open_library_key: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    authors: List[str] = Field(default_factory=list)
    first_publish_year: Optional[int] = None
    cover_i: Optional[int] = None
    cover_edition_key: Optional[str] = None
    cover_base64: Optional[str] = Field(default=None, description="Cover bytes; downloaded from Open Library when absent")
    cover_content_type: Optional[str] = None
    review: Optional[str] = Field(default=None, max_length=2000)
    rating: Optional[float] = Field(default=None, ge=0, le=5)


class LibraryEntryUpdateModel(BaseModel):
    review: Optional[str] = Field(default=None, max_length=2000)
    rating: Optional[float] = Field(default=None, ge=0, le=5)


class LibraryEntryModel(BaseModel):
    id: str
    owner_id: str
    work_key: str
    title: str
    authors: List[str]
    publish_year: Optional[int] = None
    cover_id: Optional[int] = None
    cover_content_type: Optional[str] = None
    cover_url: Optional[str] = None
    has_cover_image: bool = False
    review: Optional[str] = None
    rating: Optional[float] = None
    created_at: str
    updated_at: str


class LibraryPageModel(BaseModel):
    items: List[LibraryEntryModel]
    total: int
    page: int
    page_size: int


class SearchHistoryItemModel(BaseModel):
    q: str
    at: str


# --- Helpers ---
def _entry_model(entry: LibraryEntry) -> LibraryEntryModel:
    data = entry.to_dict()
    if entry.has_cover_image and entry.cover_id is not None:
        data["cover_url"] = LIBRARY_COVER_PATH.format(cover_id=entry.cover_id)
    return LibraryEntryModel(**data)


def get_caller_id(request: Request) -> str:
    """Caller identity from the userid / x-user-id headers, else the client address."""
    headers = request.headers
    return (
        headers.get("userid")
        or headers.get("x-user-id")
        or (request.client.host if request.client else None)
        or ANONYMOUS
    )


def _decode_cover(cover_base64: str) -> bytes:
    try:
        return base64.b64decode(cover_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("cover_base64 is not valid base64.") from e


def create_app(library: Optional[Library] = None, history: Optional[SearchHistory] = None,
               http_client: Optional[OptimizedHTTPClient] = None,
               cache: Optional[CacheManager] = cache_manager) -> FastAPI:
    """Build the API with its services. Tests pass their own store and HTTP transport."""
    library = library or Library()
    history = history or SearchHistory(library.db_file)
    http_client = http_client or OptimizedHTTPClient()
    open_library = OpenLibraryService(http_client)
    covers = CoverService(library, open_library)
    search_service = SearchService(open_library, library, history, cache=cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.app_name} {settings.app_version} starting, database={library.db_file}")
        try:
            yield
        finally:
            await http_client.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.library = library
    app.state.history = history
    app.state.covers = covers
    app.state.search = search_service

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_cache_headers(request: Request, call_next):
        response = await call_next(request)
        path = request.url.path

        # Search results carry per-caller membership
        if path == "/api/books/search" and request.method == "GET" and response.status_code == 200:
            response.headers["Cache-Control"] = f"private, max-age={settings.search_cache_ttl}"
            response.headers["Vary"] = "userid, Accept, Accept-Encoding"
        elif path.startswith(PRIVATE_PATHS):
            response.headers["Cache-Control"] = "private, no-store"
            response.headers["Vary"] = "userid, Accept, Accept-Encoding"

        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    def _keeps_stored_cover(owner_id: str, payload: LibraryEntryCreateModel) -> bool:
        # Re-adding a book whose cover is already stored skips the download
        existing = library.find_by_work_key(owner_id, payload.open_library_key)
        if existing is None or not existing.has_cover_image:
            return False
        return payload.cover_i is None or payload.cover_i == existing.cover_id

    @app.exception_handler(BookshelfError)
    async def handle_bookshelf_error(request: Request, exc: BookshelfError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Health ---
    @app.get("/health")
    def health():
        db_ok = True
        try:
            conn = get_db_connection(library.db_file)
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
        except Exception as e:
            logger.warning(f"Health check database query failed: {e}")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "db": db_ok,
            "version": settings.app_version,
            "cache": cache.get_stats() if cache is not None else None,
        }

    # --- Search ---
    @app.get("/api/books/search")
    async def search_books(q: str = Query("", description="Search text, at least 2 characters"),
                           owner_id: str = Depends(get_caller_id)):
        return await search_service.search(q, owner_id)

    @app.get("/api/books/last-search", response_model=List[SearchHistoryItemModel])
    def last_searches(owner_id: str = Depends(get_caller_id)):
        return history.last(owner_id)

    # --- Covers ---
    @app.get("/api/books/library/front-cover/{cover_id}")
    async def front_cover(cover_id: int):
        image = await covers.get_cover_image(cover_id)
        return Response(
            content=image.content,
            media_type=image.content_type,
            headers={"Cache-Control": image.cache_control},
        )

    # --- My library ---
    @app.post("/api/books/my-library", response_model=LibraryEntryModel)
    async def add_library_entry(payload: LibraryEntryCreateModel, owner_id: str = Depends(get_caller_id)):
        cover_image = None
        content_type = payload.cover_content_type
        cover_source = None
        if payload.cover_base64:
            cover_image = _decode_cover(payload.cover_base64)
            cover_source = COVER_SOURCE_UPLOAD
        elif not await asyncio.to_thread(_keeps_stored_cover, owner_id, payload):
            downloaded = await covers.download_cover(
                cover_id=payload.cover_i,
                cover_edition_key=payload.cover_edition_key,
                work_key=normalize_work_key(payload.open_library_key.strip()),
            )
            if downloaded:
                cover_image, content_type = downloaded
                cover_source = COVER_SOURCE_OPENLIBRARY

        entry = await asyncio.to_thread(
            lambda: library.upsert(
                owner_id,
                payload.open_library_key,
                payload.title,
                authors=payload.authors,
                publish_year=payload.first_publish_year,
                cover_id=payload.cover_i,
                cover_image=cover_image,
                cover_content_type=content_type,
                cover_source=cover_source,
                review=payload.review,
                rating=payload.rating,
            )
        )
        search_service.invalidate_owner(owner_id)
        return _entry_model(entry)

    @app.get("/api/books/my-library", response_model=LibraryPageModel)
    def list_library(
        title: Optional[str] = Query(None, description="Case-insensitive title substring"),
        author: Optional[str] = Query(None, description="Case-insensitive author substring"),
        hasReview: Optional[bool] = Query(None, description="true: reviewed only, false: unreviewed only"),
        page: int = Query(1, ge=1, description="Page number"),
        limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size, description="Items per page"),
        owner_id: str = Depends(get_caller_id),
    ):
        result = library.list_entries(
            owner_id, title=title, author=author, has_review=hasReview, page=page, page_size=limit
        )
        return LibraryPageModel(
            items=[_entry_model(e) for e in result["items"]],
            total=result["total"],
            page=result["page"],
            page_size=result["page_size"],
        )

    @app.get("/api/books/my-library/{entry_id}", response_model=LibraryEntryModel)
    def get_library_entry(entry_id: str, owner_id: str = Depends(get_caller_id)):
        return _entry_model(library.get_by_id(owner_id, entry_id))

    @app.put("/api/books/my-library/{entry_id}", response_model=LibraryEntryModel)
    def update_library_entry(entry_id: str, update: LibraryEntryUpdateModel,
                             owner_id: str = Depends(get_caller_id)):
        provided = update.model_fields_set
        entry = library.update_review(
            owner_id,
            entry_id,
            review=update.review if "review" in provided else UNSET,
            rating=update.rating if "rating" in provided else UNSET,
        )
        search_service.invalidate_owner(owner_id)
        return _entry_model(entry)

    @app.delete("/api/books/my-library/{entry_id}")
    def remove_library_entry(entry_id: str, owner_id: str = Depends(get_caller_id)):
        library.remove(entry_id, owner_id=owner_id)
        search_service.invalidate_owner(owner_id)
        return {"ok": True}

    return app


app = create_app()
