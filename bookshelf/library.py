import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bookshelf.config import settings
from bookshelf.database import get_db_connection, initialize_database
from bookshelf.entry import LibraryEntry
from bookshelf.errors import NotFoundError, ValidationError
from bookshelf.utils.validators import TextValidator, normalize_work_key

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"
DEFAULT_COVER_CONTENT_TYPE = "image/jpeg"

# Where stored cover bytes came from
COVER_SOURCE_OPENLIBRARY = "openlibrary"
COVER_SOURCE_UPLOAD = "upload"

# Largest OFFSET SQLite accepts
MAX_SQL_INTEGER = 2 ** 63 - 1


class _Unset:
    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "UNSET"


# Marks an argument that was not provided, as opposed to an explicit None
UNSET: Any = _Unset()

Number = Union[int, float]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _owner(owner_id: Optional[str]) -> str:
    return owner_id or ANONYMOUS


class Library:
    """Owns the persisted library entries of every caller.

    All reads and writes are scoped by owner. Uniqueness of
    (owner, work key) is enforced by the database, so concurrent upserts of
    the same book collapse into a single row.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.data_file
        initialize_database(self.db_file)

    # ------------------------- Lookups ------------------------- #
    def bulk_exists(self, owner_id: Optional[str], keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Map every requested work key to its membership for ``owner_id``.

        Keys that are not in the library still get ``{"exists": False}``.
        Owned entries with stored cover bytes also carry ``cover_id``, the
        reference used to serve the stored image.
        """
        requested = list(dict.fromkeys(k for k in keys if k))
        result: Dict[str, Dict[str, Any]] = {key: {"exists": False} for key in requested}
        if not requested:
            return result

        placeholders = ", ".join("?" for _ in requested)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                f"""
                SELECT work_key, cover_id, length(cover_image) > 0 AS has_image
                FROM library_entries
                WHERE owner_id = ? AND work_key IN ({placeholders})
                """,
                (_owner(owner_id), *requested),
            )
            for row in cursor.fetchall():
                found: Dict[str, Any] = {"exists": True}
                if row["has_image"] and row["cover_id"] is not None:
                    found["cover_id"] = row["cover_id"]
                result[row["work_key"]] = found
        finally:
            conn.close()
        return result

    def get_by_id(self, owner_id: Optional[str], entry_id: str) -> LibraryEntry:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT * FROM library_entries WHERE id = ? AND owner_id = ?",
                (entry_id, _owner(owner_id)),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Library entry not found.")
        return LibraryEntry.from_row(dict(row))

    def find_by_work_key(self, owner_id: Optional[str], work_key: str) -> Optional[LibraryEntry]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT * FROM library_entries WHERE owner_id = ? AND work_key = ?",
                (_owner(owner_id), normalize_work_key((work_key or "").strip())),
            ).fetchone()
        finally:
            conn.close()
        return LibraryEntry.from_row(dict(row)) if row else None

    def get_cover_image(self, cover_id: int) -> Optional[Tuple[bytes, str, str]]:
        """Return stored cover bytes, content type and source for ``cover_id``.

        Bytes downloaded from Open Library win over client uploads for the same id.
        """
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                """
                SELECT cover_image, cover_content_type, cover_source FROM library_entries
                WHERE cover_id = ? AND length(cover_image) > 0
                ORDER BY COALESCE(cover_source = ?, 0) DESC, updated_at DESC LIMIT 1
                """,
                (cover_id, COVER_SOURCE_OPENLIBRARY),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return (
            bytes(row["cover_image"]),
            row["cover_content_type"] or DEFAULT_COVER_CONTENT_TYPE,
            row["cover_source"] or COVER_SOURCE_UPLOAD,
        )

    # ------------------------- Mutations ------------------------- #
    def upsert(self, owner_id: Optional[str], work_key: str, title: str, *,
               authors: Optional[List[str]] = None, publish_year: Optional[int] = None,
               cover_id: Optional[int] = None, cover_image: Optional[bytes] = None,
               cover_content_type: Optional[str] = None, cover_source: Optional[str] = None,
               review: Optional[str] = None, rating: Optional[Number] = None) -> LibraryEntry:
        """Insert the entry for (owner, work key) or update the existing one.

        On update only the fields given here (not ``None``) change and
        ``created_at`` is kept. A new ``cover_id`` without new bytes drops the
        stored image of the old cover. The whole operation is one SQL statement.
        """
        owner = _owner(owner_id)
        key = normalize_work_key((work_key or "").strip())
        if not key:
            raise ValidationError("Work key must not be empty.")
        title = TextValidator.validate_title(title)
        TextValidator.validate_review(review)
        TextValidator.validate_rating(rating)

        if cover_image:
            cover_content_type = cover_content_type or DEFAULT_COVER_CONTENT_TYPE
            cover_source = cover_source or COVER_SOURCE_UPLOAD
        else:
            cover_image = None
            cover_content_type = None
            cover_source = None

        now = _utcnow()
        params = {
            "id": uuid.uuid4().hex,
            "owner_id": owner,
            "work_key": key,
            "title": title,
            "authors_insert": json.dumps(list(authors or []), ensure_ascii=False),
            "authors": json.dumps(list(authors), ensure_ascii=False) if authors is not None else None,
            "publish_year": publish_year,
            "cover_id": cover_id,
            "cover_image": cover_image,
            "cover_content_type": cover_content_type,
            "cover_source": cover_source,
            "review": review,
            "rating": rating,
            "now": now,
        }

        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                """
                INSERT INTO library_entries (
                    id, owner_id, work_key, title, authors, publish_year, cover_id,
                    cover_image, cover_content_type, cover_source, review, rating, created_at, updated_at
                ) VALUES (
                    :id, :owner_id, :work_key, :title, :authors_insert, :publish_year, :cover_id,
                    :cover_image, :cover_content_type, :cover_source, :review, :rating, :now, :now
                )
                ON CONFLICT(owner_id, work_key) DO UPDATE SET
                    title = excluded.title,
                    authors = COALESCE(:authors, authors),
                    publish_year = COALESCE(:publish_year, publish_year),
                    cover_id = COALESCE(:cover_id, cover_id),
                    cover_image = CASE
                        WHEN :cover_image IS NOT NULL THEN :cover_image
                        WHEN :cover_id IS NOT NULL AND :cover_id IS NOT cover_id THEN NULL
                        ELSE cover_image END,
                    cover_content_type = CASE
                        WHEN :cover_image IS NOT NULL THEN :cover_content_type
                        WHEN :cover_id IS NOT NULL AND :cover_id IS NOT cover_id THEN NULL
                        ELSE cover_content_type END,
                    cover_source = CASE
                        WHEN :cover_image IS NOT NULL THEN :cover_source
                        WHEN :cover_id IS NOT NULL AND :cover_id IS NOT cover_id THEN NULL
                        ELSE cover_source END,
                    review = COALESCE(:review, review),
                    rating = COALESCE(:rating, rating),
                    updated_at = excluded.updated_at
                """,
                params,
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM library_entries WHERE owner_id = ? AND work_key = ?",
                (owner, key),
            ).fetchone()
        finally:
            conn.close()

        entry = LibraryEntry.from_row(dict(row))
        logger.info(f"Library entry saved: owner={owner} work_key={key} id={entry.id}")
        return entry

    def update_review(self, owner_id: Optional[str], entry_id: str,
                      review: Optional[str] = UNSET, rating: Optional[Number] = UNSET) -> LibraryEntry:
        """Change the review and/or rating of an entry.

        Arguments left out are untouched; an explicit ``None`` clears the field.
        """
        assignments = ["updated_at = ?"]
        params: List[Any] = [_utcnow()]
        if review is not UNSET:
            TextValidator.validate_review(review)
            assignments.append("review = ?")
            params.append(review)
        if rating is not UNSET:
            TextValidator.validate_rating(rating)
            assignments.append("rating = ?")
            params.append(rating)

        owner = _owner(owner_id)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                f"UPDATE library_entries SET {', '.join(assignments)} WHERE id = ? AND owner_id = ?",
                (*params, entry_id, owner),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Library entry not found.")
            row = conn.execute("SELECT * FROM library_entries WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        return LibraryEntry.from_row(dict(row))

    def remove(self, entry_id: str, owner_id: Optional[str] = None) -> None:
        """Delete an entry by id. With ``owner_id`` the delete only matches that owner's entry."""
        conn = get_db_connection(self.db_file)
        try:
            if owner_id is None:
                cursor = conn.execute("DELETE FROM library_entries WHERE id = ?", (entry_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM library_entries WHERE id = ? AND owner_id = ?",
                    (entry_id, owner_id),
                )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Library entry not found.")
        finally:
            conn.close()
        logger.info(f"Library entry removed: id={entry_id}")

    # ------------------------- Listing ------------------------- #
    def list_entries(self, owner_id: Optional[str], *, title: Optional[str] = None,
                     author: Optional[str] = None, has_review: Optional[bool] = None,
                     page: int = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        """One page of the owner's library, most recently modified first."""
        page = max(1, int(page or 1))
        page_size = settings.default_page_size if page_size is None else int(page_size)
        page_size = min(max(1, page_size), settings.max_page_size)

        clauses = ["owner_id = ?"]
        params: List[Any] = [_owner(owner_id)]

        title = (title or "").strip()
        if title:
            clauses.append("contains_ci(title, ?)")
            params.append(title)

        author = (author or "").strip()
        if author:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(library_entries.authors) AS a WHERE contains_ci(a.value, ?))"
            )
            params.append(author)

        if has_review is True:
            clauses.append("(review IS NOT NULL AND review != '')")
        elif has_review is False:
            clauses.append("(review IS NULL OR review = '')")

        where = " AND ".join(clauses)
        conn = get_db_connection(self.db_file)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM library_entries WHERE {where}", params).fetchone()[0]
            offset = (page - 1) * page_size
            rows = []
            # Pages beyond SQLite's integer range cannot hold rows
            if offset <= MAX_SQL_INTEGER:
                rows = conn.execute(
                    f"""
                    SELECT * FROM library_entries WHERE {where}
                    ORDER BY updated_at DESC, rowid DESC
                    LIMIT ? OFFSET ?
                    """,
                    (*params, page_size, offset),
                ).fetchall()
        finally:
            conn.close()

        return {
            "items": [LibraryEntry.from_row(dict(row)) for row in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
