from __future__ import annotations

import json


class LibraryEntry:
    """A single book in somebody's personal library."""

    def __init__(self, id: str, owner_id: str, work_key: str, title: str, authors: list | None = None,
                 publish_year: int | None = None, cover_id: int | None = None,
                 cover_image: bytes | None = None, cover_content_type: str | None = None,
                 review: str | None = None, rating: float | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.owner_id = owner_id
        self.work_key = work_key
        self.title = title
        self.authors = list(authors or [])
        self.publish_year = publish_year
        self.cover_id = cover_id

        # Stored cover payload
        self.cover_image = cover_image
        self.cover_content_type = cover_content_type

        # Annotations
        self.review = review
        self.rating = rating

        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def has_cover_image(self) -> bool:
        return bool(self.cover_image)

    def to_dict(self) -> dict:
        """Serializable view of the entry. Image bytes are left out."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "work_key": self.work_key,
            "title": self.title,
            "authors": self.authors,
            "publish_year": self.publish_year,
            "cover_id": self.cover_id,
            "cover_content_type": self.cover_content_type,
            "has_cover_image": self.has_cover_image,
            "review": self.review,
            "rating": self.rating,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(data: dict) -> "LibraryEntry":
        # authors are stored as a JSON array
        authors = data.get("authors")
        if isinstance(authors, str):
            try:
                authors = json.loads(authors)
            except ValueError:
                authors = [authors] if authors else []

        rating = data.get("rating")
        if isinstance(rating, float) and rating.is_integer():
            rating = int(rating)

        image = data.get("cover_image")
        return LibraryEntry(
            id=data["id"],
            owner_id=data["owner_id"],
            work_key=data["work_key"],
            title=data["title"],
            authors=authors,
            publish_year=data.get("publish_year"),
            cover_id=data.get("cover_id"),
            cover_image=bytes(image) if image is not None else None,
            cover_content_type=data.get("cover_content_type"),
            review=data.get("review"),
            rating=rating,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
