import re
from typing import Optional, Union

from bookshelf.config import settings
from bookshelf.errors import ValidationError

WORK_KEY_PREFIX = "/works/"
_BARE_WORK_ID = re.compile(r"OL\d+W")
MAX_RATING = 5


class WorkKeyValidator:
    """Normalizes Open Library work identifiers to the ``/works/OL...W`` form."""

    @staticmethod
    def normalize_work_key(raw: Optional[str]) -> Optional[str]:
        """Return the canonical work key for ``raw``.

        Already-canonical keys and unrecognized identifiers are returned
        unchanged; a bare ``OL<digits>W`` token gets the ``/works/`` prefix.
        Empty or missing input comes back as-is.
        """
        if not raw:
            return raw
        if raw.startswith(WORK_KEY_PREFIX):
            return raw
        if _BARE_WORK_ID.fullmatch(raw):
            return f"{WORK_KEY_PREFIX}{raw}"
        return raw


normalize_work_key = WorkKeyValidator.normalize_work_key


class TextValidator:
    """Checks applied to user supplied text before it reaches storage or the network."""

    @staticmethod
    def clean_query(query: Optional[str], min_length: Optional[int] = None) -> str:
        """Trim a search query and enforce the minimum length."""
        min_length = settings.search_min_query_length if min_length is None else min_length
        cleaned = (query or "").strip()
        if not cleaned:
            raise ValidationError("Search query must not be empty.")
        if len(cleaned) < min_length:
            raise ValidationError(f"Search query must be at least {min_length} characters long.")
        return cleaned

    @staticmethod
    def validate_review(review: Optional[str]) -> None:
        if review is not None and len(review) > settings.max_review_length:
            raise ValidationError(f"Review must be at most {settings.max_review_length} characters.")

    @staticmethod
    def validate_rating(rating: Optional[Union[int, float]]) -> None:
        if rating is None:
            return
        # bool is an int subclass
        if isinstance(rating, bool) or not isinstance(rating, (int, float)):
            raise ValidationError("Rating must be a number.")
        if not 0 <= rating <= MAX_RATING:
            raise ValidationError(f"Rating must be between 0 and {MAX_RATING}.")

    @staticmethod
    def validate_title(title: Optional[str]) -> str:
        if title is None or not title.strip():
            raise ValidationError("Title must not be empty.")
        return title.strip()
