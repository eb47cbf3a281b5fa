"""Error taxonomy shared by the library, search and cover services.

Every error carries an HTTP status and a stable machine-readable code so the
API layer can report a ``{"code", "message"}`` pair without leaking internals.
"""


class BookshelfError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(BookshelfError):
    """Bad input shape or length, rejected before any I/O."""

    status_code = 400
    code = "VALIDATION_ERROR"


class UpstreamError(BookshelfError):
    """Open Library unreachable, timed out or answered with a non-success status."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class NotFoundError(BookshelfError):
    status_code = 404
    code = "NOT_FOUND"


class DegradedLookupError(BookshelfError):
    """An optional enrichment lookup failed. Callers convert it to a default."""

    code = "DEGRADED_LOOKUP"
