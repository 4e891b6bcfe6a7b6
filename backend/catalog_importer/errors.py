"""Error taxonomy for the import and search pipeline.

Row-level errors (validation, dangling category) are recorded against the job
and never abort a chunk. Transport errors are retried with backoff by whoever
owns the call. Only submission-level errors reach the HTTP caller.
"""
from typing import Optional


class CatalogImportError(Exception):
    kind = "Error"


class RowValidationError(CatalogImportError):
    kind = "ValidationError"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DanglingReferenceError(CatalogImportError):
    kind = "ReferenceError"

    def __init__(self, message: str, field: Optional[str] = "category_id"):
        super().__init__(message)
        self.field = field


class NameConflictError(CatalogImportError):
    """Repeated name inside a submission that an existing entry already owns.

    Repeats of a new name are suffixed instead; this one fails the row.
    """

    kind = "ConflictError"

    def __init__(self, message: str, field: Optional[str] = "name"):
        super().__init__(message)
        self.field = field


class TransportError(CatalogImportError):
    """Queue, index or database unreachable."""

    kind = "TransportError"


class SearchUnavailableError(TransportError):
    pass


class JobStateError(CatalogImportError):
    kind = "StateError"


class JobNotFoundError(CatalogImportError):
    kind = "NotFound"


class SubmissionError(CatalogImportError):
    """The whole payload is unusable."""

    kind = "SubmissionError"


class RateLimitedError(CatalogImportError):
    """Caller submitted too many imports inside the rate window."""

    kind = "RateLimited"


class SearchFailedError(CatalogImportError):
    """Both the index and the catalog fallback failed."""

    kind = "SearchFailed"


class ProductNotFoundError(CatalogImportError):
    kind = "NotFound"
