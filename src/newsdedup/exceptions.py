"""Exception hierarchy for newsdedup."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from newsdedup.protocols import SourceDuplicationCheckResult


class NewsDedupError(Exception):
    """Base class for all newsdedup errors."""


class MissingTitleError(NewsDedupError, ValueError):
    """Raised when an article has no usable title."""

    def __init__(self, message: str = "Article has no title") -> None:
        super().__init__(message)


class SearchIndexError(NewsDedupError):
    """Raised when the search index cannot serve a request."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Search index {operation} failed{detail}")


class DocumentNotFoundError(SearchIndexError):
    """Raised when a document id is unknown to the search index."""


class StoreError(NewsDedupError):
    """Raised when the document store rejects an operation."""


class SourceNotFoundError(NewsDedupError, LookupError):
    """Raised when a source id does not exist."""


class DuplicateSourceError(NewsDedupError):
    """Raised when a newly registered source duplicates an existing one."""

    def __init__(self, check: SourceDuplicationCheckResult) -> None:
        self.check = check
        existing = check.existing_source.link if check.existing_source else "unknown"
        super().__init__(
            f"Source duplicates {existing} (confidence {check.confidence:.2f}, {check.reason})"
        )


class IngestorError(NewsDedupError):
    """Raised when the AI normalization agent fails or returns unusable output."""
