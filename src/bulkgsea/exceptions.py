"""Exceptions raised by the gene set enrichment pipeline."""

from typing import Optional


class BulkGseaError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(BulkGseaError, ValueError):
    """Raised for malformed ranked lists, gene sets or size bounds."""


class EmptyIntersectionError(InvalidInputError):
    """Raised when a gene set shares no genes with the ranked list."""

    def __init__(self, pathway: Optional[str] = None, message: Optional[str] = None):
        self.pathway = pathway
        if message is None:
            if pathway is None:
                message = "Gene set has no genes in common with the ranked list"
            else:
                message = f"Gene set '{pathway}' has no genes in common with the ranked list"
        super().__init__(message)

    def __reduce__(self):
        return (type(self), (self.pathway, str(self)))


class InvalidScheduleError(BulkGseaError, ValueError):
    """Raised when a permutation trial schedule is malformed."""


class RunAbortedError(BulkGseaError):
    """Raised when the caller aborts a bulk run between gene sets."""
