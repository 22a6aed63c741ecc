"""Exceptions raised while converting SIARD archives."""

from typing import Any, Dict


class Siard2SqlError(Exception):
    """Base exception for all conversion errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class MetadataError(Siard2SqlError):
    """header/metadata.xml is missing, unreadable or has no root element."""
    pass


class ArchiveError(Siard2SqlError):
    """Zip container processing failed."""
    pass


class ArchiveOpenError(ArchiveError):
    """Container could not be opened and indexed."""
    pass


class ArchiveMemberNotFound(ArchiveError):
    """Member is not present in the container index."""
    pass


class ArchiveExtractionError(ArchiveError):
    """Member is indexed but could not be extracted."""
    pass


class UnresolvablePathError(Siard2SqlError):
    """A (possibly nested) container path could not be turned into a plain file path."""
    pass


class TypeRecursionError(Siard2SqlError):
    """Complex type nesting exceeded the maximum depth."""
    pass
