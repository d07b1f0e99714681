"""Custom exceptions for wdtagger.

Each exception type represents a category of error.
Catch specific exceptions to handle errors appropriately.
"""

from __future__ import annotations


class TaggerError(Exception):
    """Base exception for all wdtagger errors."""


class InvalidInputError(TaggerError):
    """Raised when an image or target size cannot be normalized."""


class InsufficientDataError(TaggerError):
    """Raised when mCut is asked for a threshold on fewer than two values."""


class EmptyGroupError(InsufficientDataError):
    """Raised when an adaptive threshold is requested for a category with fewer than two tags."""

    def __init__(self, category: str, size: int) -> None:
        super().__init__(f"Adaptive threshold needs at least 2 '{category}' tags, got {size}")
        self.category = category
        self.size = size


class CatalogMismatchError(TaggerError):
    """Raised when the probability vector does not line up with the tag catalog."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Model returned {actual} probabilities for a catalog of {expected} tags")
        self.expected = expected
        self.actual = actual


class CatalogLoadError(TaggerError):
    """Raised when a tag catalog file is malformed."""


class ModelLoadError(TaggerError):
    """Raised when a model artifact cannot be used as a tagger."""


class EngineClosedError(TaggerError):
    """Raised when inference is attempted on a released engine."""


class UnknownModelError(TaggerError, KeyError):
    """Raised when a model name is not in the registry."""
