"""Exceptions raised by covcache."""

from __future__ import annotations

from typing import Any, Optional


class CoverageError(Exception):
    """Base exception class for covcache."""


class InvalidRegionError(CoverageError, ValueError):
    """Raised when a genomic region is malformed (unparsable, or start > stop)."""


class ReferenceUnavailableError(CoverageError):
    """Raised when the reference sequence for a mismatch update cannot be obtained.

    Nothing is applied to the cache for the failed request.
    """

    def __init__(self, message: str, *, interval: Optional[Any] = None) -> None:
        super().__init__(message)
        self.interval = interval
