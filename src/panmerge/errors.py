"""Exception types.

Only :class:`MergeError` aborts a reference-set run. The others are raised by the
statistics and filtering helpers and handled per sample by the caller.
"""

from __future__ import annotations

from typing import Optional


class PanmergeError(RuntimeError):
    """Base class for panmerge errors."""


class NoQualifyingContigsError(PanmergeError):
    """Raised when the qualifying reference length is zero (breadth undefined)."""


class UndefinedMedianError(PanmergeError):
    """Raised when a depth profile has no covered position."""


class MalformedAlignmentError(PanmergeError):
    """Raised when a sample's alignment data disagrees with the reference set."""

    def __init__(self, message: str, *, sample_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.sample_id = sample_id


class MergeError(PanmergeError):
    """Raised when per-sample alignments cannot be merged."""

    def __init__(self, message: str, *, reference_id: str) -> None:
        super().__init__(f"[{reference_id}] {message}")
        self.reference_id = reference_id
