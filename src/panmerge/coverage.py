"""Median depth and breadth of a depth profile.

The median is computed from the depth histogram rather than by sorting all
positions, so memory stays proportional to the maximum depth.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .depth import DepthProfile
from .errors import NoQualifyingContigsError, UndefinedMedianError
from .models import SampleCoverageStats

logger = logging.getLogger(__name__)


def _depth_at_rank(cum: np.ndarray, rank: int) -> int:
    """Depth of the ``rank``-th (0-based) covered position in sorted order.

    ``cum`` is the cumulative histogram of covered depths, starting at depth 1.
    """
    return int(np.searchsorted(cum, rank + 1, side="left")) + 1


def median_from_histogram(hist: np.ndarray) -> float:
    """Median of the depths with a nonzero value, from a depth histogram (index = depth)."""
    covered = np.asarray(hist[1:], dtype=np.int64)
    n = int(covered.sum()) if covered.size else 0
    if n == 0:
        raise UndefinedMedianError("No covered position; median depth is undefined")
    cum = np.cumsum(covered)
    if n % 2 == 1:
        return float(_depth_at_rank(cum, n // 2))
    lo = _depth_at_rank(cum, n // 2 - 1)
    hi = _depth_at_rank(cum, n // 2)
    return (lo + hi) / 2.0


def median_covered_depth(profile: DepthProfile) -> float:
    return median_from_histogram(profile.histogram())


def breadth_percent(covered_positions: int, total_length: int) -> float:
    if total_length <= 0:
        raise NoQualifyingContigsError("Qualifying reference length is zero; breadth is undefined")
    return 100.0 * covered_positions / total_length


def evaluate_coverage(sample_id: str, profile: DepthProfile, total_length: int) -> SampleCoverageStats:
    """Summarize a depth profile. Undefined statistics are reported as None."""
    covered = profile.covered_positions()

    median: Optional[float]
    try:
        median = median_covered_depth(profile)
    except UndefinedMedianError as e:
        logger.info("%s: %s", sample_id, e)
        median = None

    breadth: Optional[float]
    try:
        breadth = breadth_percent(covered, total_length)
    except NoQualifyingContigsError as e:
        logger.info("%s: %s", sample_id, e)
        breadth = None

    stats = SampleCoverageStats(
        sample_id=sample_id,
        median_depth=median,
        breadth=breadth,
        covered_positions=covered,
        total_length=int(total_length),
        reads_used=profile.reads_used,
    )
    logger.info(
        "%s: median depth %s, breadth %s",
        sample_id,
        "NA" if median is None else f"{median:.2f}",
        "NA" if breadth is None else f"{breadth:.2f}%",
    )
    return stats
