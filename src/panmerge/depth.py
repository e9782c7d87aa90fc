from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import numpy as np

from .config import PipelineConfig
from .filtering import iter_filtered_records
from .models import AlignmentRecord, ContigLayout, QualifyingContigs

logger = logging.getLogger(__name__)


@dataclass
class DepthProfile:
    """Dense per-position read depth over the qualifying contigs.

    Zero-depth positions are stored explicitly: ``depths[contig]`` has one entry per
    base of the contig.
    """

    depths: Dict[str, np.ndarray]
    reads_used: int = 0

    @property
    def total_length(self) -> int:
        return int(sum(a.size for a in self.depths.values()))

    def covered_positions(self) -> int:
        return int(sum(np.count_nonzero(a) for a in self.depths.values()))

    def histogram(self) -> np.ndarray:
        """Number of positions at each depth (index = depth), summed over contigs."""
        hist = np.zeros(1, dtype=np.int64)
        for a in self.depths.values():
            if a.size == 0:
                continue
            h = np.bincount(a)
            if h.size > hist.size:
                h[: hist.size] += hist
                hist = h.astype(np.int64)
            else:
                hist[: h.size] += h
        return hist

    def values(self) -> np.ndarray:
        """All depths concatenated in contig order."""
        if not self.depths:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(list(self.depths.values()))


def profile_depth(records: Iterable[AlignmentRecord], qualifying: QualifyingContigs) -> DepthProfile:
    """Count, for every position of every qualifying contig, the overlapping records.

    Each record contributes over its aligned blocks. Records are not required to have a
    mapped mate. Records on non-qualifying contigs are ignored.
    """
    # difference arrays, one slot past the contig end
    diffs = {name: np.zeros(qualifying.length_of(name) + 1, dtype=np.int64) for name in qualifying.names}
    n = 0
    for record in records:
        diff = diffs.get(record.contig)
        if diff is None:
            continue
        blocks = record.blocks or ((record.start0, record.end0),)
        for start0, end0 in blocks:
            diff[start0] += 1
            diff[end0] -= 1
        n += 1

    depths = {name: np.cumsum(diff[:-1]).astype(np.int64) for name, diff in diffs.items()}
    return DepthProfile(depths=depths, reads_used=n)


def profile_bam(
    bam_path: str,
    layout: ContigLayout,
    qualifying: QualifyingContigs,
    config: PipelineConfig,
    *,
    sample_id: Optional[str] = None,
    progress: bool = False,
) -> DepthProfile:
    """Filter a BAM and build its depth profile in a single streaming pass."""
    records = (
        record
        for _, record in iter_filtered_records(
            bam_path, layout, qualifying, config, sample_id=sample_id, progress=progress
        )
    )
    profile = profile_depth(records, qualifying)
    logger.info(
        "%s: %d filtered reads over %d bp",
        sample_id or bam_path,
        profile.reads_used,
        profile.total_length,
    )
    return profile
