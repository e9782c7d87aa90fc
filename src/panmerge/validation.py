from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Mapping

import pysam

from .errors import MalformedAlignmentError
from .models import ContigLayout

logger = logging.getLogger(__name__)


def check_alignment_header(header: pysam.AlignmentHeader, layout: ContigLayout) -> None:
    """Ensure every @SQ line of an alignment header matches a contig of the reference set.

    Raises MalformedAlignmentError naming the first inconsistent contig.
    """
    lengths = layout.lengths()
    for name, length in zip(header.references, header.lengths):
        if name not in lengths:
            raise MalformedAlignmentError(
                f"Alignment header contig {name} is not part of reference {layout.reference_id}"
            )
        if int(length) != lengths[name]:
            raise MalformedAlignmentError(
                f"Alignment header length for {name} is {length}, reference {layout.reference_id} has {lengths[name]}"
            )


def missing_inputs(samples: Mapping[str, str | Path]) -> List[str]:
    """Sample ids whose alignment file does not exist."""
    return [sid for sid, p in samples.items() if not Path(p).exists()]


def header_contigs(header: pysam.AlignmentHeader) -> List[tuple]:
    return list(zip(header.references, (int(x) for x in header.lengths)))


def describe_mismatch(expected: Mapping[str, int], observed: Mapping[str, int]) -> str:
    """Short human-readable difference between two contig -> length maps."""
    missing = sorted(set(expected) - set(observed))
    extra = sorted(set(observed) - set(expected))
    changed = sorted(k for k in set(expected) & set(observed) if expected[k] != observed[k])
    parts = []
    if missing:
        parts.append(f"missing {missing[:3]}")
    if extra:
        parts.append(f"unexpected {extra[:3]}")
    if changed:
        parts.append(f"length differs for {changed[:3]}")
    if not parts and list(expected) != list(observed):
        parts.append("contig order differs")
    return "; ".join(parts) or "identical"
