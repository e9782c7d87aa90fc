from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, Optional, Tuple

import pysam
from tqdm import tqdm

from .config import PipelineConfig
from .errors import MalformedAlignmentError
from .models import AlignmentRecord, ContigLayout, QualifyingContigs
from .validation import check_alignment_header

logger = logging.getLogger(__name__)


def record_from_segment(read: pysam.AlignedSegment, contig_lengths: Dict[str, int]) -> AlignmentRecord:
    """Build an AlignmentRecord from a mapped pysam read, checking it against the reference.

    Raises
    ------
    MalformedAlignmentError
        If the read's contig is unknown, it has no CIGAR, or its span leaves the contig.
    """
    contig = read.reference_name
    if contig is None or contig not in contig_lengths:
        raise MalformedAlignmentError(
            f"Read {read.query_name} is aligned to contig {contig!r}, which is not in the reference set"
        )
    start0 = read.reference_start
    end0 = read.reference_end
    if read.cigartuples is None or end0 is None or start0 is None:
        raise MalformedAlignmentError(f"Read {read.query_name} is mapped but has no CIGAR")
    length = contig_lengths[contig]
    if start0 < 0 or end0 > length or end0 < start0:
        raise MalformedAlignmentError(
            f"Read {read.query_name} spans {contig}:{start0}-{end0}, outside the contig (length {length})"
        )
    return AlignmentRecord(
        qname=str(read.query_name),
        contig=contig,
        start0=int(start0),
        end0=int(end0),
        is_paired=bool(read.is_paired),
        is_duplicate=bool(read.is_duplicate),
        mapping_quality=int(read.mapping_quality),
        blocks=tuple((int(s), int(e)) for s, e in read.get_blocks()),
    )


def passes_filter(record: AlignmentRecord, qualifying: QualifyingContigs, *, min_mapq: int = 20) -> bool:
    """Paired, not a duplicate, MAPQ >= min_mapq, and on a qualifying contig."""
    return (
        record.is_paired
        and not record.is_duplicate
        and record.mapping_quality >= min_mapq
        and record.contig in qualifying
    )


def filter_records(
    records: Iterable[AlignmentRecord],
    qualifying: QualifyingContigs,
    *,
    min_mapq: int = 20,
) -> Iterator[AlignmentRecord]:
    for record in records:
        if passes_filter(record, qualifying, min_mapq=min_mapq):
            yield record


def iter_filtered_records(
    bam_path: str,
    layout: ContigLayout,
    qualifying: QualifyingContigs,
    config: PipelineConfig,
    *,
    sample_id: Optional[str] = None,
    progress: bool = False,
) -> Iterator[Tuple[pysam.AlignedSegment, AlignmentRecord]]:
    """Stream a BAM/SAM and yield ``(read, record)`` for every record that passes the filter.

    Every mapped primary record is validated against the reference set, including records
    on non-qualifying contigs.
    """
    contig_lengths = layout.lengths()
    counts = {
        "reads_total": 0,
        "reads_unmapped": 0,
        "reads_skipped_secondary": 0,
        "reads_skipped_supplementary": 0,
        "reads_skipped_qcfail": 0,
        "reads_filtered": 0,
        "reads_kept": 0,
    }

    with pysam.AlignmentFile(bam_path, "r", check_sq=False) as bam:
        try:
            check_alignment_header(bam.header, layout)
        except MalformedAlignmentError as e:
            e.sample_id = sample_id
            raise

        it: Iterable[pysam.AlignedSegment] = bam.fetch(until_eof=True)
        if progress:
            it = tqdm(it, unit="read", desc=f"Scanning {sample_id or bam_path}", leave=False)

        for read in it:
            counts["reads_total"] += 1

            if read.is_unmapped:
                counts["reads_unmapped"] += 1
                continue
            if read.is_secondary and not config.include_secondary:
                counts["reads_skipped_secondary"] += 1
                continue
            if read.is_supplementary and not config.include_supplementary:
                counts["reads_skipped_supplementary"] += 1
                continue
            if read.is_qcfail:
                counts["reads_skipped_qcfail"] += 1
                continue

            try:
                record = record_from_segment(read, contig_lengths)
            except MalformedAlignmentError as e:
                e.sample_id = sample_id
                raise

            if not passes_filter(record, qualifying, min_mapq=config.min_mapq):
                counts["reads_filtered"] += 1
                continue

            counts["reads_kept"] += 1
            yield read, record

    logger.debug("Filter counts for %s: %s", sample_id or bam_path, counts)
