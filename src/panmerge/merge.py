from __future__ import annotations

import heapq
import logging
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import pysam

from .downsample import build_output_header
from .errors import MergeError
from .models import QualifyingContigs
from .validation import describe_mismatch, header_contigs

logger = logging.getLogger(__name__)


def _sort_key(read: pysam.AlignedSegment) -> Tuple[int, int]:
    return read.reference_id, read.reference_start


def _read_groups(header: pysam.AlignmentHeader) -> List[str]:
    return [rg["ID"] for rg in header.to_dict().get("RG", [])]


def merge_alignments(
    inputs: Sequence[str | Path],
    out_bam: str | Path,
    qualifying: QualifyingContigs,
    *,
    reference_id: str,
) -> Optional[int]:
    """Merge coordinate-sorted per-sample BAMs into one coordinate-sorted, indexed BAM.

    Inputs are streamed (k-way merge); ties keep input order. Returns the number of
    records written, or None (and writes nothing) when ``inputs`` is empty.

    Raises
    ------
    MergeError
        If an input's contigs differ from the qualifying contigs.
    """
    if not inputs:
        logger.info("%s: nothing to merge", reference_id)
        return None

    expected = list(zip(qualifying.names, (int(x) for x in qualifying.lengths)))
    out_bam = Path(out_bam)

    with ExitStack() as stack:
        handles = [stack.enter_context(pysam.AlignmentFile(str(p), "rb")) for p in inputs]

        read_groups: List[str] = []
        for path, bam in zip(inputs, handles):
            observed = header_contigs(bam.header)
            if observed != expected:
                raise MergeError(
                    f"Contigs of {path} do not match the qualifying contigs ("
                    + describe_mismatch(dict(expected), dict(observed))
                    + ")",
                    reference_id=reference_id,
                )
            for rg in _read_groups(bam.header):
                if rg in read_groups:
                    raise MergeError(f"Read group {rg} appears in more than one input", reference_id=reference_id)
                read_groups.append(rg)

        header = build_output_header(qualifying, read_groups)
        streams: List[Iterator[pysam.AlignedSegment]] = [bam.fetch(until_eof=True) for bam in handles]

        n = 0
        with pysam.AlignmentFile(str(out_bam), "wb", header=header) as out:
            for read in heapq.merge(*streams, key=_sort_key):
                out.write(read)
                n += 1

    pysam.index(str(out_bam))
    logger.info("%s: merged %d records from %d sample(s) -> %s", reference_id, n, len(inputs), out_bam)
    return n
