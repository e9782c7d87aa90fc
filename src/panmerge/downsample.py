from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Sequence

import pysam

from . import __version__
from .config import PipelineConfig
from .filtering import iter_filtered_records
from .models import ContigLayout, DownsamplePlan, QualifyingContigs

logger = logging.getLogger(__name__)

_HASH_SPACE = float(2**64)


def read_hash(qname: str, seed: int) -> float:
    """Deterministic pseudo-uniform value in [0, 1) for a read name and seed."""
    h = hashlib.blake2b(f"{int(seed)}:{qname}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(h, "big") / _HASH_SPACE


def keep_read(qname: str, fraction: float, seed: int) -> bool:
    """Select a read by name, so both mates of a pair share the decision."""
    if fraction >= 1.0:
        return True
    if fraction <= 0.0:
        return False
    return read_hash(qname, seed) < fraction


def build_output_header(qualifying: QualifyingContigs, read_groups: Sequence[str]) -> pysam.AlignmentHeader:
    """Header with the qualifying contigs only and one read group per sample."""
    hdr: Dict[str, object] = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": n, "LN": int(l)} for n, l in zip(qualifying.names, qualifying.lengths)],
        "PG": [{"ID": "panmerge", "PN": "panmerge", "VN": __version__}],
    }
    if read_groups:
        hdr["RG"] = [{"ID": rg, "SM": rg} for rg in read_groups]
    return pysam.AlignmentHeader.from_dict(hdr)


def rehead_read(
    read: pysam.AlignedSegment,
    header: pysam.AlignmentHeader,
    *,
    read_group: Optional[str] = None,
) -> pysam.AlignedSegment:
    """Re-express ``read`` against ``header`` (which must contain its contig).

    Mate information pointing at a contig missing from ``header`` is cleared.
    """
    fields = read.to_string().split("\t")
    rnext = fields[6]
    if rnext not in ("=", "*") and rnext not in header.references:
        fields[6] = "*"
        fields[7] = "0"
        fields[8] = "0"
    out = pysam.AlignedSegment.fromstring("\t".join(fields), header)
    if read_group is not None:
        out.set_tag("RG", read_group, value_type="Z")
    return out


def downsample_sample(
    *,
    sample_id: str,
    bam_path: str,
    out_bam: str | Path,
    layout: ContigLayout,
    qualifying: QualifyingContigs,
    plan: DownsamplePlan,
    config: PipelineConfig,
    progress: bool = False,
) -> Dict[str, object]:
    """Write a coordinate-sorted, indexed BAM holding the selected fraction of filtered reads.

    The same input, plan and seed always produce the same bytes.

    Returns
    -------
    dict
        Summary with read counts and the output path.
    """
    t0 = time.time()
    fraction = plan.keep_fraction
    out_bam = Path(out_bam)
    unsorted = out_bam.with_name(out_bam.stem + ".unsorted.bam")
    header = build_output_header(qualifying, [sample_id])

    reads_in = 0
    reads_kept = 0
    with pysam.AlignmentFile(str(unsorted), "wb", header=header) as out:
        for read, record in iter_filtered_records(
            bam_path, layout, qualifying, config, sample_id=sample_id, progress=progress
        ):
            reads_in += 1
            if not keep_read(record.qname, fraction, config.seed):
                continue
            out.write(rehead_read(read, header, read_group=sample_id))
            reads_kept += 1

    pysam.sort("--no-PG", "-T", str(out_bam.with_name(out_bam.stem + ".sorttmp")), "-o", str(out_bam), str(unsorted))
    unsorted.unlink()
    pysam.index(str(out_bam))

    dt = time.time() - t0
    logger.info(
        "%s: kept %d/%d filtered reads (fraction %.4f) -> %s",
        sample_id,
        reads_kept,
        reads_in,
        fraction,
        out_bam,
    )
    return {
        "sample_id": sample_id,
        "out_bam": str(out_bam),
        "fraction": float(plan.fraction) if plan.fraction is not None else None,
        "keep_fraction": float(fraction),
        "reads_in": reads_in,
        "reads_kept": reads_kept,
        "runtime_seconds": float(dt),
    }
