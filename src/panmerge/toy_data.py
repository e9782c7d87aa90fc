from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import pysam

from .utils import ensure_outdir, write_json

READ_LEN = 100
FRAGMENT_LEN = 300

# name, length, header comment
TOY_CONTIGS: Tuple[Tuple[str, int, str], ...] = (
    ("pan_core_1", 3000, "core"),
    ("pan_core_2", 2000, "core"),
    ("pan_acc_1", 1500, "accessory"),
    ("pan_core_short", 600, "core"),
)

# approximate median depth per sample
TOY_DEPTHS: Dict[str, int] = {"S1": 40, "S2": 20, "S3": 4}


def _write_fasta(path: Path, contigs: List[Tuple[str, str, str]]) -> None:
    lines = []
    for name, comment, seq in contigs:
        lines.append(f">{name} {comment}" if comment else f">{name}")
        for i in range(0, len(seq), 60):
            lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _make_read(
    name: str,
    ref_id: int,
    start0: int,
    seq: str,
    *,
    flag: int,
    mate_start0: int,
    tlen: int,
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = ref_id
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.next_reference_id = ref_id
    a.next_reference_start = mate_start0
    a.template_length = tlen
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def _pairs_for_depth(
    sample: str,
    ref_id: int,
    ref_seq: str,
    depth: int,
) -> List[pysam.AlignedSegment]:
    """Tile read pairs along a contig so interior positions reach roughly ``depth``."""
    reads: List[pysam.AlignedSegment] = []
    # two mates per fragment, each READ_LEN long
    step = max(1, (2 * READ_LEN) // max(1, depth))
    for i, start0 in enumerate(range(0, len(ref_seq) - FRAGMENT_LEN + 1, step)):
        mate0 = start0 + FRAGMENT_LEN - READ_LEN
        name = f"{sample}_{ref_id}_{i}"
        r1 = ref_seq[start0 : start0 + READ_LEN]
        r2 = ref_seq[mate0 : mate0 + READ_LEN]
        reads.append(_make_read(name, ref_id, start0, r1, flag=99, mate_start0=mate0, tlen=FRAGMENT_LEN))
        reads.append(_make_read(name, ref_id, mate0, r2, flag=147, mate_start0=start0, tlen=-FRAGMENT_LEN))
    return reads


def write_sample_bam(
    path: Path,
    sample: str,
    depth: int,
    contigs: List[Tuple[str, str, str]],
) -> Path:
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": len(seq)} for name, _, seq in contigs],
    }
    reads: List[pysam.AlignedSegment] = []
    for ref_id, (_, _, seq) in enumerate(contigs):
        reads.extend(_pairs_for_depth(sample, ref_id, seq, depth))

    # a few records the filter must drop
    first = contigs[0][2]
    dup = _make_read(f"{sample}_dup", 0, 10, first[10 : 10 + READ_LEN], flag=99 | 0x400, mate_start0=210, tlen=300)
    lowq = _make_read(f"{sample}_lowq", 0, 20, first[20 : 20 + READ_LEN], flag=99, mate_start0=220, tlen=300, mapq=5)
    single = _make_read(f"{sample}_se", 0, 30, first[30 : 30 + READ_LEN], flag=0, mate_start0=-1, tlen=0)
    single.next_reference_id = -1
    reads.extend([dup, lowq, single])

    reads.sort(key=lambda r: (r.reference_id, r.reference_start))
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(path))
    return path


def make_toy_data(
    *,
    outdir: str | Path,
    depths: Optional[Mapping[str, int]] = None,
    seed: int = 7,
) -> Dict[str, object]:
    """Create a tiny pangenome FASTA and one BAM per sample for demos/tests.

    The outputs include:
    - toy_pangenome.fa (+ .fai): two long core contigs, a long accessory contig and
      a short core contig
    - <sample>.bam (+ .bai) for every sample, with read pairs tiled to the requested depth
    - samples.tsv listing the BAMs

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    depths = dict(depths or TOY_DEPTHS)

    rng = random.Random(seed)
    contigs = [
        (name, comment, "".join(rng.choice("ACGT") for _ in range(length)))
        for name, length, comment in TOY_CONTIGS
    ]

    ref_fa = outdir_p / "toy_pangenome.fa"
    _write_fasta(ref_fa, contigs)
    pysam.faidx(str(ref_fa))

    bams: Dict[str, str] = {}
    for sample, depth in depths.items():
        bams[sample] = str(write_sample_bam(outdir_p / f"{sample}.bam", sample, depth, contigs))

    samples_tsv = outdir_p / "samples.tsv"
    samples_tsv.write_text(
        "".join(f"{sample}\t{Path(p).name}\n" for sample, p in bams.items()),
        encoding="utf-8",
    )

    summary = {
        "reference_fa": str(ref_fa),
        "samples_tsv": str(samples_tsv),
        "bams": bams,
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
