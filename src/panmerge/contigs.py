from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional

import pysam

from .errors import NoQualifyingContigsError
from .models import Contig, QualifyingContigs, ReferenceKind, ReferenceSet

logger = logging.getLogger(__name__)


_TOKEN_SPLIT = re.compile(r"[\s_.|:;=,-]+")


def has_tag(text: str, tag: str) -> bool:
    """True if ``tag`` appears as a delimited token of ``text`` (case-insensitive)."""
    if not text or not tag:
        return False
    tag = tag.lower()
    return any(tok == tag for tok in _TOKEN_SPLIT.split(text.lower()))


def resolve_reference_kind(requested: str, reference_id: str, *, core_tag: str = "core") -> ReferenceKind:
    """Map a requested kind ('core', 'single' or 'auto') to a ReferenceKind.

    'auto' yields CORE only if the reference id carries the core tag; an
    undetermined reference is treated as single genome / consensus.
    """
    if requested == "core":
        return ReferenceKind.CORE
    if requested == "single":
        return ReferenceKind.SINGLE_OR_CONSENSUS
    if requested != "auto":
        raise ValueError(f"Unknown reference kind: {requested}")
    if has_tag(reference_id, core_tag):
        logger.info("Reference %s looks like a core pangenome (tag '%s').", reference_id, core_tag)
        return ReferenceKind.CORE
    return ReferenceKind.SINGLE_OR_CONSENSUS


def read_contig_list(path: str | Path) -> List[str]:
    names: List[str] = []
    with open(path, "rt", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                names.append(line.split()[0])
    return names


def load_reference_set(
    fasta_path: str | Path,
    *,
    reference_id: Optional[str] = None,
    kind: ReferenceKind = ReferenceKind.SINGLE_OR_CONSENSUS,
    core_tag: str = "core",
    core_contigs: Optional[Iterable[str]] = None,
) -> ReferenceSet:
    """Read a (multi-)FASTA into a ReferenceSet.

    A contig is core-tagged if it is listed in ``core_contigs``; without such a list,
    if ``core_tag`` is a token of its name or header comment.
    """
    fasta_path = Path(fasta_path)
    if reference_id is None:
        reference_id = fasta_path.name.split(".")[0]

    core_names = set(core_contigs) if core_contigs is not None else None

    contigs: List[Contig] = []
    with pysam.FastxFile(str(fasta_path)) as fh:
        for entry in fh:
            seq = entry.sequence or ""
            if core_names is not None:
                tagged = entry.name in core_names
            else:
                tagged = has_tag(entry.name, core_tag) or has_tag(entry.comment or "", core_tag)
            contigs.append(Contig(name=entry.name, length=len(seq), sequence=seq, is_core_tagged=tagged))

    if core_names is not None:
        missing = core_names - {c.name for c in contigs}
        if missing:
            logger.warning(
                "%d core contig name(s) not present in %s (e.g. %s)",
                len(missing),
                fasta_path,
                sorted(missing)[0],
            )

    logger.info(
        "Loaded reference %s (%s): %d contigs, %d core-tagged",
        reference_id,
        kind.value,
        len(contigs),
        sum(c.is_core_tagged for c in contigs),
    )
    return ReferenceSet(reference_id=reference_id, kind=kind, contigs=tuple(contigs))


def select_contigs(reference: ReferenceSet, min_contig_length: int = 1000) -> QualifyingContigs:
    """Select the long (and, for core references, core-tagged) contigs."""
    names: List[str] = []
    lengths: List[int] = []
    for contig in reference.contigs:
        if contig.length < min_contig_length:
            continue
        if reference.kind == ReferenceKind.CORE and not contig.is_core_tagged:
            continue
        names.append(contig.name)
        lengths.append(contig.length)

    qualifying = QualifyingContigs(names=tuple(names), lengths=tuple(lengths))
    if qualifying.total_length == 0:
        err = NoQualifyingContigsError(
            f"No contig of {reference.reference_id} qualifies "
            f"(min length {min_contig_length}, kind {reference.kind.value})"
        )
        logger.warning("%s; breadth is undefined and every sample will be rejected.", err)
    else:
        logger.info(
            "%s: %d/%d contigs qualify (%d bp)",
            reference.reference_id,
            len(qualifying),
            len(reference.contigs),
            qualifying.total_length,
        )
    return qualifying


def _write_fasta_record(fh, name: str, seq: str, width: int = 60) -> None:
    fh.write(f">{name}\n")
    for i in range(0, len(seq), width):
        fh.write(seq[i : i + width] + "\n")


def write_qualifying_fasta(reference: ReferenceSet, qualifying: QualifyingContigs, path: str | Path) -> Path:
    """Write the qualifying contigs (in reference order) and create the .fai index."""
    path = Path(path)
    with open(path, "wt", encoding="utf-8") as fh:
        for name in qualifying.names:
            _write_fasta_record(fh, name, reference.contig(name).sequence)
    pysam.faidx(str(path))
    return path
