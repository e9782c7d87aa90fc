from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple


class ReferenceKind(str, enum.Enum):
    """Whether a reference set is a core pangenome or a single genome / consensus."""

    CORE = "core"
    SINGLE_OR_CONSENSUS = "single"


@dataclass(frozen=True)
class Contig:
    name: str
    length: int
    sequence: str
    is_core_tagged: bool = False

    def __post_init__(self) -> None:
        if self.length != len(self.sequence):
            raise ValueError(
                f"Contig {self.name}: length {self.length} does not match sequence length {len(self.sequence)}"
            )


@dataclass(frozen=True)
class ReferenceSet:
    """A pangenome (or single reference genome) and its contigs, in FASTA order."""

    reference_id: str
    kind: ReferenceKind
    contigs: Tuple[Contig, ...]

    def __post_init__(self) -> None:
        names = [c.name for c in self.contigs]
        if len(names) != len(set(names)):
            raise ValueError(f"Reference set {self.reference_id} has duplicate contig names")

    def lengths(self) -> Dict[str, int]:
        return {c.name: c.length for c in self.contigs}

    def contig(self, name: str) -> Contig:
        for c in self.contigs:
            if c.name == name:
                return c
        raise KeyError(name)

    def layout(self) -> "ContigLayout":
        return ContigLayout(
            reference_id=self.reference_id,
            names=tuple(c.name for c in self.contigs),
            sizes=tuple(c.length for c in self.contigs),
        )


@dataclass(frozen=True)
class ContigLayout:
    """Contig names and lengths of a reference set, without sequences.

    This is what per-sample workers receive.
    """

    reference_id: str
    names: Tuple[str, ...]
    sizes: Tuple[int, ...]

    def lengths(self) -> Dict[str, int]:
        return dict(zip(self.names, self.sizes))


@dataclass(frozen=True)
class QualifyingContigs:
    """Ordered set of contigs that passed selection."""

    names: Tuple[str, ...]
    lengths: Tuple[int, ...]
    _index: Dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if len(self.names) != len(self.lengths):
            raise ValueError("names and lengths must have the same size")
        object.__setattr__(self, "_index", {n: i for i, n in enumerate(self.names)})

    @property
    def total_length(self) -> int:
        return int(sum(self.lengths))

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self.names)

    def length_of(self, name: str) -> int:
        return self.lengths[self._index[name]]

    def index_of(self, name: str) -> int:
        return self._index[name]


@dataclass(frozen=True)
class AlignmentRecord:
    """Read-only view of one alignment record.

    Coordinates are 0-based half-open. ``blocks`` are the aligned reference blocks
    (deletions and reference skips excluded).
    """

    qname: str
    contig: str
    start0: int
    end0: int
    is_paired: bool
    is_duplicate: bool
    mapping_quality: int
    blocks: Tuple[Tuple[int, int], ...] = ()

    @property
    def position_range(self) -> Tuple[int, int]:
        return self.start0, self.end0


@dataclass(frozen=True)
class SampleCoverageStats:
    """Per-sample coverage summary.

    Attributes
    ----------
    median_depth:
        Median read depth over positions with depth > 0. ``None`` when no position
        is covered.
    breadth:
        Percentage (0-100) of qualifying reference positions with depth > 0. ``None``
        when the qualifying reference length is zero.
    """

    sample_id: str
    median_depth: Optional[float]
    breadth: Optional[float]
    covered_positions: int = 0
    total_length: int = 0
    reads_used: int = 0


@dataclass(frozen=True)
class DownsamplePlan:
    sample_id: str
    accepted: bool
    fraction: Optional[float] = None  # uncapped; only set when accepted
    reason: str = ""

    @property
    def keep_fraction(self) -> float:
        """Proportion of records to retain (``fraction`` clamped to 1.0)."""
        if not self.accepted or self.fraction is None:
            raise ValueError(f"Sample {self.sample_id} is not accepted; no keep fraction")
        return min(self.fraction, 1.0)


@dataclass(frozen=True)
class SampleEvaluation:
    """Outcome of filtering + profiling + evaluating one sample.

    ``stats`` is ``None`` when the sample's alignment data was malformed; ``warning``
    then explains why.
    """

    sample_id: str
    bam_path: str
    stats: Optional[SampleCoverageStats]
    warning: Optional[str] = None


@dataclass(frozen=True)
class MergedResult:
    reference_fasta: Path
    merged_alignment: Path
    samples: Tuple[str, ...]
    records: int


@dataclass(frozen=True)
class ReferenceSetResult:
    reference_id: str
    status: str  # 'merged' or 'skipped'
    evaluations: Tuple[SampleEvaluation, ...]
    plans: Tuple[DownsamplePlan, ...]
    merged: Optional[MergedResult] = None
