"""panmerge: coverage and breadth gated downsampling and merging of per-sample BAMs.

Public API is intentionally small; most users should use the CLI:

    panmerge run --reference pangenome.fa --bam S1=s1.bam --bam S2=s2.bam --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
