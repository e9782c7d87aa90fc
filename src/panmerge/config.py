from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """Thresholds and run settings shared by every stage.

    Attributes
    ----------
    min_contig_length:
        Contigs shorter than this are never used.
    min_breadth:
        Minimum breadth (percent, 0-100) for a sample to be accepted.
    min_median_coverage:
        Minimum median depth over covered positions; also the downsampling target.
    min_mapq:
        Minimum mapping quality of a record to be counted/kept.
    seed:
        Seed for read selection. Shared by all samples so reruns are reproducible.
    threads:
        Maximum number of samples processed concurrently.
    core_tag:
        Token marking core contigs (and core references when kind is 'auto').
    """

    min_contig_length: int = 1000
    min_breadth: float = 50.0
    min_median_coverage: float = 20.0
    min_mapq: int = 20
    seed: int = 42
    threads: int = 1
    include_secondary: bool = False
    include_supplementary: bool = False
    core_tag: str = "core"

    def validate(self) -> "PipelineConfig":
        if self.min_contig_length < 0:
            raise ValueError("min_contig_length must be >= 0")
        if not 0.0 <= self.min_breadth <= 100.0:
            raise ValueError("min_breadth is a percentage and must be within [0, 100]")
        if self.min_median_coverage <= 0:
            raise ValueError("min_median_coverage must be > 0")
        if self.min_mapq < 0:
            raise ValueError("min_mapq must be >= 0")
        if self.threads < 1:
            raise ValueError("threads must be >= 1")
        if not self.core_tag:
            raise ValueError("core_tag must be a non-empty string")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _known_keys() -> set[str]:
    return {f.name for f in fields(PipelineConfig)}


def merge_overrides(base: PipelineConfig, overrides: Mapping[str, Any]) -> PipelineConfig:
    """Return ``base`` with non-None ``overrides`` applied."""
    unknown = set(overrides) - _known_keys()
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")
    changes = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **changes).validate()


def load_config(path: Optional[str | Path]) -> PipelineConfig:
    """Load a JSON config file of overrides on top of the defaults."""
    if path is None:
        return PipelineConfig()
    with open(path, "rt", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a JSON object: {path}")
    logger.info("Loaded config overrides from %s: %s", path, sorted(data))
    return merge_overrides(PipelineConfig(), data)
