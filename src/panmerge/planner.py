from __future__ import annotations

import logging
from typing import List, Sequence

from .models import DownsamplePlan, SampleCoverageStats

logger = logging.getLogger(__name__)


# Added to every downsampling fraction so the realized median depth does not fall
# below the target. Empirical value.
FRACTION_MARGIN = 0.10


def compute_fraction(median_depth: float, target_coverage: float) -> float:
    """Fraction of reads to keep so that ``median_depth`` lands near ``target_coverage``.

    Not capped at 1.0; see :attr:`DownsamplePlan.keep_fraction`.
    """
    if median_depth <= 0:
        raise ValueError("median_depth must be > 0")
    return target_coverage / median_depth + FRACTION_MARGIN


def plan_sample(stats: SampleCoverageStats, *, min_breadth: float, min_median_coverage: float) -> DownsamplePlan:
    sid = stats.sample_id
    if stats.median_depth is None:
        return DownsamplePlan(sample_id=sid, accepted=False, reason="median depth undefined")
    if stats.breadth is None:
        return DownsamplePlan(sample_id=sid, accepted=False, reason="breadth undefined")

    failures = []
    if stats.breadth < min_breadth:
        failures.append(f"breadth {stats.breadth:.2f} < {min_breadth:.2f}")
    if stats.median_depth < min_median_coverage:
        failures.append(f"median depth {stats.median_depth:.2f} < {min_median_coverage:.2f}")
    if failures:
        return DownsamplePlan(sample_id=sid, accepted=False, reason="; ".join(failures))

    fraction = compute_fraction(stats.median_depth, min_median_coverage)
    return DownsamplePlan(sample_id=sid, accepted=True, fraction=fraction, reason="accepted")


def plan_downsampling(
    stats: Sequence[SampleCoverageStats],
    *,
    min_breadth: float,
    min_median_coverage: float,
) -> List[DownsamplePlan]:
    """One plan per sample, in input order. Both thresholds are inclusive."""
    plans = [
        plan_sample(s, min_breadth=min_breadth, min_median_coverage=min_median_coverage) for s in stats
    ]
    for plan in plans:
        if plan.accepted:
            logger.info("%s: accepted, fraction %.4f", plan.sample_id, plan.fraction)
        else:
            logger.info("%s: rejected (%s)", plan.sample_id, plan.reason)
    logger.info("%d/%d samples accepted", sum(p.accepted for p in plans), len(plans))
    return plans
