from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import matplotlib.pyplot as plt

from .config import PipelineConfig
from .models import DownsamplePlan, SampleEvaluation

logger = logging.getLogger(__name__)


def plot_coverage(
    *,
    evaluations: Sequence[SampleEvaluation],
    plans: Sequence[DownsamplePlan],
    config: PipelineConfig,
    out_png: str | Path,
    title: str = "Median depth vs breadth",
) -> None:
    """Scatter of per-sample median depth against breadth, with the acceptance thresholds.

    Samples with an undefined statistic are drawn at zero.
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    accepted = {p.sample_id for p in plans if p.accepted}

    xs_ok, ys_ok, xs_no, ys_no = [], [], [], []
    labels = []
    for ev in evaluations:
        if ev.stats is None:
            continue
        x = ev.stats.breadth if ev.stats.breadth is not None else 0.0
        y = ev.stats.median_depth if ev.stats.median_depth is not None else 0.0
        if ev.sample_id in accepted:
            xs_ok.append(x)
            ys_ok.append(y)
        else:
            xs_no.append(x)
            ys_no.append(y)
        labels.append((x, y, ev.sample_id))

    plt.figure()
    plt.scatter(xs_ok, ys_ok, label="accepted", marker="o")
    plt.scatter(xs_no, ys_no, label="rejected", marker="x")
    plt.axvline(config.min_breadth, linestyle="--", linewidth=1)
    plt.axhline(config.min_median_coverage, linestyle="--", linewidth=1)
    if len(labels) <= 30:
        for x, y, name in labels:
            plt.annotate(name, (x, y), fontsize=7, xytext=(3, 3), textcoords="offset points")
    plt.xlim(0, 100)
    plt.xlabel("Breadth (% of qualifying positions covered)")
    plt.ylabel("Median depth (covered positions)")
    plt.title(title)
    plt.legend(loc="best")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
