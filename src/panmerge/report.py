from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Template

from .config import PipelineConfig
from .models import ReferenceSetResult

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>panmerge report: {{ reference_id }}</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .ok { color: #1a7f37; }
    .no { color: #b42318; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>panmerge report: {{ reference_id }}</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Outcome</h2>
{% if status == "merged" %}
<p class="ok">{{ n_accepted }} of {{ n_samples }} sample(s) accepted and merged.</p>
<ul>
  <li><code>{{ fasta }}</code> (qualifying contigs)</li>
  <li><code>{{ bam }}</code> ({{ records }} records)</li>
</ul>
{% else %}
<p class="no">No sample met the thresholds. No FASTA or merged BAM was written for this reference set.</p>
{% endif %}

<div class="grid">
  <div class="card">
    <h3>Reference</h3>
    <table>
      <tr><th>Reference</th><td><code>{{ reference_path }}</code></td></tr>
      <tr><th>Kind</th><td>{{ reference_kind }}</td></tr>
      <tr><th>Qualifying contigs</th><td>{{ contigs_qualifying }} / {{ contigs_total }}</td></tr>
      <tr><th>Qualifying length</th><td>{{ qualifying_length }} bp</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Thresholds</h3>
    <table>
      <tr><th>Min contig length</th><td>{{ config.min_contig_length }}</td></tr>
      <tr><th>Min breadth (%)</th><td>{{ config.min_breadth }}</td></tr>
      <tr><th>Min median coverage (target)</th><td>{{ config.min_median_coverage }}</td></tr>
      <tr><th>Min MAPQ</th><td>{{ config.min_mapq }}</td></tr>
      <tr><th>Seed</th><td>{{ config.seed }}</td></tr>
    </table>
  </div>
</div>

<h2>Samples</h2>
<table>
  <tr><th>Sample</th><th>Reads used</th><th>Median depth</th><th>Breadth (%)</th><th>Decision</th><th>Fraction</th></tr>
  {% for row in rows %}
  <tr>
    <td><code>{{ row.sample_id }}</code></td>
    <td>{{ row.reads_used }}</td>
    <td>{{ row.median }}</td>
    <td>{{ row.breadth }}</td>
    <td class="{{ 'ok' if row.accepted else 'no' }}">{{ row.reason }}</td>
    <td>{{ row.fraction }}</td>
  </tr>
  {% endfor %}
</table>

{% if plot %}
<h2>Coverage</h2>
<img src="{{ plot }}" alt="median depth vs breadth">
{% endif %}

<hr>
<p class="small">panmerge {{ version }}</p>
</body>
</html>"""
)


def _fmt(value: Optional[float], spec: str = ".2f") -> str:
    return "NA" if value is None else format(value, spec)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    result: ReferenceSetResult,
    config: PipelineConfig,
    reference_path: str,
    reference_kind: str,
    contigs_total: int,
    contigs_qualifying: int,
    qualifying_length: int,
    plot: Optional[str] = None,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    plans = {p.sample_id: p for p in result.plans}
    rows = []
    for ev in result.evaluations:
        plan = plans.get(ev.sample_id)
        row: Dict[str, object] = {"sample_id": ev.sample_id, "accepted": bool(plan and plan.accepted)}
        if ev.stats is None:
            row.update(reads_used="NA", median="NA", breadth="NA", reason=f"excluded: {ev.warning}", fraction="")
        else:
            row.update(
                reads_used=ev.stats.reads_used,
                median=_fmt(ev.stats.median_depth),
                breadth=_fmt(ev.stats.breadth),
                reason=plan.reason if plan is not None else "",
                fraction=_fmt(plan.fraction, ".4f") if plan is not None and plan.accepted else "",
            )
        rows.append(row)

    merged = result.merged
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        reference_id=result.reference_id,
        reference_path=reference_path,
        reference_kind=reference_kind,
        status=result.status,
        n_accepted=sum(p.accepted for p in result.plans),
        n_samples=len(result.evaluations),
        fasta=str(merged.reference_fasta) if merged else None,
        bam=str(merged.merged_alignment) if merged else None,
        records=merged.records if merged else 0,
        contigs_total=contigs_total,
        contigs_qualifying=contigs_qualifying,
        qualifying_length=qualifying_length,
        config=config,
        rows=rows,
        plot=plot,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
