from __future__ import annotations

import logging
import tempfile
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tqdm import tqdm

from .config import PipelineConfig
from .contigs import select_contigs, write_qualifying_fasta
from .coverage import evaluate_coverage
from .depth import profile_bam
from .downsample import downsample_sample
from .errors import MalformedAlignmentError
from .merge import merge_alignments
from .models import (
    ContigLayout,
    DownsamplePlan,
    MergedResult,
    QualifyingContigs,
    ReferenceSet,
    ReferenceSetResult,
    SampleEvaluation,
)
from .planner import plan_downsampling
from .utils import atomic_replace, dataclass_to_jsonable, ensure_outdir, safe_id, write_json

logger = logging.getLogger(__name__)


STATUS_MERGED = "merged"
STATUS_SKIPPED = "skipped"


def artifact_paths(outdir: str | Path, reference_id: str) -> Dict[str, Path]:
    """Where the outputs of one reference set live."""
    outdir = Path(outdir)
    rid = safe_id(reference_id)
    fasta = outdir / f"{rid}.fa"
    bam = outdir / f"{rid}.merged.bam"
    return {
        "fasta": fasta,
        "fasta_fai": fasta.with_name(fasta.name + ".fai"),
        "bam": bam,
        "bam_bai": bam.with_name(bam.name + ".bai"),
        "summary": outdir / f"{rid}.summary.json",
    }


def evaluate_sample(
    *,
    sample_id: str,
    bam_path: str,
    layout: ContigLayout,
    qualifying: QualifyingContigs,
    config: PipelineConfig,
    progress: bool = False,
) -> SampleEvaluation:
    """Filter, profile and summarize one sample.

    Malformed or unreadable alignment data excludes the sample instead of failing the run.
    """
    try:
        profile = profile_bam(bam_path, layout, qualifying, config, sample_id=sample_id, progress=progress)
    except MalformedAlignmentError as e:
        logger.warning("Data-quality problem, excluding sample %s: %s", sample_id, e)
        return SampleEvaluation(sample_id=sample_id, bam_path=bam_path, stats=None, warning=str(e))
    except (OSError, ValueError) as e:
        msg = f"unreadable alignment {bam_path}: {e}"
        logger.warning("Data-quality problem, excluding sample %s: %s", sample_id, msg)
        return SampleEvaluation(sample_id=sample_id, bam_path=bam_path, stats=None, warning=msg)

    stats = evaluate_coverage(sample_id, profile, qualifying.total_length)
    return SampleEvaluation(sample_id=sample_id, bam_path=bam_path, stats=stats)


def _run_tasks(
    fn: Callable[..., Any],
    jobs: Sequence[Dict[str, Any]],
    *,
    threads: int,
    desc: str,
    progress: bool = False,
) -> List[Any]:
    """Run ``fn(**job)`` for every job; results come back in job order.

    With more than one worker the jobs run in a process pool. If anything fails or the
    run is interrupted, queued jobs are cancelled before the error propagates.
    """
    if threads <= 1 or len(jobs) <= 1:
        return [fn(**job) for job in tqdm(jobs, desc=desc, unit="sample", disable=not progress)]

    results: List[Any] = [None] * len(jobs)
    pool = ProcessPoolExecutor(max_workers=min(threads, len(jobs)))
    try:
        futures = {pool.submit(fn, **job): i for i, job in enumerate(jobs)}
        with tqdm(total=len(jobs), desc=desc, unit="sample", disable=not progress) as pbar:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                pbar.update(1)
    except BaseException:
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return results


def _remove_stale_artifacts(paths: Mapping[str, Path]) -> None:
    for key in ("bam", "bam_bai", "fasta", "fasta_fai"):
        p = paths[key]
        if p.exists():
            logger.warning("Removing output from a previous run: %s", p)
            p.unlink()


def write_summary(
    path: str | Path,
    *,
    reference: ReferenceSet,
    qualifying: QualifyingContigs,
    config: PipelineConfig,
    result: ReferenceSetResult,
    downsampled: Sequence[Dict[str, object]] = (),
    runtime_seconds: float = 0.0,
) -> None:
    plans = {p.sample_id: p for p in result.plans}
    samples = []
    for ev in result.evaluations:
        plan = plans.get(ev.sample_id)
        samples.append(
            {
                "sample_id": ev.sample_id,
                "bam_path": ev.bam_path,
                "stats": dataclass_to_jsonable(ev.stats) if ev.stats is not None else None,
                "plan": dataclass_to_jsonable(plan) if plan is not None else None,
                "warning": ev.warning,
            }
        )
    summary = {
        "reference_id": reference.reference_id,
        "reference_kind": reference.kind.value,
        "status": result.status,
        "config": config.to_dict(),
        "contigs_total": len(reference.contigs),
        "contigs_qualifying": len(qualifying),
        "qualifying_length": qualifying.total_length,
        "samples": samples,
        "samples_accepted": [p.sample_id for p in result.plans if p.accepted],
        "warnings": [ev.warning for ev in result.evaluations if ev.warning],
        "downsampled": list(downsampled),
        "merged": dataclass_to_jsonable(result.merged) if result.merged is not None else None,
        "runtime_seconds": float(runtime_seconds),
    }
    write_json(path, summary)


def evaluate_reference_set(
    reference: ReferenceSet,
    samples: Mapping[str, str | Path],
    config: PipelineConfig,
    *,
    progress: bool = False,
) -> Tuple[QualifyingContigs, List[SampleEvaluation], List[DownsamplePlan]]:
    """Select contigs, evaluate every sample (concurrently) and plan downsampling.

    Samples excluded for malformed data get no plan.
    """
    qualifying = select_contigs(reference, config.min_contig_length)
    layout = reference.layout()

    eval_jobs = [
        {
            "sample_id": sid,
            "bam_path": str(bam),
            "layout": layout,
            "qualifying": qualifying,
            "config": config,
        }
        for sid, bam in samples.items()
    ]
    evaluations: List[SampleEvaluation] = _run_tasks(
        evaluate_sample,
        eval_jobs,
        threads=config.threads,
        desc=f"{reference.reference_id}: coverage",
        progress=progress,
    )

    stats = [ev.stats for ev in evaluations if ev.stats is not None]
    plans = plan_downsampling(
        stats,
        min_breadth=config.min_breadth,
        min_median_coverage=config.min_median_coverage,
    )
    return qualifying, evaluations, plans


STATS_COLUMNS = (
    "sample_id",
    "reads_used",
    "covered_positions",
    "total_length",
    "median_depth",
    "breadth",
    "accepted",
    "fraction",
    "reason",
)


def write_stats_tsv(
    path: str | Path,
    evaluations: Sequence[SampleEvaluation],
    plans: Sequence[DownsamplePlan],
) -> Path:
    """Write one row per sample; excluded samples carry their warning as the reason."""
    by_id = {p.sample_id: p for p in plans}

    def _num(x: Optional[float]) -> str:
        return "NA" if x is None else f"{x:.6g}"

    path = Path(path)
    with open(path, "wt", encoding="utf-8") as fh:
        fh.write("\t".join(STATS_COLUMNS) + "\n")
        for ev in evaluations:
            plan = by_id.get(ev.sample_id)
            s = ev.stats
            row = [
                ev.sample_id,
                str(s.reads_used) if s else "NA",
                str(s.covered_positions) if s else "NA",
                str(s.total_length) if s else "NA",
                _num(s.median_depth) if s else "NA",
                _num(s.breadth) if s else "NA",
                str(int(bool(plan and plan.accepted))),
                _num(plan.fraction) if plan is not None else "NA",
                plan.reason if plan is not None else f"excluded: {ev.warning}",
            ]
            fh.write("\t".join(row) + "\n")
    return path


def run_reference_set(
    reference: ReferenceSet,
    samples: Mapping[str, str | Path],
    outdir: str | Path,
    config: Optional[PipelineConfig] = None,
    *,
    progress: bool = False,
) -> ReferenceSetResult:
    """Evaluate, select, downsample and merge all samples aligned to one reference set.

    When no sample is accepted the result has status 'skipped' and no FASTA/BAM is
    written; this is a normal outcome. Outputs are staged in a temporary directory
    and only moved into ``outdir`` once the merge has completed.
    """
    t0 = time.time()
    config = (config or PipelineConfig()).validate()
    outdir_p = ensure_outdir(outdir)
    paths = artifact_paths(outdir_p, reference.reference_id)
    rid = reference.reference_id

    # 1) per-sample evaluation, 2) planning barrier
    qualifying, evaluations, plans = evaluate_reference_set(reference, samples, config, progress=progress)
    accepted = [p for p in plans if p.accepted]

    if not accepted:
        logger.info("%s: no sample qualifies; skipping this reference set", rid)
        _remove_stale_artifacts(paths)
        result = ReferenceSetResult(
            reference_id=rid,
            status=STATUS_SKIPPED,
            evaluations=tuple(evaluations),
            plans=tuple(plans),
            merged=None,
        )
        write_summary(
            paths["summary"],
            reference=reference,
            qualifying=qualifying,
            config=config,
            result=result,
            runtime_seconds=time.time() - t0,
        )
        return result

    bam_by_sample = {ev.sample_id: ev.bam_path for ev in evaluations}
    layout = reference.layout()

    with tempfile.TemporaryDirectory(prefix=".panmerge-", dir=str(outdir_p)) as tmp:
        tmp_p = Path(tmp)

        # 3) downsampling (fan-out)
        ds_jobs = [
            {
                "sample_id": plan.sample_id,
                "bam_path": bam_by_sample[plan.sample_id],
                "out_bam": tmp_p / f"{i:04d}_{safe_id(plan.sample_id)}.bam",
                "layout": layout,
                "qualifying": qualifying,
                "plan": plan,
                "config": config,
            }
            for i, plan in enumerate(accepted)
        ]
        downsampled: List[Dict[str, object]] = _run_tasks(
            downsample_sample, ds_jobs, threads=config.threads, desc=f"{rid}: downsample", progress=progress
        )

        # 4) merge barrier
        tmp_bam = tmp_p / "merged.bam"
        n_records = merge_alignments(
            [str(d["out_bam"]) for d in downsampled],
            tmp_bam,
            qualifying,
            reference_id=rid,
        )
        tmp_fa = write_qualifying_fasta(reference, qualifying, tmp_p / "reference.fa")

        # BAM last: consumers look for it to decide whether the set was merged
        atomic_replace(tmp_fa, paths["fasta"])
        atomic_replace(tmp_fa.with_name(tmp_fa.name + ".fai"), paths["fasta_fai"])
        atomic_replace(tmp_bam.with_name(tmp_bam.name + ".bai"), paths["bam_bai"])
        atomic_replace(tmp_bam, paths["bam"])

    for d in downsampled:
        d.pop("out_bam", None)

    merged = MergedResult(
        reference_fasta=paths["fasta"],
        merged_alignment=paths["bam"],
        samples=tuple(p.sample_id for p in accepted),
        records=int(n_records or 0),
    )
    result = ReferenceSetResult(
        reference_id=rid,
        status=STATUS_MERGED,
        evaluations=tuple(evaluations),
        plans=tuple(plans),
        merged=merged,
    )
    write_summary(
        paths["summary"],
        reference=reference,
        qualifying=qualifying,
        config=config,
        result=result,
        downsampled=downsampled,
        runtime_seconds=time.time() - t0,
    )
    logger.info("%s: merged %d sample(s) into %s", rid, len(accepted), paths["bam"])
    return result
