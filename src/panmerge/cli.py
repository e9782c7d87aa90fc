from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .config import PipelineConfig, load_config, merge_overrides
from .contigs import load_reference_set, read_contig_list, resolve_reference_kind
from .errors import PanmergeError
from .models import ReferenceSet
from .pipeline import (
    STATUS_MERGED,
    STATUS_SKIPPED,
    artifact_paths,
    evaluate_reference_set,
    run_reference_set,
    write_stats_tsv,
)
from .plotting import plot_coverage
from .report import render_report
from .toy_data import make_toy_data
from .utils import collect_samples, ensure_outdir, parse_sample_arg, read_samples_tsv
from .validation import missing_inputs


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, PanmergeError):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None and log_path.exists():
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _resolve_config(args: argparse.Namespace) -> PipelineConfig:
    base = load_config(args.config)
    return merge_overrides(
        base,
        {
            "min_contig_length": args.min_contig_length,
            "min_breadth": args.min_breadth,
            "min_median_coverage": args.min_median_coverage,
            "min_mapq": args.min_mapq,
            "seed": args.seed,
            "threads": args.threads,
            "core_tag": args.core_tag,
            "include_secondary": True if args.include_secondary else None,
            "include_supplementary": True if args.include_supplementary else None,
        },
    )


def _resolve_samples(args: argparse.Namespace) -> Dict[str, Path]:
    pairs = [parse_sample_arg(v) for v in (args.bam or [])]
    if args.samples:
        pairs.extend(read_samples_tsv(args.samples))
    if not pairs:
        raise ValueError("No alignments given. Use --bam SAMPLE=PATH (repeatable) and/or --samples TSV.")
    return collect_samples(pairs)


def _warn_missing(samples: Dict[str, Path], logger: logging.Logger) -> List[str]:
    # a missing file only excludes its sample; the pipeline records the warning
    missing = missing_inputs(samples)
    for sid in missing:
        logger.warning("Alignment for sample %s not found: %s", sid, samples[sid])
    return missing


def _reference_id(args: argparse.Namespace) -> str:
    return args.reference_id or Path(args.reference).name.split(".")[0]


def _load_reference(args: argparse.Namespace, config: PipelineConfig) -> ReferenceSet:
    reference_id = _reference_id(args)
    kind = resolve_reference_kind(args.kind, reference_id, core_tag=config.core_tag)
    core_contigs = read_contig_list(args.core_contigs) if args.core_contigs else None
    return load_reference_set(
        args.reference,
        reference_id=reference_id,
        kind=kind,
        core_tag=config.core_tag,
        core_contigs=core_contigs,
    )


def _add_common_inputs(p: argparse.ArgumentParser) -> None:
    p.add_argument("--reference", required=True, type=_path_exists, help="Pangenome / reference FASTA.")
    p.add_argument(
        "--reference-id",
        default=None,
        help="Identifier of the reference set (default: FASTA file name without extensions).",
    )
    p.add_argument(
        "--kind",
        choices=["core", "single", "auto"],
        default="auto",
        help=(
            "Reference kind. 'core' keeps only core-tagged contigs; 'single' (single genome or "
            "consensus) keeps all long contigs; 'auto' picks 'core' if the reference id carries the core tag."
        ),
    )
    p.add_argument(
        "--core-contigs",
        type=_path_exists,
        default=None,
        help="File listing core contig names (one per line). Default: contigs whose name/header carries the core tag.",
    )
    p.add_argument(
        "--bam",
        action="append",
        default=None,
        metavar="SAMPLE=PATH",
        help="Per-sample alignment against the reference (repeatable). A bare path uses the file stem as sample id.",
    )
    p.add_argument("--samples", type=_path_exists, default=None, help="TSV of sample_id<TAB>alignment path.")
    p.add_argument("--outdir", required=True, help="Output directory.")
    p.add_argument("--config", type=_path_exists, default=None, help="JSON file with config overrides.")

    # Thresholds (None = config file / built-in default)
    p.add_argument("--min-contig-length", type=int, default=None, help="Minimum contig length (default 1000).")
    p.add_argument("--min-breadth", type=float, default=None, help="Minimum breadth in percent (default 50).")
    p.add_argument(
        "--min-median-coverage",
        type=float,
        default=None,
        help="Minimum median depth over covered positions; also the downsampling target (default 20).",
    )
    p.add_argument("--min-mapq", type=int, default=None, help="Minimum mapping quality (default 20).")
    p.add_argument("--core-tag", default=None, help="Token marking core contigs/references (default 'core').")
    p.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    p.add_argument("--include-supplementary", action="store_true", help="Include supplementary alignments.")

    p.add_argument("--seed", type=int, default=None, help="Read selection seed, shared by all samples (default 42).")
    p.add_argument("--threads", type=int, default=None, help="Samples processed concurrently (default 1).")
    p.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="panmerge",
        description=(
            "panmerge: select samples by median depth and breadth over a pangenome's long contigs, "
            "downsample them to a common coverage and merge them into one BAM."
        ),
    )
    p.add_argument("--version", action="version", version=f"panmerge {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # run
    # -----------------
    r = sub.add_parser(
        "run",
        help="Evaluate, downsample and merge all samples aligned to one reference set.",
    )
    _add_common_inputs(r)
    r.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    r.add_argument("--resume", action="store_true", help="Skip if this reference set was already processed.")

    # -----------------
    # evaluate
    # -----------------
    e = sub.add_parser(
        "evaluate",
        help="Only compute per-sample median depth / breadth and the downsampling plan.",
    )
    _add_common_inputs(e)

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny pangenome FASTA and per-sample BAMs for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    return p


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Dry-run: would write toy data to {outdir}")
        return 0
    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _print_table(path: Path) -> None:
    with open(path, "rt", encoding="utf-8") as fh:
        rows = [line.rstrip("\n").split("\t") for line in fh]
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for r in rows:
        print("  ".join(cell.ljust(w) for cell, w in zip(r, widths)).rstrip())


def cmd_evaluate(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "evaluate.log")
    _setup_logging(args.verbose, logfile=log_path)

    logger = logging.getLogger("panmerge")
    logger.info("panmerge %s", __version__)

    try:
        config = _resolve_config(args)
        samples = _resolve_samples(args)
        _warn_missing(samples, logger)
        reference = _load_reference(args, config)

        _, evaluations, plans = evaluate_reference_set(
            reference, samples, config, progress=not args.no_progress
        )
        tsv = write_stats_tsv(ensure_outdir(outdir) / "coverage_stats.tsv", evaluations, plans)
        _print_table(tsv)
        for ev in evaluations:
            if ev.warning:
                sys.stderr.write(f"WARNING: sample {ev.sample_id} excluded: {ev.warning}\n")
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_run(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "run.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("panmerge")
    logger.info("panmerge %s", __version__)

    try:
        config = _resolve_config(args)
        samples = _resolve_samples(args)
        missing = _warn_missing(samples, logger)
        reference_id = _reference_id(args)
        kind = resolve_reference_kind(args.kind, reference_id, core_tag=config.core_tag)
        paths = artifact_paths(outdir, reference_id)

        if args.dry_run:
            print("Dry-run: inputs look OK." if not missing else "Dry-run: some alignments are missing.")
            print(f"Reference set: {reference_id} ({kind.value})")
            print(f"Samples: {len(samples)}")
            for sid, bam in samples.items():
                note = "\t(missing, will be excluded)" if sid in missing else ""
                print(f"  {sid}\t{bam}{note}")
            print("Config:")
            for k, v in config.to_dict().items():
                print(f"  {k} = {v}")
            print("Planned outputs (only if at least one sample qualifies):")
            print(f"  {paths['fasta']}")
            print(f"  {paths['bam']}")
            print(f"Always: {paths['summary']}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and paths["summary"].exists():
            with open(paths["summary"], "rt", encoding="utf-8") as fh:
                status = json.load(fh).get("status")
            if status == STATUS_SKIPPED or (status == STATUS_MERGED and paths["bam"].exists()):
                logger.info("Resume enabled: %s already processed (%s)", reference_id, status)
                print(f"{status}\t{reference_id}")
                return 0

        reference = _load_reference(args, config)
        result = run_reference_set(reference, samples, outdir, config, progress=not args.no_progress)

        with open(paths["summary"], "rt", encoding="utf-8") as fh:
            summary = json.load(fh)

        plots_dir = ensure_outdir(outdir / "plots")
        coverage_png = plots_dir / "coverage.png"
        plot_coverage(
            evaluations=result.evaluations,
            plans=result.plans,
            config=config,
            out_png=coverage_png,
            title=f"{reference_id}: median depth vs breadth",
        )
        report_path = render_report(
            outdir=outdir,
            version=__version__,
            result=result,
            config=config,
            reference_path=str(args.reference),
            reference_kind=reference.kind.value,
            contigs_total=int(summary["contigs_total"]),
            contigs_qualifying=int(summary["contigs_qualifying"]),
            qualifying_length=int(summary["qualifying_length"]),
            plot=str(Path("plots") / coverage_png.name),
        )
        logger.info("Report written: %s", report_path)

        for ev in result.evaluations:
            if ev.warning:
                sys.stderr.write(f"WARNING: sample {ev.sample_id} excluded: {ev.warning}\n")

        if result.merged is not None:
            print(f"{STATUS_MERGED}\t{reference_id}\t{result.merged.reference_fasta}\t{result.merged.merged_alignment}")
        else:
            print(f"{STATUS_SKIPPED}\t{reference_id}\tno sample qualifies")
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "evaluate":
        return cmd_evaluate(args)
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
