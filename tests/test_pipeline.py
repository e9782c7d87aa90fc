import json
from pathlib import Path

import pysam
import pytest

from panmerge import pipeline
from panmerge.config import PipelineConfig, load_config, merge_overrides
from panmerge.contigs import load_reference_set
from panmerge.errors import MergeError
from panmerge.models import ContigLayout, ReferenceKind
from panmerge.pipeline import artifact_paths, evaluate_reference_set, run_reference_set, write_stats_tsv


def _reference(toy, kind=ReferenceKind.SINGLE_OR_CONSENSUS):
    return load_reference_set(toy["reference_fa"], reference_id="toy", kind=kind)


def test_load_reference_set_tags(toy):
    reference = _reference(toy)
    tagged = {c.name: c.is_core_tagged for c in reference.contigs}
    assert tagged == {"pan_core_1": True, "pan_core_2": True, "pan_acc_1": False, "pan_core_short": True}

    listed = load_reference_set(toy["reference_fa"], core_contigs=["pan_acc_1"])
    assert [c.name for c in listed.contigs if c.is_core_tagged] == ["pan_acc_1"]
    assert listed.reference_id == "toy_pangenome"


def test_evaluate_toy_samples(toy):
    _, evaluations, plans = evaluate_reference_set(_reference(toy), toy["bams"], PipelineConfig())
    stats = {ev.sample_id: ev.stats for ev in evaluations}
    assert stats["S1"].median_depth == 40.0
    assert stats["S2"].median_depth == 20.0
    assert stats["S3"].median_depth == 4.0
    assert all(s.breadth == 100.0 for s in stats.values())

    accepted = {p.sample_id: p for p in plans if p.accepted}
    assert set(accepted) == {"S1", "S2"}
    assert accepted["S1"].fraction == pytest.approx(0.60)
    assert accepted["S2"].fraction == pytest.approx(1.10)


def test_evaluate_in_process_pool_matches_inline(toy):
    _, inline, _ = evaluate_reference_set(_reference(toy), toy["bams"], PipelineConfig(threads=1))
    _, pooled, _ = evaluate_reference_set(_reference(toy), toy["bams"], PipelineConfig(threads=3))
    assert [ev.stats for ev in pooled] == [ev.stats for ev in inline]


def test_run_merges_accepted_samples(toy, tmp_path: Path):
    outdir = tmp_path / "out"
    result = run_reference_set(_reference(toy), toy["bams"], outdir, PipelineConfig())
    assert result.status == "merged"
    assert result.merged is not None
    assert result.merged.samples == ("S1", "S2")

    paths = artifact_paths(outdir, "toy")
    for key in ("fasta", "fasta_fai", "bam", "bam_bai", "summary"):
        assert paths[key].exists(), key

    with pysam.FastxFile(str(paths["fasta"])) as fh:
        assert [e.name for e in fh] == ["pan_core_1", "pan_core_2", "pan_acc_1"]

    with pysam.AlignmentFile(str(paths["bam"]), "rb") as bam:
        assert list(bam.header.references) == ["pan_core_1", "pan_core_2", "pan_acc_1"]
        groups = {r.get_tag("RG") for r in bam.fetch(until_eof=True)}
    assert groups == {"S1", "S2"}

    summary = json.loads(paths["summary"].read_text())
    assert summary["status"] == "merged"
    assert summary["samples_accepted"] == ["S1", "S2"]
    assert summary["merged"]["records"] == result.merged.records

    # no leftovers from staging
    assert not [p for p in outdir.iterdir() if p.name.startswith(".panmerge-")]


def test_run_core_reference_drops_accessory_contigs(toy, tmp_path: Path):
    outdir = tmp_path / "out"
    result = run_reference_set(_reference(toy, ReferenceKind.CORE), toy["bams"], outdir, PipelineConfig())
    assert result.status == "merged"
    with pysam.AlignmentFile(str(result.merged.merged_alignment), "rb") as bam:
        assert list(bam.header.references) == ["pan_core_1", "pan_core_2"]


def test_run_without_qualifying_samples_is_skipped(toy, tmp_path: Path):
    outdir = tmp_path / "out"
    config = PipelineConfig(min_median_coverage=1000)
    result = run_reference_set(_reference(toy), toy["bams"], outdir, config)
    assert result.status == "skipped"
    assert result.merged is None
    assert not any(p.accepted for p in result.plans)

    paths = artifact_paths(outdir, "toy")
    assert not paths["fasta"].exists()
    assert not paths["bam"].exists()
    assert json.loads(paths["summary"].read_text())["status"] == "skipped"


def test_run_without_qualifying_contigs_is_skipped(toy, tmp_path: Path):
    config = PipelineConfig(min_contig_length=100_000)
    result = run_reference_set(_reference(toy), toy["bams"], tmp_path / "out", config)
    assert result.status == "skipped"
    assert all(ev.stats.breadth is None for ev in result.evaluations)


def test_malformed_sample_is_excluded(toy, tmp_path: Path):
    bad = tmp_path / "bad.bam"
    header = {"HD": {"VN": "1.6"}, "SQ": [{"SN": "pan_core_1", "LN": 9999}]}
    with pysam.AlignmentFile(str(bad), "wb", header=header):
        pass

    samples = dict(toy["bams"])
    samples["BAD"] = str(bad)
    outdir = tmp_path / "out"
    result = run_reference_set(_reference(toy), samples, outdir, PipelineConfig())

    assert result.status == "merged"
    bad_eval = [ev for ev in result.evaluations if ev.sample_id == "BAD"][0]
    assert bad_eval.stats is None
    assert "pan_core_1" in bad_eval.warning
    assert "BAD" not in {p.sample_id for p in result.plans}

    summary = json.loads(artifact_paths(outdir, "toy")["summary"].read_text())
    assert len(summary["warnings"]) == 1


def test_write_stats_tsv(toy, tmp_path: Path):
    _, evaluations, plans = evaluate_reference_set(_reference(toy), toy["bams"], PipelineConfig())
    path = write_stats_tsv(tmp_path / "stats.tsv", evaluations, plans)
    lines = path.read_text().splitlines()
    assert lines[0].split("\t")[0] == "sample_id"
    rows = {line.split("\t")[0]: line.split("\t") for line in lines[1:]}
    assert rows["S1"][6] == "1"
    assert rows["S3"][6] == "0"


def test_config_overrides(tmp_path: Path):
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps({"min_breadth": 80, "seed": 1}))
    cfg = load_config(cfg_path)
    assert cfg.min_breadth == 80
    assert cfg.min_contig_length == 1000

    cfg = merge_overrides(cfg, {"seed": None, "threads": 4})
    assert cfg.seed == 1
    assert cfg.threads == 4

    with pytest.raises(ValueError):
        merge_overrides(cfg, {"not_a_key": 1})
    with pytest.raises(ValueError):
        merge_overrides(cfg, {"min_breadth": 120})


def test_failed_merge_leaves_no_artifacts(toy, tmp_path: Path, monkeypatch):
    def _fail(*args, **kwargs):
        raise MergeError("contigs differ", reference_id="toy")

    monkeypatch.setattr(pipeline, "merge_alignments", _fail)
    outdir = tmp_path / "out"
    with pytest.raises(MergeError, match=r"\[toy\]"):
        run_reference_set(_reference(toy), toy["bams"], outdir, PipelineConfig())

    paths = artifact_paths(outdir, "toy")
    for key in ("fasta", "fasta_fai", "bam", "bam_bai"):
        assert not paths[key].exists(), key
    assert not [p for p in outdir.iterdir() if p.name.startswith(".panmerge-")]


def test_skipped_rerun_removes_previous_merge(toy, tmp_path: Path):
    outdir = tmp_path / "out"
    paths = artifact_paths(outdir, "toy")
    first = run_reference_set(_reference(toy), toy["bams"], outdir, PipelineConfig())
    assert first.status == "merged"
    assert paths["bam"].exists() and paths["fasta"].exists()

    second = run_reference_set(_reference(toy), toy["bams"], outdir, PipelineConfig(min_median_coverage=1000))
    assert second.status == "skipped"
    for key in ("fasta", "fasta_fai", "bam", "bam_bai"):
        assert not paths[key].exists(), key
    assert json.loads(paths["summary"].read_text())["status"] == "skipped"


def test_reference_layout_has_no_sequences(toy):
    reference = _reference(toy)
    layout = reference.layout()
    assert isinstance(layout, ContigLayout)
    assert layout.reference_id == "toy"
    assert layout.lengths() == reference.lengths()
    assert not hasattr(layout, "contigs")
