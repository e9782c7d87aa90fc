import numpy as np
import pysam
import pytest

from panmerge.contigs import has_tag, resolve_reference_kind, select_contigs
from panmerge.coverage import breadth_percent, evaluate_coverage, median_covered_depth, median_from_histogram
from panmerge.depth import DepthProfile, profile_depth
from panmerge.errors import MalformedAlignmentError, NoQualifyingContigsError, UndefinedMedianError
from panmerge.filtering import filter_records, passes_filter, record_from_segment
from panmerge.models import (
    AlignmentRecord,
    Contig,
    QualifyingContigs,
    ReferenceKind,
    ReferenceSet,
    SampleCoverageStats,
)
from panmerge.planner import FRACTION_MARGIN, compute_fraction, plan_downsampling


def make_contig(name: str, length: int, core: bool = False) -> Contig:
    return Contig(name=name, length=length, sequence="A" * length, is_core_tagged=core)


def make_reference(kind: ReferenceKind) -> ReferenceSet:
    return ReferenceSet(
        reference_id="pan1",
        kind=kind,
        contigs=(
            make_contig("long_core", 1500, core=True),
            make_contig("long_acc", 2000, core=False),
            make_contig("short_core", 999, core=True),
            make_contig("short_acc", 10, core=False),
            make_contig("exact_core", 1000, core=True),
        ),
    )


def make_record(contig: str = "c1", start0: int = 0, end0: int = 10, **kw) -> AlignmentRecord:
    fields = dict(
        qname="r1",
        contig=contig,
        start0=start0,
        end0=end0,
        is_paired=True,
        is_duplicate=False,
        mapping_quality=60,
        blocks=((start0, end0),),
    )
    fields.update(kw)
    return AlignmentRecord(**fields)


def make_read(header: pysam.AlignmentHeader, contig: str, start: int, length: int = 50) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(header)
    a.query_name = "r1"
    a.query_sequence = "A" * length
    a.flag = 99
    a.reference_name = contig
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = [(0, length)]
    a.query_qualities = pysam.qualitystring_to_array("I" * length)
    return a


def test_contig_length_must_match_sequence():
    with pytest.raises(ValueError):
        Contig(name="x", length=5, sequence="ACG")


def test_select_contigs_single_uses_length_only():
    q = select_contigs(make_reference(ReferenceKind.SINGLE_OR_CONSENSUS), 1000)
    assert q.names == ("long_core", "long_acc", "exact_core")
    assert q.total_length == 1500 + 2000 + 1000


def test_select_contigs_core_requires_tag():
    q = select_contigs(make_reference(ReferenceKind.CORE), 1000)
    assert q.names == ("long_core", "exact_core")
    assert "long_acc" not in q
    assert q.total_length == 2500


def test_select_contigs_none_qualify_is_not_fatal():
    q = select_contigs(make_reference(ReferenceKind.CORE), 10_000)
    assert len(q) == 0
    assert q.total_length == 0


def test_resolve_reference_kind():
    assert resolve_reference_kind("core", "anything") == ReferenceKind.CORE
    assert resolve_reference_kind("single", "pan_core") == ReferenceKind.SINGLE_OR_CONSENSUS
    assert resolve_reference_kind("auto", "cluster12_core_pangenome") == ReferenceKind.CORE
    assert resolve_reference_kind("auto", "cluster12_consensus") == ReferenceKind.SINGLE_OR_CONSENSUS
    # 'score' contains 'core' but not as a token
    assert resolve_reference_kind("auto", "highscore") == ReferenceKind.SINGLE_OR_CONSENSUS
    assert has_tag("gene_7 CORE", "core")


def test_filter_rules():
    q = QualifyingContigs(names=("c1",), lengths=(100,))
    assert passes_filter(make_record(), q)
    assert passes_filter(make_record(mapping_quality=20), q)
    assert not passes_filter(make_record(mapping_quality=19), q)
    assert not passes_filter(make_record(is_paired=False), q)
    assert not passes_filter(make_record(is_duplicate=True), q)
    assert not passes_filter(make_record(contig="c2"), q)

    kept = list(filter_records([make_record(), make_record(contig="c2"), make_record(mapping_quality=5)], q))
    assert len(kept) == 1


def test_record_from_segment_blocks():
    header = pysam.AlignmentHeader.from_dict({"SQ": [{"SN": "c1", "LN": 1000}]})
    read = make_read(header, "c1", 100, length=50)
    read.cigartuples = [(0, 20), (2, 5), (0, 30)]  # 20M5D30M
    rec = record_from_segment(read, {"c1": 1000})
    assert rec.position_range == (100, 155)
    assert rec.blocks == ((100, 120), (125, 155))
    assert rec.is_paired


def test_record_from_segment_out_of_range_is_malformed():
    header = pysam.AlignmentHeader.from_dict({"SQ": [{"SN": "c1", "LN": 5000}]})
    read = make_read(header, "c1", 980, length=50)
    with pytest.raises(MalformedAlignmentError):
        record_from_segment(read, {"c1": 1000})


def test_record_from_segment_unknown_contig_is_malformed():
    header = pysam.AlignmentHeader.from_dict({"SQ": [{"SN": "c9", "LN": 5000}]})
    read = make_read(header, "c9", 10)
    with pytest.raises(MalformedAlignmentError):
        record_from_segment(read, {"c1": 1000})


def test_profile_depth_counts_blocks_and_keeps_zeros():
    q = QualifyingContigs(names=("c1", "c2"), lengths=(10, 5))
    records = [
        make_record("c1", 0, 4),
        make_record("c1", 2, 6),
        make_record("c1", 0, 10, blocks=((0, 3), (7, 10))),
        make_record("other", 0, 4),
    ]
    profile = profile_depth(records, q)
    assert profile.depths["c1"].tolist() == [2, 2, 3, 2, 1, 1, 0, 1, 1, 1]
    assert profile.depths["c2"].tolist() == [0, 0, 0, 0, 0]
    assert profile.total_length == 15
    assert profile.covered_positions() == 9
    assert profile.reads_used == 3


@pytest.mark.parametrize(
    "depths, expected",
    [
        ([0, 2, 4, 0, 6], 4.0),
        ([2, 4, 6, 8, 0, 0, 0], 5.0),
        ([7], 7.0),
        ([0, 1, 1, 100], 1.0),
        ([3, 0, 5], 4.0),
    ],
)
def test_median_excludes_zero_depth(depths, expected):
    profile = DepthProfile(depths={"c": np.array(depths, dtype=np.int64)})
    assert median_covered_depth(profile) == expected


def test_median_matches_numpy_on_random_profiles():
    rng = np.random.default_rng(3)
    for _ in range(20):
        a = rng.integers(0, 30, size=int(rng.integers(1, 200)))
        b = rng.integers(0, 5, size=int(rng.integers(1, 50)))
        if not (a > 0).any() and not (b > 0).any():
            continue
        profile = DepthProfile(depths={"a": a, "b": b})
        values = profile.values()
        assert median_covered_depth(profile) == pytest.approx(float(np.median(values[values > 0])))


def test_median_undefined_without_coverage():
    with pytest.raises(UndefinedMedianError):
        median_from_histogram(np.array([12]))
    with pytest.raises(UndefinedMedianError):
        median_covered_depth(DepthProfile(depths={}))


def test_breadth_percent():
    assert breadth_percent(50, 200) == 25.0
    with pytest.raises(NoQualifyingContigsError):
        breadth_percent(0, 0)
    values = [breadth_percent(k, 1000) for k in range(0, 1001, 50)]
    assert values == sorted(values)


def test_evaluate_coverage_undefined_fields():
    profile = DepthProfile(depths={"c": np.zeros(10, dtype=np.int64)})
    stats = evaluate_coverage("s1", profile, 10)
    assert stats.median_depth is None
    assert stats.breadth == 0.0

    stats = evaluate_coverage("s2", DepthProfile(depths={}), 0)
    assert stats.median_depth is None
    assert stats.breadth is None


def test_compute_fraction():
    assert compute_fraction(40, 20) == pytest.approx(0.60)
    assert FRACTION_MARGIN == pytest.approx(0.10)
    with pytest.raises(ValueError):
        compute_fraction(0, 20)


def test_plan_boundaries_are_inclusive():
    stats = [
        SampleCoverageStats("edge", median_depth=20.0, breadth=50.0),
        SampleCoverageStats("deep", median_depth=40.0, breadth=90.0),
        SampleCoverageStats("narrow", median_depth=40.0, breadth=49.99),
        SampleCoverageStats("shallow", median_depth=19.5, breadth=99.0),
        SampleCoverageStats("empty", median_depth=None, breadth=0.0),
        SampleCoverageStats("noref", median_depth=None, breadth=None),
    ]
    plans = plan_downsampling(stats, min_breadth=50.0, min_median_coverage=20.0)
    assert [p.sample_id for p in plans] == [s.sample_id for s in stats]
    by_id = {p.sample_id: p for p in plans}

    assert by_id["edge"].accepted
    assert by_id["edge"].fraction == pytest.approx(1.10)
    assert by_id["edge"].keep_fraction == 1.0

    assert by_id["deep"].accepted
    assert by_id["deep"].fraction == pytest.approx(0.60)
    assert by_id["deep"].keep_fraction == pytest.approx(0.60)

    for sid in ("narrow", "shallow", "empty", "noref"):
        assert not by_id[sid].accepted
        assert by_id[sid].fraction is None
        with pytest.raises(ValueError):
            _ = by_id[sid].keep_fraction
    assert "breadth" in by_id["narrow"].reason
    assert "median" in by_id["shallow"].reason


def test_no_floor_on_small_fractions():
    plans = plan_downsampling(
        [SampleCoverageStats("huge", median_depth=20000.0, breadth=100.0)],
        min_breadth=10.0,
        min_median_coverage=20.0,
    )
    assert plans[0].fraction == pytest.approx(0.001 + FRACTION_MARGIN)


def test_profile_depth_skips_deletions_and_falls_back_to_range():
    q = QualifyingContigs(names=("c1",), lengths=(8,))
    spliced = make_record("c1", 0, 8, blocks=((0, 2), (5, 8)))  # 2M3D3M
    bare = make_record("c1", 1, 4, blocks=())
    profile = profile_depth([spliced, bare], q)
    assert profile.depths["c1"].tolist() == [1, 2, 1, 1, 0, 1, 1, 1]
