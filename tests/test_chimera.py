#!/usr/bin/env python3
"""
Tests for chimeric breakpoint detection and remapping into corrected coordinates.
"""

import pytest

from refconsense.chimera import (
    Breakpoint,
    detect_chimeras,
    find_breakpoints,
    merge_breakpoints,
    remap_breakpoints,
    score_boundaries,
)
from refconsense.cigar import parse_cigar
from refconsense.types import AlignmentRecord, ChimeraRecord, ConsensusResult

LENGTH = 200
BIN = 20


def make_aln(start, end, name="read"):
    length = end - start
    return AlignmentRecord(name, "ref1", start, ((length, "M"),), "A" * length, None, float(length))


def junction_reads(copies=5):
    """Reads from two unrelated halves meeting at column 100."""
    return [make_aln(0, 100) for _ in range(copies)] + \
           [make_aln(100, 200) for _ in range(copies)]


def consensus(cigar, length):
    return ConsensusResult("ref1", "A" * length, [40] * length, parse_cigar(cigar))


class TestScoring:
    def test_junction_scores_highest_at_breakpoint(self):
        scored = {bp.start + BIN: bp.score for bp in score_boundaries(junction_reads(), LENGTH, BIN)}
        assert scored[100] == pytest.approx(1.0)
        assert scored[80] == pytest.approx(0.5)
        assert scored[120] == pytest.approx(0.5)
        assert 60 not in scored

    def test_spanning_reads_lower_the_score(self):
        reads = junction_reads() + [make_aln(0, 200) for _ in range(5)]
        scored = {bp.start + BIN: bp.score for bp in score_boundaries(reads, LENGTH, BIN)}
        assert scored[100] == pytest.approx(0.5)

    def test_reference_ends_are_not_junctions(self):
        assert score_boundaries([make_aln(0, 200)], LENGTH, BIN) == []

    def test_short_reference(self):
        assert score_boundaries(junction_reads(), BIN, BIN) == []
        assert score_boundaries([], LENGTH, BIN) == []


def test_merge_overlapping_candidates():
    merged = merge_breakpoints([
        Breakpoint(80, 120, 1.0),
        Breakpoint(60, 100, 0.5),
        Breakpoint(100, 140, 0.6),
        Breakpoint(160, 200, 0.7),
    ])
    assert merged == [Breakpoint(60, 140, 1.0), Breakpoint(160, 200, 0.7)]


class TestFindBreakpoints:
    def test_threshold_selects_center(self):
        assert find_breakpoints(junction_reads(), LENGTH, BIN, 0.6) == [Breakpoint(80, 120, 1.0)]

    def test_lower_threshold_merges_neighbours(self):
        assert find_breakpoints(junction_reads(), LENGTH, BIN, 0.5) == [Breakpoint(60, 140, 1.0)]

    def test_supported_junction_not_reported(self):
        reads = junction_reads() + [make_aln(0, 200) for _ in range(5)]
        assert find_breakpoints(reads, LENGTH, BIN, 0.6) == []


class TestRemap:
    def test_identity_without_indels(self):
        records = remap_breakpoints("ref1", [Breakpoint(80, 120, 1.0)], consensus("200M", 200))
        assert records == [ChimeraRecord("ref1", 80, 120, 1.0)]

    def test_upstream_insertion_shifts_breakpoint(self):
        # Ten bases inserted into the consensus after column 50
        records = remap_breakpoints("ref1", [Breakpoint(80, 120, 1.0)],
                                    consensus("50M10D150M", 210))
        assert records == [ChimeraRecord("ref1", 90, 130, 1.0)]

    def test_several_breakpoints_one_pass(self):
        breakpoints = [Breakpoint(150, 170, 0.8), Breakpoint(10, 30, 0.9)]
        records = remap_breakpoints("ref1", breakpoints, consensus("20M5I175M", 195))
        assert [(r.start, r.end) for r in records] == [(10, 25), (145, 165)]

    def test_clipped_to_corrected_length(self):
        records = remap_breakpoints("ref1", [Breakpoint(180, 200, 0.9)],
                                    consensus("180M10I10M", 190))
        assert records[0].end <= 190


def test_detect_chimeras_end_to_end():
    records = detect_chimeras("ref1", junction_reads(), LENGTH, consensus("200M", 200), BIN, 0.6)
    assert records == [ChimeraRecord("ref1", 80, 120, 1.0)]
    assert records[0].to_tsv() == "ref1\t80\t120\t1.000"
