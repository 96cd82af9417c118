"""Filter cascade applied to a reference's alignments before consensus calling.

Stages run in a fixed order, each one optional:

1. NC-score filter: drop alignments with a low normalized score
2. Repeat-region filter (read mode): thin out alignments piling up in
   collapsed repeats until coverage drops below the repeat threshold
3. Contained-alignment filter (contig mode): drop alignments lying inside
   another alignment's span
4. Overlap-window detection (contig mode): columns still at or above the
   repeat threshold become masked intervals
"""

import logging
from typing import Dict, List, NamedTuple

import numpy as np

from refconsense.config import ConsensusConfig
from refconsense.coverage import compute_coverage, find_runs
from refconsense.types import AlignmentSet, Interval, ReferenceSequence


class FilterReport(NamedTuple):
    """Result of running the cascade on one reference."""
    alignments: AlignmentSet
    coverage: np.ndarray  # Coverage after all filters
    overlap_windows: List[Interval]
    dropped: Dict[str, int]  # Stage name -> number of alignments removed


def filter_by_nscore(alignments: AlignmentSet, min_nscore: float) -> int:
    """Remove alignments whose normalized score is below min_nscore."""
    keep = [key for key, aln in alignments.items() if aln.nscore >= min_nscore]
    return alignments.retain(keep)


def filter_repeat_regions(alignments: AlignmentSet, length: int, repeat_coverage: int) -> int:
    """Thin out alignments inside runs where coverage reaches repeat_coverage.

    Within each run, overlapping alignments are removed lowest normalized
    score first (later arrival first on ties) until the run's peak coverage
    falls below the threshold.

    Returns:
        Number of alignments removed
    """
    coverage = compute_coverage(alignments, length)
    runs = find_runs(coverage, threshold=repeat_coverage)
    if not runs:
        return 0

    removed = set()
    for run in runs:
        if coverage[run.start:run.end].max() < repeat_coverage:
            continue  # Already resolved by removals in an earlier run

        candidates = [(aln.nscore, -key, key, aln) for key, aln in alignments.items()
                      if key not in removed and aln.start < run.end and aln.end > run.start]
        candidates.sort(key=lambda c: (c[0], c[1]))

        for _, _, key, aln in candidates:
            if coverage[run.start:run.end].max() < repeat_coverage:
                break
            start = max(aln.start, 0)
            end = min(aln.end, length)
            coverage[start:end] -= 1
            removed.add(key)

    for key in removed:
        alignments.discard(key)
    return len(removed)


def filter_contained(alignments: AlignmentSet) -> int:
    """Remove alignments whose span lies within another alignment's span.

    Of several alignments with identical spans, the highest-scoring one is
    kept, or the earliest arrival among equal scores.
    """
    ordered = sorted(alignments.items(),
                     key=lambda item: (item[1].start, -item[1].end, -item[1].score, item[0]))
    keep = []
    max_end = None
    for key, aln in ordered:
        if max_end is not None and aln.end <= max_end:
            continue
        keep.append(key)
        max_end = aln.end
    return alignments.retain(keep)


def detect_overlap_windows(coverage: np.ndarray, repeat_coverage: int) -> List[Interval]:
    """Columns where contigs still overlap at or above repeat_coverage."""
    return find_runs(coverage, threshold=repeat_coverage)


def apply_filter_cascade(alignments: AlignmentSet, reference: ReferenceSequence,
                         config: ConsensusConfig) -> FilterReport:
    """Run all enabled filter stages in order on a reference's alignments.

    The alignment set is modified in place and returned in the report
    together with the final coverage profile.
    """
    dropped = {}

    if config.min_nscore is not None:
        dropped['nscore'] = filter_by_nscore(alignments, config.min_nscore)

    if config.repeat_coverage is not None and not config.contig_mode:
        dropped['repeat'] = filter_repeat_regions(alignments, reference.length,
                                                  config.repeat_coverage)

    if config.contig_mode:
        dropped['contained'] = filter_contained(alignments)

    coverage = compute_coverage(alignments, reference.length)

    overlap_windows = []
    if config.contig_mode and config.repeat_coverage is not None:
        overlap_windows = detect_overlap_windows(coverage, config.repeat_coverage)

    for stage, count in dropped.items():
        if count:
            logging.debug(f"{reference.id}: {stage} filter removed {count} alignments")
    if overlap_windows:
        logging.debug(f"{reference.id}: {len(overlap_windows)} overlap windows masked")

    return FilterReport(alignments=alignments, coverage=coverage,
                        overlap_windows=overlap_windows, dropped=dropped)
