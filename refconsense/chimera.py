"""Detection of candidate chimeric breakpoints in a consensus-called reference.

A breakpoint candidate is a bin boundary where many alignments end and many
others start while few alignments span it. Scores compare the weaker side of
ending/starting support against the support of spanning alignments:

    score = min(ending, starting) / (min(ending, starting) + spanning)

Each side sums normalized alignment scores, so good alignments weigh more.
Candidate boundaries in adjacent bins are reported as one column range.
"""

import logging
from typing import List, NamedTuple, Sequence

import numpy as np

from refconsense.cigar import CigarCursor
from refconsense.types import AlignmentRecord, ChimeraRecord, ConsensusResult


class Breakpoint(NamedTuple):
    """Candidate breakpoint in reference column space, [start, end)."""
    start: int
    end: int
    score: float


def score_boundaries(alignments: Sequence[AlignmentRecord], length: int,
                     bin_size: int) -> List[Breakpoint]:
    """Score every interior bin boundary of a reference.

    Returns:
        One Breakpoint per boundary with any ending and starting support;
        the range covers one bin on either side of the boundary
    """
    if not alignments or length <= bin_size:
        return []

    starts = np.fromiter((a.start for a in alignments), dtype=np.int64, count=len(alignments))
    ends = np.fromiter((a.end for a in alignments), dtype=np.int64, count=len(alignments))
    weights = np.fromiter((max(a.nscore, 0.0) for a in alignments), dtype=np.float64,
                          count=len(alignments))

    # Alignments touching the reference ends are not evidence of a junction
    can_end = ends < length
    can_start = starts > 0

    scored = []
    for x in range(bin_size, length, bin_size):
        lo, hi = x - bin_size, x + bin_size
        ending = weights[can_end & (ends >= lo) & (ends <= hi)].sum()
        starting = weights[can_start & (starts >= lo) & (starts <= hi)].sum()
        weaker = min(ending, starting)
        if weaker <= 0:
            continue
        spanning = weights[(starts <= lo) & (ends >= hi)].sum()
        scored.append(Breakpoint(lo, min(hi, length), float(weaker / (weaker + spanning))))
    return scored


def merge_breakpoints(candidates: Sequence[Breakpoint]) -> List[Breakpoint]:
    """Merge overlapping candidate ranges, keeping the best score."""
    merged: List[Breakpoint] = []
    for bp in sorted(candidates):
        if merged and bp.start < merged[-1].end:
            last = merged[-1]
            merged[-1] = Breakpoint(last.start, max(last.end, bp.end), max(last.score, bp.score))
        else:
            merged.append(bp)
    return merged


def find_breakpoints(alignments: Sequence[AlignmentRecord], length: int,
                     bin_size: int, min_score: float) -> List[Breakpoint]:
    """Candidate breakpoints scoring at least min_score, in ascending order."""
    candidates = [bp for bp in score_boundaries(alignments, length, bin_size)
                  if bp.score >= min_score]
    return merge_breakpoints(candidates)


def remap_breakpoints(reference_id: str, breakpoints: Sequence[Breakpoint],
                      consensus: ConsensusResult) -> List[ChimeraRecord]:
    """Translate column ranges into corrected-sequence coordinates.

    All breakpoints of a reference go through one cursor in ascending order.
    """
    cursor = CigarCursor(consensus.cigar)
    corrected_length = len(consensus.sequence)
    records = []
    for bp in sorted(breakpoints):
        start = cursor.remap(bp.start)
        end = cursor.remap(bp.end)
        start = min(max(start, 0), corrected_length)
        end = min(max(end, start), corrected_length)
        records.append(ChimeraRecord(reference_id, start, end, bp.score))
    return records


def detect_chimeras(reference_id: str, alignments: Sequence[AlignmentRecord], length: int,
                    consensus: ConsensusResult, bin_size: int,
                    min_score: float) -> List[ChimeraRecord]:
    """Find breakpoints of a processed reference and report them in corrected space."""
    breakpoints = find_breakpoints(alignments, length, bin_size, min_score)
    if breakpoints:
        logging.debug(f"{reference_id}: {len(breakpoints)} chimeric breakpoint candidates")
    return remap_breakpoints(reference_id, breakpoints, consensus)
