"""Per-column coverage and run detection over coverage arrays."""

from typing import Callable, Iterable, List, Optional

import numpy as np

from refconsense.types import AlignmentRecord, Interval


def compute_coverage(alignments: Iterable[AlignmentRecord], length: int) -> np.ndarray:
    """Compute alignment depth for every column of a reference.

    Each alignment covers [start, end) on the reference, including deleted
    columns. Coordinates outside the reference are clipped.

    Args:
        alignments: Alignments against a single reference
        length: Reference length in columns

    Returns:
        Integer array of length `length`
    """
    # One extra slot so that ends equal to length need no special case
    delta = np.zeros(length + 1, dtype=np.int64)
    for aln in alignments:
        start = min(max(aln.start, 0), length)
        end = min(max(aln.end, start), length)
        if start == end:
            continue
        delta[start] += 1
        delta[end] -= 1
    return np.cumsum(delta[:-1])


def find_runs(values, threshold: Optional[float] = None,
              predicate: Optional[Callable[[float], bool]] = None) -> List[Interval]:
    """Find maximal runs of consecutive elements satisfying a predicate.

    By default the predicate is `value >= threshold`. The scan is a single
    left-to-right pass: a run opens on a false->true transition and closes on
    the next true->false transition, or at the end of the array.

    Args:
        values: Sequence of numbers (list or numpy array)
        threshold: Lower bound (inclusive) used when no predicate is given
        predicate: Custom test applied to each element

    Returns:
        Intervals as (start, length), ascending and non-overlapping
    """
    if predicate is None:
        if threshold is None:
            raise ValueError("find_runs needs either a threshold or a predicate")
        predicate = lambda value: value >= threshold

    runs = []
    in_run = False
    run_start = 0
    for i, value in enumerate(values):
        hit = bool(predicate(value))
        if hit and not in_run:
            run_start = i
            in_run = True
        elif not hit and in_run:
            runs.append(Interval(run_start, i - run_start))
            in_run = False

    if in_run:
        runs.append(Interval(run_start, len(values) - run_start))

    return runs
