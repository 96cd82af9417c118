"""Alignment intake: validation and score-based binning for one reference."""

import heapq
import logging
from typing import Dict, Iterable, List, NamedTuple, Tuple

from refconsense.config import ConsensusConfig
from refconsense.errors import MalformedAlignmentError, ReferenceMismatchError
from refconsense.types import AlignmentRecord, AlignmentSet, ReferenceSequence


class IntakeStats(NamedTuple):
    """Counts collected while reading one reference's alignments."""
    seen: int
    admitted: int
    rejected_insertion: int  # Insertion longer than max_insertion_length
    evicted: int  # Displaced by better alignments in binned mode


def check_record(record: AlignmentRecord, reference: ReferenceSequence,
                 config: ConsensusConfig) -> None:
    """Validate a streamed record; any failure aborts the run."""
    if record.reference_id != reference.id:
        raise ReferenceMismatchError(
            f"Alignment {record.query_name} belongs to {record.reference_id}, "
            f"expected {reference.id}")
    if not record.sequence:
        raise MalformedAlignmentError(
            f"Alignment {record.query_name} on {reference.id} has no sequence")
    if config.quality_weighted and record.quality is None:
        raise MalformedAlignmentError(
            f"Alignment {record.query_name} on {reference.id} has no base qualities, "
            f"required for quality-weighted consensus")


def bin_index(record: AlignmentRecord, bin_size: int) -> int:
    """Bin of the alignment's midpoint on the reference."""
    return (record.start + record.span // 2) // bin_size


def read_alignments(records: Iterable[AlignmentRecord], reference: ReferenceSequence,
                    config: ConsensusConfig) -> Tuple[AlignmentSet, IntakeStats]:
    """Build the AlignmentSet of one reference from its alignment stream.

    In contig mode every valid record is admitted. Otherwise each bin of
    `bin_size` columns keeps at most `bin_size * max_coverage` aligned
    reference bases; when a bin overflows, its lowest-scoring alignment is
    evicted (ties evict the later arrival). A bin always keeps its best
    alignment, even if that one alone exceeds the budget.

    Raises:
        ReferenceMismatchError: A record belongs to another reference
        MalformedAlignmentError: A record lacks sequence (or quality when needed)
    """
    bins: Dict[int, List[Tuple[float, int, int, AlignmentRecord]]] = {}
    bin_bases: Dict[int, int] = {}
    budget = config.bin_size * config.max_coverage
    admitted: List[Tuple[int, AlignmentRecord]] = []

    seen = rejected = evicted = 0
    for arrival, record in enumerate(records):
        check_record(record, reference, config)
        seen += 1

        if config.max_insertion_length is not None and \
                record.max_insertion() > config.max_insertion_length:
            rejected += 1
            continue

        if config.contig_mode:
            admitted.append((arrival, record))
            continue

        b = bin_index(record, config.bin_size)
        heap = bins.setdefault(b, [])
        heapq.heappush(heap, (record.nscore, -arrival, arrival, record))
        bin_bases[b] = bin_bases.get(b, 0) + record.span
        while bin_bases[b] > budget and len(heap) > 1:
            _, _, _, worst = heapq.heappop(heap)
            bin_bases[b] -= worst.span
            evicted += 1

    if not config.contig_mode:
        for heap in bins.values():
            admitted.extend((arrival, record) for _, _, arrival, record in heap)

    alignments = AlignmentSet(reference.id)
    for arrival, record in sorted(admitted, key=lambda item: item[0]):
        alignments.insert(arrival, record)

    stats = IntakeStats(seen=seen, admitted=len(alignments),
                        rejected_insertion=rejected, evicted=evicted)
    logging.debug(f"{reference.id}: intake saw {seen} alignments, admitted {stats.admitted}, "
                  f"rejected {rejected} (long insertion), evicted {evicted} (coverage cap)")
    return alignments, stats
