"""Consensus engine interface and the default column-voting engine."""

import logging
from collections import defaultdict
from typing import Dict, List, NamedTuple, Protocol, Sequence

import numpy as np

from refconsense.cigar import compress_ops
from refconsense.errors import EngineFailure, RefConsensusError
from refconsense.types import AlignmentRecord, ConsensusResult, Interval, ReferenceSequence

SYMBOLS = "ACGTN-"
GAP = SYMBOLS.index("-")
N_INDEX = SYMBOLS.index("N")

# Byte value -> symbol index; anything outside ACGT votes for N
_BASE_LOOKUP = np.full(256, N_INDEX, dtype=np.int64)
for _i, _base in enumerate("ACGT"):
    _BASE_LOOKUP[ord(_base)] = _i
    _BASE_LOOKUP[ord(_base.lower())] = _i


class Weighting(NamedTuple):
    use_reference_quality: bool = False
    quality_weighted: bool = False


class ConsensusEngine(Protocol):
    """Anything that turns a reference's alignments into one consensus."""

    def __call__(self, reference: ReferenceSequence, alignments: Sequence[AlignmentRecord],
                 ignore: Sequence[Interval], weighting: Weighting) -> ConsensusResult:
        ...


def invoke_consensus(engine: ConsensusEngine, reference: ReferenceSequence,
                     alignments: Sequence[AlignmentRecord], ignore: Sequence[Interval],
                     weighting: Weighting) -> ConsensusResult:
    """Call the engine once for a reference; failures are not retried.

    Raises:
        EngineFailure: The engine raised, or returned a result for another reference
    """
    try:
        result = engine(reference, alignments, ignore, weighting)
    except RefConsensusError:
        raise
    except Exception as e:
        raise EngineFailure(reference.id, e) from e

    if result is None or result.reference_id != reference.id:
        raise EngineFailure(reference.id, ValueError("engine returned no result for this reference"))
    return result


def phred_from_support(support: np.ndarray, max_quality: int) -> np.ndarray:
    """Convert winning-vote fractions into capped Phred qualities."""
    error = np.clip(1.0 - support, 0.0, 1.0)
    with np.errstate(divide='ignore'):
        quality = np.where(error > 0, -10.0 * np.log10(error), max_quality)
    return np.clip(np.rint(quality), 0, max_quality).astype(np.int64)


class PileupConsensusEngine:
    """Weighted majority vote over reference columns.

    Every aligned read base votes for its column, deletions vote for a gap,
    and inserted strings compete against the reads spanning the same gap
    without an insertion. Columns inside ignore intervals, and columns no
    read covers, keep the reference base and quality (N at quality 0 when
    the reference sequence is unknown).
    """

    def __init__(self, max_quality: int = 40, trace: bool = False):
        self.max_quality = max_quality
        self.trace = trace

    def __call__(self, reference: ReferenceSequence, alignments: Sequence[AlignmentRecord],
                 ignore: Sequence[Interval], weighting: Weighting) -> ConsensusResult:
        length = reference.length
        votes = np.zeros((length, len(SYMBOLS)), dtype=np.float64)
        gap_weight = np.zeros(length, dtype=np.float64)  # Reads continuing past each column
        insertions: Dict[int, Dict[str, float]] = defaultdict(lambda: defaultdict(float))

        for aln in alignments:
            self._add_votes(aln, length, weighting.quality_weighted, votes, gap_weight, insertions)

        ref_seq = reference.sequence.upper() if reference.sequence else None
        ref_qual = np.asarray(reference.quality, dtype=np.int64) if reference.quality is not None \
            else np.zeros(length, dtype=np.int64)

        if weighting.use_reference_quality and ref_seq is not None and reference.quality is not None:
            columns = np.arange(length)
            ref_idx = _BASE_LOOKUP[np.frombuffer(ref_seq.encode('ascii'), dtype=np.uint8)]
            votes[columns, ref_idx] += ref_qual
            gap_weight[:-1] += ref_qual[:-1]

        masked = np.zeros(length, dtype=bool)
        for interval in ignore:
            masked[max(interval.start, 0):min(interval.end, length)] = True

        totals = votes.sum(axis=1)
        winners = votes.argmax(axis=1)
        support = np.divide(votes[np.arange(length), winners], totals,
                            out=np.zeros(length), where=totals > 0)
        called_quality = phred_from_support(support, self.max_quality)
        keep_reference = masked | (totals <= 0)

        bases: List[str] = []
        quals: List[int] = []
        ops: List[str] = []
        trace_lines = [] if self.trace else None

        for col in range(length):
            if keep_reference[col]:
                bases.append(ref_seq[col] if ref_seq is not None else "N")
                quals.append(int(ref_qual[col]) if ref_seq is not None else 0)
                ops.append("M")
            elif winners[col] == GAP:
                ops.append("I")
            else:
                bases.append(SYMBOLS[winners[col]])
                quals.append(int(called_quality[col]))
                ops.append("M")

            if trace_lines is not None:
                counts = " ".join(f"{s}:{votes[col, i]:g}" for i, s in enumerate(SYMBOLS))
                state = "masked" if masked[col] else ("uncovered" if totals[col] <= 0 else "called")
                trace_lines.append(f"{reference.id}\t{col}\t{state}\t{counts}")

            if col + 1 >= length or col not in insertions:
                continue
            if keep_reference[col] or keep_reference[col + 1]:
                continue
            candidates = insertions[col]
            best, best_weight = max(candidates.items(), key=lambda item: (item[1], item[0]))
            no_insertion = gap_weight[col] - sum(candidates.values())
            if best_weight > no_insertion and gap_weight[col] > 0:
                q = int(phred_from_support(np.array([best_weight / gap_weight[col]]),
                                           self.max_quality)[0])
                bases.extend(best)
                quals.extend([q] * len(best))
                ops.extend("D" * len(best))
                if trace_lines is not None:
                    trace_lines.append(f"{reference.id}\t{col}\tinsert\t{best}:{best_weight:g}")

        logging.debug(f"{reference.id}: consensus called from {len(alignments)} alignments, "
                      f"{int(masked.sum())} masked columns")

        return ConsensusResult(
            reference_id=reference.id,
            sequence="".join(bases),
            quality=quals,
            cigar=compress_ops(ops),
            trace="\n".join(trace_lines) + "\n" if trace_lines else None,
        )

    @staticmethod
    def _add_votes(aln: AlignmentRecord, length: int, quality_weighted: bool,
                   votes: np.ndarray, gap_weight: np.ndarray,
                   insertions: Dict[int, Dict[str, float]]) -> None:
        seq = aln.sequence.upper()
        seq_codes = _BASE_LOOKUP[np.frombuffer(seq.encode('ascii'), dtype=np.uint8)]
        if quality_weighted and aln.quality is not None:
            weights = np.asarray(aln.quality, dtype=np.float64)
        else:
            weights = np.ones(len(seq), dtype=np.float64)

        last_column = min(aln.end, length) - 1
        r, q = aln.start, 0
        last_weight = float(weights[0]) if len(weights) else 1.0

        for op_len, op in aln.cigar:
            if op in "M=X":
                cols = np.arange(r, r + op_len)
                w = weights[q:q + op_len]
                inside = (cols >= 0) & (cols < length)
                np.add.at(votes, (cols[inside], seq_codes[q:q + op_len][inside]), w[inside])
                spanning = inside & (cols < last_column)
                np.add.at(gap_weight, cols[spanning], w[spanning])
                if op_len:
                    last_weight = float(w[-1])
                r += op_len
                q += op_len
            elif op == "D":
                cols = np.arange(r, r + op_len)
                inside = (cols >= 0) & (cols < length)
                votes[cols[inside], GAP] += last_weight
                gap_weight[cols[inside & (cols < last_column)]] += last_weight
                r += op_len
            elif op == "I":
                # Insertions before the first aligned column have no gap to fill
                if 0 < r <= last_column:
                    insertions[r - 1][seq[q:q + op_len]] += last_weight
                q += op_len
            elif op == "S":
                q += op_len
            elif op == "N":
                r += op_len
