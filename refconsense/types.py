"""Shared data structures for the per-reference consensus pipeline."""

from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

# (length, operation) pairs, operation being one of "MIDNSHP=X"
CigarOps = Tuple[Tuple[int, str], ...]

REFERENCE_CONSUMING = frozenset("MDN=X")
QUERY_CONSUMING = frozenset("MIS=X")
ALIGNED_QUERY = frozenset("MI=X")


class ReferenceSequence(NamedTuple):
    """A draft reference to be consensus-called."""
    id: str
    length: int
    sequence: Optional[str] = None
    quality: Optional[List[int]] = None  # Phred scores, already offset-decoded
    description: Optional[str] = None  # Header text carrying MCR/HCR tags

    @property
    def has_quality(self) -> bool:
        return self.quality is not None


class AlignmentRecord(NamedTuple):
    """One read aligned to a reference."""
    query_name: str
    reference_id: str
    start: int  # 0-based reference column of the first aligned base
    cigar: CigarOps
    sequence: Optional[str]
    quality: Optional[List[int]]
    score: float

    @property
    def span(self) -> int:
        """Number of reference columns covered by the alignment."""
        return sum(length for length, op in self.cigar if op in REFERENCE_CONSUMING)

    @property
    def end(self) -> int:
        return self.start + self.span

    @property
    def aligned_length(self) -> int:
        """Number of read bases placed in alignment columns (clips excluded)."""
        return sum(length for length, op in self.cigar if op in ALIGNED_QUERY)

    @property
    def nscore(self) -> float:
        """Alignment score normalized by aligned read length."""
        aligned = self.aligned_length
        if aligned == 0:
            return 0.0
        return self.score / aligned

    def max_insertion(self) -> int:
        return max((length for length, op in self.cigar if op == "I"), default=0)


class AlignmentSet:
    """Alignments of one reference, keyed by arrival order.

    Filters remove elements; iteration always follows arrival order so that
    score ties resolve towards the earlier alignment.
    """

    def __init__(self, reference_id: str):
        self.reference_id = reference_id
        self._records: Dict[int, AlignmentRecord] = {}
        self._next_key = 0

    def add(self, record: AlignmentRecord) -> int:
        key = self._next_key
        self._records[key] = record
        self._next_key += 1
        return key

    def insert(self, key: int, record: AlignmentRecord) -> None:
        """Insert under an explicit arrival key (used when rebuilding a subset)."""
        self._records[key] = record
        self._next_key = max(self._next_key, key + 1)

    def discard(self, key: int) -> None:
        self._records.pop(key, None)

    def retain(self, keys) -> int:
        """Keep only the given keys, returning how many records were dropped."""
        keep = set(keys)
        dropped = [key for key in self._records if key not in keep]
        for key in dropped:
            del self._records[key]
        return len(dropped)

    def items(self) -> Iterator[Tuple[int, AlignmentRecord]]:
        return iter(sorted(self._records.items()))

    def records(self) -> List[AlignmentRecord]:
        return [record for _, record in self.items()]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[AlignmentRecord]:
        return iter(self.records())


class Interval(NamedTuple):
    """Half-open column interval given as (start, length)."""
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length


class HaplotypeHint(NamedTuple):
    """Coverage hint from an HCR tag, kept for downstream haplotype tooling."""
    start: int
    length: int
    coverage: Optional[int] = None


class ConsensusResult(NamedTuple):
    """Output of a consensus engine for one reference.

    The edit script aligns the input reference (query) to the corrected
    sequence (target): M keeps a column, I is a reference column missing from
    the corrected sequence, D is a corrected base absent from the reference.
    """
    reference_id: str
    sequence: str
    quality: Optional[List[int]]
    cigar: CigarOps
    trace: Optional[str] = None


class ChimeraRecord(NamedTuple):
    """Candidate chimeric breakpoint in corrected-sequence coordinates."""
    reference_id: str
    start: int
    end: int
    score: float

    def to_tsv(self) -> str:
        return f"{self.reference_id}\t{self.start}\t{self.end}\t{self.score:.3f}"
