"""Edit-script helpers and coordinate remapping into corrected-sequence space."""

import re
from typing import Iterable, List, Tuple

from refconsense.types import CigarOps

CIGAR_OPERATIONS = "MIDNSHP=XB"
_CIGAR_RE = re.compile(r'(\d+)([MIDNSHP=XB])')


def parse_cigar(cigar: str) -> CigarOps:
    """Parse a CIGAR string into (length, operation) pairs.

    Raises:
        ValueError: If the string contains anything but CIGAR tokens
    """
    ops = []
    position = 0
    for match in _CIGAR_RE.finditer(cigar):
        if match.start() != position:
            raise ValueError(f"Invalid CIGAR string: {cigar}")
        ops.append((int(match.group(1)), match.group(2)))
        position = match.end()
    if position != len(cigar):
        raise ValueError(f"Invalid CIGAR string: {cigar}")
    return tuple(ops)


def format_cigar(ops: Iterable[Tuple[int, str]]) -> str:
    return "".join(f"{length}{op}" for length, op in ops)


def from_pysam_cigartuples(cigartuples) -> CigarOps:
    """Convert pysam (op_code, length) tuples into (length, operation) pairs."""
    return tuple((length, CIGAR_OPERATIONS[code]) for code, length in cigartuples)


def to_pysam_cigartuples(ops: CigarOps) -> List[Tuple[int, int]]:
    return [(CIGAR_OPERATIONS.index(op), length) for length, op in ops]


def compress_ops(ops: Iterable[str]) -> CigarOps:
    """Run-length encode a per-column operation string (e.g. "MMMDI")."""
    result = []
    for op in ops:
        if result and result[-1][1] == op:
            result[-1][0] += 1
        else:
            result.append([1, op])
    return tuple((length, op) for length, op in result)


class CigarCursor:
    """Monotonic cursor translating alignment columns into corrected coordinates.

    The cursor walks a consensus edit script once, accumulating matched,
    inserted and deleted lengths. A lookup for column c consumes operations
    until matched + inserted reaches c and returns c + deleted - inserted.
    A column falling inside an insertion run maps to the corrected position
    where that run was dropped, so results never decrease.

    Lookups must be requested in non-decreasing column order; the cursor is
    never rewound, which keeps the total cost linear in the script length.
    """

    def __init__(self, ops: CigarOps):
        self.ops = tuple(ops)
        self.position = 0
        self.matched = 0
        self.inserted = 0
        self.deleted = 0
        self._last_column = None
        self._last_op = None

    @property
    def offset(self) -> int:
        return self.deleted - self.inserted

    def remap(self, column: int) -> int:
        """Map an alignment column to its corrected-sequence coordinate.

        Raises:
            ValueError: If called with a column smaller than the previous one
        """
        if self._last_column is not None and column < self._last_column:
            raise ValueError(
                f"Out-of-order coordinate lookup: {column} after {self._last_column}")
        self._last_column = column

        while self.matched + self.inserted < column and self.position < len(self.ops):
            length, op = self.ops[self.position]
            if op in "M=X":
                self.matched += length
            elif op == "I":
                self.inserted += length
            elif op == "D":
                self.deleted += length
            self._last_op = op
            self.position += 1

        corrected = column + self.offset
        if self._last_op == "I":
            # Columns inside a reference-only run sit where the run was removed
            corrected += max(0, self.matched + self.inserted - column)
        return corrected
