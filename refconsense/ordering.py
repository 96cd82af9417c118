"""Natural ordering of reference identifiers ("ctg2" before "ctg10")."""

import re
from functools import cmp_to_key
from typing import Iterable, List, Union

_CHUNK_RE = re.compile(r'\d+|\D+')


def split_identifier(identifier: str) -> List[Union[int, str]]:
    """Split an identifier into alternating text and integer chunks.

    Example:
        >>> split_identifier("ctg10.s2")
        ['ctg', 10, '.s', 2]
    """
    return [int(chunk) if chunk.isdigit() else chunk
            for chunk in _CHUNK_RE.findall(identifier)]


def natural_compare(a: str, b: str) -> int:
    """Three-way compare two identifiers in natural order.

    Numeric chunks compare by value, text chunks lexicographically. A numeric
    chunk facing a text chunk falls back to comparing the raw strings. When
    one split is a prefix of the other, the shorter one sorts first.
    """
    chunks_a = split_identifier(a)
    chunks_b = split_identifier(b)

    for x, y in zip(chunks_a, chunks_b):
        if isinstance(x, int) and isinstance(y, int):
            if x != y:
                return -1 if x < y else 1
        else:
            sx, sy = str(x), str(y)
            if sx != sy:
                return -1 if sx < sy else 1

    if len(chunks_a) != len(chunks_b):
        return -1 if len(chunks_a) < len(chunks_b) else 1

    # "ctg01" and "ctg1" split equally; keep the order total
    if a != b:
        return -1 if a < b else 1
    return 0


natural_key = cmp_to_key(natural_compare)


def natural_sort(identifiers: Iterable[str]) -> List[str]:
    return sorted(identifiers, key=natural_key)
