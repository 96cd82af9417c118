"""Masked-region tags and construction of the ignore-coordinate set."""

import re
from typing import Iterable, List, NamedTuple, Optional

from refconsense.types import HaplotypeHint, Interval, ReferenceSequence

# MCR:<offset>,<length>  masked coverage region from earlier processing
MCR_TAG_RE = re.compile(r'(?:^|[\s;])MCR:(\d+),(\d+)(?=$|[\s;])')
# HCR:<offset>,<length>[,<coverage>]  haplotype coverage hint
HCR_TAG_RE = re.compile(r'(?:^|[\s;])HCR:(\d+),(\d+)(?:,(\d+))?(?=$|[\s;])')


class MaskedRegions(NamedTuple):
    ignore: List[Interval]  # Passed to the consensus engine
    tag_intervals: List[Interval]
    haplotype_hints: List[HaplotypeHint]


def parse_mask_tags(description: Optional[str]) -> List[Interval]:
    """Extract MCR intervals from a reference header description."""
    if not description:
        return []
    return [Interval(int(offset), int(length))
            for offset, length in MCR_TAG_RE.findall(description)]


def parse_haplotype_tags(description: Optional[str]) -> List[HaplotypeHint]:
    """Extract HCR coverage hints from a reference header description."""
    if not description:
        return []
    return [HaplotypeHint(int(offset), int(length), int(cov) if cov else None)
            for offset, length, cov in HCR_TAG_RE.findall(description)]


def merge_ignore_coordinates(tag_intervals: Iterable[Interval],
                             overlap_windows: Iterable[Interval]) -> List[Interval]:
    """Union of tag intervals and overlap windows.

    Intervals are concatenated as they are: duplicates and overlaps are kept,
    the consensus engine handles any merging.
    """
    return list(tag_intervals) + list(overlap_windows)


def build_masked_regions(reference: ReferenceSequence, overlap_windows: Iterable[Interval],
                         ignore_tags: bool = False) -> MaskedRegions:
    """Build the ignore-coordinate set of a reference.

    Tags are only read when tag parsing is enabled and the reference was
    loaded with a description; otherwise only overlap windows are masked.
    """
    if ignore_tags or not reference.description:
        tag_intervals, hints = [], []
    else:
        tag_intervals = parse_mask_tags(reference.description)
        hints = parse_haplotype_tags(reference.description)

    return MaskedRegions(
        ignore=merge_ignore_coordinates(tag_intervals, overlap_windows),
        tag_intervals=tag_intervals,
        haplotype_hints=hints,
    )
