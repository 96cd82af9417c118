"""Input and output adapters: alignment files, reference files and the output sink."""

import logging
import os
import threading
from typing import Iterator, List, Optional, Sequence, Tuple

import pysam
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqIO.QualityIO import FastqGeneralIterator
from Bio.SeqRecord import SeqRecord

from refconsense.cigar import from_pysam_cigartuples, to_pysam_cigartuples
from refconsense.errors import PhredOffsetError, ReferenceFormatError, SourceError
from refconsense.types import AlignmentRecord, ChimeraRecord, ConsensusResult, ReferenceSequence

# Quality characters below ';' only occur with offset 33,
# characters above 'J' only with offset 64
_PHRED33_ONLY_BELOW = ord(';')
_PHRED64_MIN = ord('@')
_PHRED33_MAX = ord('J')


# ---------------------------------------------------------------------------
# Reference sequences
# ---------------------------------------------------------------------------

def detect_reference_format(path: str, offset: int = 0) -> str:
    """Return 'fasta' or 'fastq' from the first non-blank character at offset.

    Raises:
        ReferenceFormatError: Neither '>' nor '@' starts the first record
        SourceError: The file cannot be opened
    """
    try:
        with open(path, 'r') as f:
            f.seek(offset)
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                if stripped.startswith('>'):
                    return 'fasta'
                if stripped.startswith('@'):
                    return 'fastq'
                break
    except OSError as e:
        raise SourceError(f"Cannot open reference file {path}: {e}") from e
    raise ReferenceFormatError(f"Cannot detect format of reference file {path} (expected FASTA or FASTQ)")


def detect_phred_offset(path: str, offset: int = 0, max_records: int = 1000) -> Optional[int]:
    """Guess the quality offset of a FASTQ file from its quality characters.

    Returns:
        33 or 64, or None if the sampled qualities fit both encodings
    """
    lowest, highest = 255, 0
    with open(path, 'r') as f:
        f.seek(offset)
        for i, (_, _, qual) in enumerate(FastqGeneralIterator(f)):
            if i >= max_records:
                break
            if not qual:
                continue
            codes = qual.encode('ascii')
            lowest = min(lowest, min(codes))
            highest = max(highest, max(codes))

    if lowest < _PHRED33_ONLY_BELOW:
        return 33
    if lowest >= _PHRED64_MIN and highest > _PHRED33_MAX:
        return 64
    return None


def resolve_phred_offset(path: str, configured: Optional[int], offset: int = 0,
                         required: bool = False) -> Optional[int]:
    """Reconcile the configured quality offset with the one found in the file.

    Raises:
        PhredOffsetError: Configured and detected offsets differ, or no offset
            is known while reference qualities are required
    """
    detected = detect_phred_offset(path, offset)
    if configured is not None and detected is not None and configured != detected:
        raise PhredOffsetError(
            f"Reference qualities in {path} look like phred offset {detected}, "
            f"but offset {configured} was configured")
    resolved = configured if configured is not None else detected
    if resolved is None:
        if required:
            raise PhredOffsetError(
                f"Cannot determine the phred offset of {path}; set it explicitly")
        logging.warning(f"Cannot determine the phred offset of {path}, assuming 33")
        resolved = 33
    return resolved


def read_references(path: str, offset: int = 0, phred_offset: Optional[int] = None,
                    require_quality_offset: bool = False) -> Iterator[ReferenceSequence]:
    """Yield reference records in file order, starting at a byte offset.

    Raises:
        ReferenceFormatError: The file is neither FASTA nor FASTQ
        PhredOffsetError: See resolve_phred_offset
    """
    fmt = detect_reference_format(path, offset)
    if fmt == 'fastq':
        resolved = resolve_phred_offset(path, phred_offset, offset, require_quality_offset)
        parse_format = 'fastq-illumina' if resolved == 64 else 'fastq-sanger'
    else:
        parse_format = 'fasta'

    with open(path, 'r') as f:
        f.seek(offset)
        for record in SeqIO.parse(f, parse_format):
            quality = record.letter_annotations.get('phred_quality')
            description = record.description
            if description.startswith(record.id):
                description = description[len(record.id):].strip()
            yield ReferenceSequence(
                id=record.id,
                length=len(record.seq),
                sequence=str(record.seq),
                quality=list(quality) if quality is not None else None,
                description=description or None,
            )


# ---------------------------------------------------------------------------
# Alignments
# ---------------------------------------------------------------------------

def segment_to_record(segment: pysam.AlignedSegment) -> AlignmentRecord:
    """Convert a mapped pysam segment into an AlignmentRecord."""
    cigar = from_pysam_cigartuples(segment.cigartuples or [])
    quality = segment.query_qualities
    record = AlignmentRecord(
        query_name=segment.query_name,
        reference_id=segment.reference_name,
        start=segment.reference_start,
        cigar=cigar,
        sequence=segment.query_sequence,
        quality=list(quality) if quality is not None else None,
        score=0.0,
    )
    if segment.has_tag('AS'):
        score = float(segment.get_tag('AS'))
    elif segment.has_tag('NM'):
        score = float(record.aligned_length - segment.get_tag('NM'))
    else:
        score = float(record.aligned_length)
    return record._replace(score=score)


def record_to_segment(record: AlignmentRecord, header: pysam.AlignmentHeader) -> pysam.AlignedSegment:
    segment = pysam.AlignedSegment(header)
    segment.query_name = record.query_name
    segment.reference_name = record.reference_id
    segment.reference_start = record.start
    segment.cigartuples = to_pysam_cigartuples(record.cigar)
    segment.query_sequence = record.sequence
    if record.quality is not None:
        segment.query_qualities = pysam.qualitystring_to_array(
            "".join(chr(q + 33) for q in record.quality))
    segment.mapping_quality = 255
    segment.set_tag('AS', int(round(record.score)))
    return segment


class BamAlignmentSource:
    """Region-restricted access to an indexed BAM/CRAM file.

    Every thread gets its own file handle so references can be fetched
    concurrently.
    """

    def __init__(self, path: str):
        self.path = path
        self._local = threading.local()
        self._lock = threading.Lock()
        self._open_handles = []
        handle = self._handle()
        if not handle.has_index():
            self.close()
            raise SourceError(f"Alignment file {path} has no index; sort and index it first")
        self.header = handle.header
        self._names = set(handle.references)

    def _handle(self) -> pysam.AlignmentFile:
        handle = getattr(self._local, 'handle', None)
        if handle is None:
            try:
                handle = pysam.AlignmentFile(self.path)
            except (OSError, ValueError) as e:
                raise SourceError(f"Cannot open alignment file {self.path}: {e}") from e
            self._local.handle = handle
            with self._lock:
                self._open_handles.append(handle)
        return handle

    def references(self) -> List[Tuple[str, int]]:
        """Reference ids and lengths declared in the alignment header."""
        handle = self._handle()
        return list(zip(handle.references, handle.lengths))

    def fetch(self, reference_id: str) -> Iterator[AlignmentRecord]:
        """Alignments on one reference; none if the header does not list it."""
        if reference_id not in self._names:
            logging.debug(f"{reference_id} is not in the header of {self.path}")
            return
        try:
            segments = self._handle().fetch(reference_id)
        except (KeyError, ValueError) as e:
            raise SourceError(f"Cannot fetch {reference_id} from {self.path}: {e}") from e
        for segment in segments:
            if segment.is_unmapped:
                continue
            yield segment_to_record(segment)

    def close(self) -> None:
        with self._lock:
            for handle in self._open_handles:
                handle.close()
            self._open_handles = []
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class OutputSink:
    """All output streams of a run, written by a single thread.

    Files:
        {prefix}.consensus.fq  consensus sequences with qualities
        {prefix}.ignored.fq    references left without usable alignments
        {prefix}.chim.tsv      reference id, corrected start, end, score
        {prefix}.trace.txt     engine trace (debug only)
        {prefix}.filtered.bam  alignments used for consensus (debug only)
    """

    def __init__(self, prefix: str, append: bool = False, debug: bool = False,
                 alignment_header: Optional[pysam.AlignmentHeader] = None):
        self.prefix = prefix
        mode = 'a' if append else 'w'
        self.paths = {
            'consensus': f"{prefix}.consensus.fq",
            'ignored': f"{prefix}.ignored.fq",
            'chimera': f"{prefix}.chim.tsv",
        }
        if debug:
            self.paths['trace'] = f"{prefix}.trace.txt"

        directory = os.path.dirname(os.path.abspath(prefix))
        self._handles = {}
        self._filtered = None
        try:
            os.makedirs(directory, exist_ok=True)
            for name, path in self.paths.items():
                self._handles[name] = open(path, mode)
            if debug and alignment_header is not None:
                # BAM cannot be appended to; the debug archive always starts fresh
                self.paths['filtered'] = f"{prefix}.filtered.bam"
                self._filtered = pysam.AlignmentFile(self.paths['filtered'], 'wb',
                                                     header=alignment_header)
        except (OSError, ValueError) as e:
            self.close()
            raise SourceError(f"Cannot open output file: {e}") from e

    def write_consensus(self, result: ConsensusResult) -> None:
        quality = result.quality if result.quality is not None else [0] * len(result.sequence)
        record = SeqRecord(Seq(result.sequence), id=result.reference_id, description="",
                           letter_annotations={'phred_quality': quality})
        SeqIO.write(record, self._handles['consensus'], 'fastq')

    def write_ignored(self, reference: ReferenceSequence) -> None:
        sequence = reference.sequence or ""
        description = reference.description or ""
        record = SeqRecord(Seq(sequence), id=reference.id, description=description)
        if reference.quality is not None:
            record.letter_annotations['phred_quality'] = reference.quality
            SeqIO.write(record, self._handles['ignored'], 'fastq')
        else:
            SeqIO.write(record, self._handles['ignored'], 'fasta')

    def write_chimeras(self, records: Sequence[ChimeraRecord]) -> None:
        handle = self._handles['chimera']
        for record in records:
            handle.write(record.to_tsv() + "\n")

    def write_trace(self, trace: Optional[str]) -> None:
        if trace and 'trace' in self._handles:
            self._handles['trace'].write(trace)

    def write_filtered(self, records: Sequence[AlignmentRecord]) -> None:
        if self._filtered is None:
            return
        for record in records:
            self._filtered.write(record_to_segment(record, self._filtered.header))

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles = {}
        if getattr(self, '_filtered', None) is not None:
            self._filtered.close()
            self._filtered = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
