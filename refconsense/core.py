#!/usr/bin/env python3

import argparse
import dataclasses
import itertools
import logging
import sys
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from tqdm import tqdm

from refconsense import __version__
from refconsense.chimera import detect_chimeras
from refconsense.config import ConsensusConfig
from refconsense.engine import ConsensusEngine, PileupConsensusEngine, Weighting, invoke_consensus
from refconsense.errors import RefConsensusError
from refconsense.filters import apply_filter_cascade
from refconsense.fileio import BamAlignmentSource, OutputSink, read_references
from refconsense.intake import IntakeStats, read_alignments
from refconsense.masking import MaskedRegions, build_masked_regions
from refconsense.ordering import natural_key
from refconsense.types import AlignmentRecord, ChimeraRecord, ConsensusResult, ReferenceSequence


class ReferenceOutcome(NamedTuple):
    """Everything produced for one reference, ready to be written."""
    reference: ReferenceSequence
    consensus: Optional[ConsensusResult]  # None when no alignment survived filtering
    chimeras: List[ChimeraRecord]
    alignments: List[AlignmentRecord]
    masked: Optional[MaskedRegions]
    intake: IntakeStats
    dropped: Dict[str, int]


class RunSummary(NamedTuple):
    references: int
    consensus: int
    ignored: int
    chimeras: int


class ReferenceProcessor:
    """Runs the full pipeline for one reference at a time.

    Holds no per-reference state between calls, so one processor can serve
    several worker threads.
    """

    def __init__(self, config: ConsensusConfig, source, engine: ConsensusEngine):
        self.config = config
        self.source = source
        self.engine = engine

    def process(self, reference: ReferenceSequence) -> ReferenceOutcome:
        """Intake, filter, mask, call consensus and detect chimeras.

        Raises:
            ReferenceMismatchError: The alignment stream contains another reference
            MalformedAlignmentError: An alignment lacks required data
            EngineFailure: The consensus engine failed
        """
        config = self.config
        alignments, intake = read_alignments(self.source.fetch(reference.id), reference, config)
        report = apply_filter_cascade(alignments, reference, config)

        if len(report.alignments) == 0:
            logging.debug(f"{reference.id}: no usable alignments, reference ignored")
            return ReferenceOutcome(reference, None, [], [], None, intake, report.dropped)

        masked = build_masked_regions(reference, report.overlap_windows,
                                      ignore_tags=config.ignore_mask_tags)
        weighting = Weighting(
            use_reference_quality=config.use_reference_quality and reference.has_quality,
            quality_weighted=config.quality_weighted,
        )
        records = report.alignments.records()
        consensus = invoke_consensus(self.engine, reference, records, masked.ignore, weighting)

        chimeras = []
        if config.detect_chimera:
            chimeras = detect_chimeras(reference.id, records, reference.length, consensus,
                                       config.bin_size, config.chimera_min_score)

        return ReferenceOutcome(reference, consensus, chimeras, records, masked,
                                intake, report.dropped)


class ConsensusRunner:
    """Drives references through the pipeline in natural order.

    With more than one thread, references are processed concurrently but
    outcomes are written in natural order, from the calling thread only.
    """

    def __init__(self, config: ConsensusConfig, source, sink: OutputSink,
                 engine: Optional[ConsensusEngine] = None):
        self.config = config
        self.sink = sink
        if engine is None:
            engine = PileupConsensusEngine(max_quality=config.max_quality, trace=config.debug)
        self.processor = ReferenceProcessor(config, source, engine)

    def run(self, references: Iterable[ReferenceSequence]) -> RunSummary:
        ordered = sorted(references, key=lambda ref: natural_key(ref.id))
        logging.info(f"Processing {len(ordered)} references")

        counts = {'consensus': 0, 'ignored': 0, 'chimeras': 0}

        if self.config.threads > 1 and len(ordered) > 1:
            for outcome in tqdm(self._process_concurrently(ordered), total=len(ordered),
                                desc="Calling consensus"):
                self._emit(outcome, counts)
        else:
            for reference in tqdm(ordered, desc="Calling consensus"):
                self._emit(self.processor.process(reference), counts)

        summary = RunSummary(len(ordered), counts['consensus'], counts['ignored'], counts['chimeras'])
        logging.info(f"Wrote {summary.consensus} consensus sequences, {summary.ignored} ignored "
                     f"references, {summary.chimeras} chimera candidates")
        return summary

    def _process_concurrently(self, ordered: List[ReferenceSequence]) -> Iterator[ReferenceOutcome]:
        """Yield outcomes in the given order, keeping at most `threads` references in flight.

        When a reference fails, queued references are cancelled and only the
        ones already running are waited for before the error propagates.
        """
        threads = self.config.threads
        remaining = iter(ordered)
        with ThreadPoolExecutor(max_workers=threads) as executor:
            pending = deque(executor.submit(self.processor.process, reference)
                            for reference in itertools.islice(remaining, threads))
            while pending:
                future = pending.popleft()
                try:
                    outcome = future.result()
                except Exception:
                    for queued in pending:
                        queued.cancel()
                    raise
                for reference in itertools.islice(remaining, 1):
                    pending.append(executor.submit(self.processor.process, reference))
                yield outcome

    def _emit(self, outcome: ReferenceOutcome, counts: Dict[str, int]) -> None:
        if outcome.consensus is None:
            self.sink.write_ignored(outcome.reference)
            counts['ignored'] += 1
            return

        self.sink.write_consensus(outcome.consensus)
        self.sink.write_chimeras(outcome.chimeras)
        if self.config.debug:
            self.sink.write_trace(outcome.consensus.trace)
            self.sink.write_filtered(outcome.alignments)
        counts['consensus'] += 1
        counts['chimeras'] += len(outcome.chimeras)


def load_references(config: ConsensusConfig, source, reference_file: Optional[str] = None,
                    ref_offset: int = 0) -> Tuple[List[ReferenceSequence], ConsensusConfig]:
    """Load the references to process and adjust config to what they provide.

    Without a reference file, ids and lengths come from the alignment header;
    reference-quality weighting is then switched off.

    Returns:
        Tuple of (references in file order, effective config)
    """
    if reference_file:
        logging.info(f"Reading references from {reference_file}")
        references = read_references(reference_file, offset=ref_offset,
                                     phred_offset=config.phred_offset,
                                     require_quality_offset=config.use_reference_quality)
    else:
        logging.warning("No reference file given; using ids and lengths from the alignment header")
        references = (ReferenceSequence(id=name, length=length)
                      for name, length in source.references())
        if config.use_reference_quality:
            logging.warning("Reference quality weighting disabled: no reference qualities available")
            config = dataclasses.replace(config, use_reference_quality=False)

    if config.max_references is not None:
        references = itertools.islice(references, config.max_references)
    references = list(references)

    if config.use_reference_quality and not any(ref.has_quality for ref in references):
        logging.warning("Reference quality weighting requested but references carry no qualities")
    return references, config


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Per-reference consensus calling from read alignments, with chimera detection"
    )
    parser.add_argument("alignments", help="Sorted and indexed BAM/CRAM file of reads aligned to references")
    parser.add_argument("-r", "--reference",
                        help="FASTA/FASTQ file of references (default: ids and lengths from the BAM header)")
    parser.add_argument("--ref-offset", type=int, default=0,
                        help="Byte offset in the reference file to start reading from (default: 0)")
    parser.add_argument("-o", "--output-prefix", default="refconsense",
                        help="Prefix for output files (default: refconsense)")
    parser.add_argument("--contig-mode", action="store_true",
                        help="Aligned sequences are draft contigs: no coverage cap, contained "
                             "alignments removed, contig overlaps masked")
    parser.add_argument("--max-coverage", type=int, default=50,
                        help="Coverage cap for binned intake (default: 50)")
    parser.add_argument("--bin-size", type=int, default=20,
                        help="Bin size in columns for intake and chimera detection (default: 20)")
    parser.add_argument("--min-nscore", type=float, default=None,
                        help="Minimum alignment score per aligned base (default: no filter)")
    parser.add_argument("--repeat-coverage", type=int, default=None,
                        help="Coverage marking collapsed repeats, or contig overlaps in "
                             "contig mode (default: no filter)")
    parser.add_argument("--max-ins-length", type=int, default=None,
                        help="Reject alignments with a longer insertion (default: no limit)")
    parser.add_argument("--qual-weighted", action="store_true",
                        help="Weight read bases by their quality")
    parser.add_argument("--use-ref-qual", action="store_true",
                        help="Let reference bases vote with their own quality")
    parser.add_argument("--ignore-mask-tags", action="store_true",
                        help="Ignore MCR/HCR tags in reference headers")
    parser.add_argument("--detect-chimera", action="store_true",
                        help="Report candidate chimeric breakpoints")
    parser.add_argument("--chimera-min-score", type=float, default=0.5,
                        help="Minimum breakpoint score to report (default: 0.5)")
    parser.add_argument("--max-refs", type=int, default=None,
                        help="Process at most this many references (default: all)")
    parser.add_argument("--phred-offset", type=int, choices=[33, 64], default=None,
                        help="Quality offset of the reference file (default: auto-detect)")
    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Number of references processed concurrently (default: 1)")
    parser.add_argument("--append", action="store_true",
                        help="Append to existing output files instead of overwriting them")
    parser.add_argument("--debug", action="store_true",
                        help="Write engine trace and filtered alignments next to the output")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--version", action="version",
                        version=f"refconsense {__version__}",
                        help="Show program's version number and exit")
    return parser, parser.parse_args(argv)


def main(argv=None):
    parser, args = parse_arguments(argv)

    # Setup standard logging
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format=log_format
    )

    try:
        config = ConsensusConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        with BamAlignmentSource(args.alignments) as source:
            references, config = load_references(config, source, args.reference, args.ref_offset)
            if not references:
                logging.warning("No references found. Nothing to do.")
                sys.exit(0)

            with OutputSink(args.output_prefix, append=config.append, debug=config.debug,
                            alignment_header=source.header) as sink:
                ConsensusRunner(config, source, sink).run(references)
    except RefConsensusError as e:
        logging.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
