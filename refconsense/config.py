"""Run-wide configuration for the consensus pipeline."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ConsensusConfig:
    """Settings shared by every pipeline stage.

    Built once at startup and passed explicitly to each component.

    Attributes:
        contig_mode: Reads are draft contigs; disables coverage capping and
            enables the contained-alignment filter and overlap-window masking
        max_coverage: Per-column coverage cap used by binned intake
        bin_size: Bin width in columns for binned intake and chimera detection
        min_nscore: Minimum normalized alignment score (None disables the filter)
        repeat_coverage: Coverage marking collapsed repeats, or contig overlaps
            in contig mode (None disables both)
        max_insertion_length: Alignments with a longer insertion are rejected
            at intake (None accepts any)
        quality_weighted: Weight read votes by base quality
        use_reference_quality: Let the reference base vote with its own quality
        ignore_mask_tags: Do not parse MCR/HCR tags from reference headers
        detect_chimera: Run chimera detection after consensus calling
        chimera_min_score: Minimum local score of a reported breakpoint
        max_references: Stop after this many references (None for all)
        phred_offset: Expected quality encoding offset of the reference file
        threads: Number of references processed concurrently
        append: Append to existing output files instead of truncating
        debug: Write the trace file and filtered alignment archive
        max_quality: Upper bound for called consensus qualities
    """
    contig_mode: bool = False
    max_coverage: int = 50
    bin_size: int = 20
    min_nscore: Optional[float] = None
    repeat_coverage: Optional[int] = None
    max_insertion_length: Optional[int] = None
    quality_weighted: bool = False
    use_reference_quality: bool = False
    ignore_mask_tags: bool = False
    detect_chimera: bool = False
    chimera_min_score: float = 0.5
    max_references: Optional[int] = None
    phred_offset: Optional[int] = None
    threads: int = 1
    append: bool = False
    debug: bool = False
    max_quality: int = 40

    def validate(self) -> None:
        """Raise ValueError on settings that cannot drive a run."""
        if self.bin_size <= 0:
            raise ValueError(f"bin_size must be positive, got {self.bin_size}")
        if self.max_coverage <= 0:
            raise ValueError(f"max_coverage must be positive, got {self.max_coverage}")
        if self.repeat_coverage is not None and self.repeat_coverage <= 0:
            raise ValueError(f"repeat_coverage must be positive, got {self.repeat_coverage}")
        if not 0.0 <= self.chimera_min_score <= 1.0:
            raise ValueError(f"chimera_min_score must be within [0, 1], got {self.chimera_min_score}")
        if self.phred_offset not in (None, 33, 64):
            raise ValueError(f"phred_offset must be 33 or 64, got {self.phred_offset}")
        if self.threads < 1:
            raise ValueError(f"threads must be at least 1, got {self.threads}")
        if self.max_references is not None and self.max_references < 0:
            raise ValueError(f"max_references must not be negative, got {self.max_references}")

    @classmethod
    def from_args(cls, args) -> 'ConsensusConfig':
        """Create config from parsed command-line arguments."""
        config = cls(
            contig_mode=args.contig_mode,
            max_coverage=args.max_coverage,
            bin_size=args.bin_size,
            min_nscore=args.min_nscore,
            repeat_coverage=args.repeat_coverage,
            max_insertion_length=args.max_ins_length,
            quality_weighted=args.qual_weighted,
            use_reference_quality=args.use_ref_qual,
            ignore_mask_tags=args.ignore_mask_tags,
            detect_chimera=args.detect_chimera,
            chimera_min_score=args.chimera_min_score,
            max_references=args.max_refs,
            phred_offset=args.phred_offset,
            threads=args.threads,
            append=args.append,
            debug=args.debug,
        )
        config.validate()
        return config
