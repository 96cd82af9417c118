"""Fatal error conditions raised by the consensus pipeline."""


class RefConsensusError(RuntimeError):
    """Base class for conditions that abort the whole run."""


class ReferenceMismatchError(RefConsensusError):
    """An alignment belongs to a different reference than the one being processed."""


class MalformedAlignmentError(RefConsensusError):
    """An alignment record lacks data the pipeline requires."""


class PhredOffsetError(RefConsensusError):
    """Declared and detected quality encodings disagree, or none is available."""


class ReferenceFormatError(RefConsensusError):
    """The reference file is neither FASTA nor FASTQ."""


class SourceError(RefConsensusError):
    """An input or output stream could not be opened."""


class EngineFailure(RefConsensusError):
    """The consensus engine failed to produce a result."""

    def __init__(self, reference_id: str, cause: Exception):
        super().__init__(f"Consensus engine failed on {reference_id}: {cause}")
        self.reference_id = reference_id
        self.cause = cause
