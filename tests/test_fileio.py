#!/usr/bin/env python3
"""
Tests for reference reading, phred offset detection, BAM access and the output sink.
"""

import os

import pysam
import pytest
from Bio import SeqIO

from refconsense.errors import PhredOffsetError, ReferenceFormatError, SourceError
from refconsense.fileio import (
    BamAlignmentSource,
    OutputSink,
    detect_phred_offset,
    detect_reference_format,
    read_references,
    record_to_segment,
    resolve_phred_offset,
)
from refconsense.types import AlignmentRecord, ChimeraRecord, ConsensusResult, ReferenceSequence


def write(path, text):
    with open(path, 'w') as f:
        f.write(text)
    return str(path)


def build_bam(path, records, lengths, index=True):
    """Write records (already coordinate sorted) to a BAM file."""
    header = {'HD': {'VN': '1.6', 'SO': 'coordinate'},
              'SQ': [{'SN': name, 'LN': length} for name, length in lengths]}
    with pysam.AlignmentFile(str(path), 'wb', header=header) as out:
        for record in records:
            out.write(record_to_segment(record, out.header))
    if index:
        pysam.index(str(path))
    return str(path)


def make_aln(name, ref, start, sequence, score=None):
    return AlignmentRecord(name, ref, start, ((len(sequence), "M"),), sequence,
                           [30] * len(sequence), float(score if score is not None else len(sequence)))


class TestReferenceFormat:
    def test_fasta_and_fastq(self, tmp_path):
        assert detect_reference_format(write(tmp_path / "a.fa", "\n>r1\nACGT\n")) == 'fasta'
        assert detect_reference_format(write(tmp_path / "a.fq", "@r1\nACGT\n+\nIIII\n")) == 'fastq'

    def test_unknown_format(self, tmp_path):
        with pytest.raises(ReferenceFormatError):
            detect_reference_format(write(tmp_path / "a.txt", "ACGT\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceError):
            detect_reference_format(str(tmp_path / "missing.fa"))


class TestPhredOffset:
    def test_detect_offsets(self, tmp_path):
        assert detect_phred_offset(write(tmp_path / "33.fq", "@r\nACGT\n+\n!+5I\n")) == 33
        assert detect_phred_offset(write(tmp_path / "64.fq", "@r\nACGT\n+\n@Ugh\n")) == 64
        assert detect_phred_offset(write(tmp_path / "amb.fq", "@r\nACGT\n+\nIIII\n")) is None

    def test_mismatch_is_fatal(self, tmp_path):
        path = write(tmp_path / "33.fq", "@r\nACGT\n+\n!!!!\n")
        with pytest.raises(PhredOffsetError):
            resolve_phred_offset(path, configured=64)

    def test_undetermined_offset(self, tmp_path):
        path = write(tmp_path / "amb.fq", "@r\nACGT\n+\nIIII\n")
        assert resolve_phred_offset(path, configured=None) == 33
        assert resolve_phred_offset(path, configured=64) == 64
        with pytest.raises(PhredOffsetError):
            resolve_phred_offset(path, configured=None, required=True)


class TestReadReferences:
    def test_fastq_with_tags(self, tmp_path):
        path = write(tmp_path / "refs.fq", "@ctg1 MCR:1,2\nACGT\n+\n!!II\n@ctg2\nGG\n+\n55\n")
        refs = list(read_references(path))

        assert [r.id for r in refs] == ["ctg1", "ctg2"]
        assert refs[0].description == "MCR:1,2"
        assert refs[0].quality == [0, 0, 40, 40]
        assert refs[0].length == 4
        assert refs[1].description is None

    def test_fasta_has_no_quality(self, tmp_path):
        refs = list(read_references(write(tmp_path / "refs.fa", ">ctg1 some text\nACGT\n")))
        assert refs[0].quality is None
        assert refs[0].sequence == "ACGT"
        assert not refs[0].has_quality

    def test_phred64(self, tmp_path):
        path = write(tmp_path / "refs.fq", "@ctg1\nACGT\n+\n@@hh\n")
        refs = list(read_references(path, phred_offset=64))
        assert refs[0].quality == [0, 0, 40, 40]

    def test_byte_offset_resume(self, tmp_path):
        first = ">ctg1\nACGT\n"
        path = write(tmp_path / "refs.fa", first + ">ctg2\nGGCC\n")
        refs = list(read_references(path, offset=len(first.encode())))
        assert [r.id for r in refs] == ["ctg2"]


class TestBamAlignmentSource:
    def test_fetch_and_header(self, tmp_path):
        records = [
            make_aln("r1", "ctg1", 0, "ACGTACGTAC", score=8),
            make_aln("r2", "ctg1", 5, "ACGTA"),
            make_aln("r3", "ctg2", 2, "GGGG"),
        ]
        bam = build_bam(tmp_path / "alns.bam", records, [("ctg1", 50), ("ctg2", 30)])

        with BamAlignmentSource(bam) as source:
            assert source.references() == [("ctg1", 50), ("ctg2", 30)]
            fetched = list(source.fetch("ctg1"))
            assert [r.query_name for r in fetched] == ["r1", "r2"]
            assert fetched[0].cigar == ((10, "M"),)
            assert fetched[0].score == 8.0
            assert fetched[0].quality == [30] * 10
            assert fetched[0].reference_id == "ctg1"
            assert list(source.fetch("unknown")) == []

    def test_missing_index_is_fatal(self, tmp_path):
        bam = build_bam(tmp_path / "alns.bam", [], [("ctg1", 50)], index=False)
        with pytest.raises(SourceError):
            BamAlignmentSource(bam)

    def test_missing_index_closes_handle(self, tmp_path, monkeypatch):
        bam = build_bam(tmp_path / "alns.bam", [], [("ctg1", 50)], index=False)
        closed = []
        original_close = BamAlignmentSource.close

        def recording_close(source):
            closed.extend(source._open_handles)
            original_close(source)

        monkeypatch.setattr(BamAlignmentSource, "close", recording_close)
        with pytest.raises(SourceError, match="no index"):
            BamAlignmentSource(bam)
        assert len(closed) == 1
        assert closed[0].closed

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(SourceError):
            BamAlignmentSource(str(tmp_path / "missing.bam"))


class TestOutputSink:
    def test_writes_all_streams(self, tmp_path):
        prefix = str(tmp_path / "out" / "run")
        with OutputSink(prefix) as sink:
            sink.write_consensus(ConsensusResult("ctg1", "ACGT", [10, 20, 30, 40], ((4, "M"),)))
            sink.write_ignored(ReferenceSequence("ctg2", 2, "GG", None, "MCR:0,1"))
            sink.write_chimeras([ChimeraRecord("ctg1", 1, 3, 0.75)])

        consensus = list(SeqIO.parse(f"{prefix}.consensus.fq", "fastq"))
        assert consensus[0].id == "ctg1"
        assert str(consensus[0].seq) == "ACGT"
        assert consensus[0].letter_annotations["phred_quality"] == [10, 20, 30, 40]

        ignored = list(SeqIO.parse(f"{prefix}.ignored.fq", "fasta"))
        assert ignored[0].id == "ctg2"

        with open(f"{prefix}.chim.tsv") as f:
            assert f.read() == "ctg1\t1\t3\t0.750\n"

        assert not os.path.exists(f"{prefix}.trace.txt")

    def test_append_mode(self, tmp_path):
        prefix = str(tmp_path / "run")
        for append in (False, True):
            with OutputSink(prefix, append=append) as sink:
                sink.write_chimeras([ChimeraRecord("ctg1", 1, 3, 0.5)])
        with open(f"{prefix}.chim.tsv") as f:
            assert len(f.readlines()) == 2

        with OutputSink(prefix) as sink:
            sink.write_chimeras([ChimeraRecord("ctg1", 1, 3, 0.5)])
        with open(f"{prefix}.chim.tsv") as f:
            assert len(f.readlines()) == 1

    def test_debug_streams(self, tmp_path):
        prefix = str(tmp_path / "run")
        header = pysam.AlignmentHeader.from_dict({'SQ': [{'SN': 'ctg1', 'LN': 50}]})
        with OutputSink(prefix, debug=True, alignment_header=header) as sink:
            sink.write_trace("ctg1\t0\tcalled\n")
            sink.write_filtered([make_aln("r1", "ctg1", 0, "ACGT")])

        with open(f"{prefix}.trace.txt") as f:
            assert f.read() == "ctg1\t0\tcalled\n"
        with pysam.AlignmentFile(f"{prefix}.filtered.bam") as bam:
            assert [seg.query_name for seg in bam] == ["r1"]

    def test_unwritable_debug_bam_is_fatal(self, tmp_path):
        prefix = str(tmp_path / "run")
        os.makedirs(f"{prefix}.filtered.bam")
        header = pysam.AlignmentHeader.from_dict({'SQ': [{'SN': 'ctg1', 'LN': 50}]})
        with pytest.raises(SourceError, match="Cannot open output file"):
            OutputSink(prefix, debug=True, alignment_header=header)
