import gzip
from pathlib import Path

import pytest

from batchclade.io import atomic_output, iter_fasta
from batchclade.summary import summarize_record, write_alignment_summary


def test_iter_fasta_streams_wrapped_records(tmp_path: Path) -> None:
    fasta = tmp_path / "a.fasta"
    fasta.write_text(">s1 desc\nACGT\nac\n\n>s2\nNN--\n", encoding="utf-8")
    records = list(iter_fasta(fasta))
    assert [r.name for r in records] == ["s1 desc", "s2"]
    assert records[0].sequence == "ACGTAC"
    assert records[1].length == 4


def test_iter_fasta_reads_gzip(tmp_path: Path) -> None:
    fasta = tmp_path / "a.fasta.gz"
    with gzip.open(fasta, "wt", encoding="utf-8") as handle:
        handle.write(">s1\nACGT\n")
    assert [r.sequence for r in iter_fasta(fasta)] == ["ACGT"]


def test_iter_fasta_rejects_headerless_sequence(tmp_path: Path) -> None:
    fasta = tmp_path / "bad.fasta"
    fasta.write_text("ACGT\n>s1\nA\n", encoding="utf-8")
    with pytest.raises(ValueError, match="without header"):
        list(iter_fasta(fasta))


def test_atomic_output_leaves_nothing_on_error(tmp_path: Path) -> None:
    dest = tmp_path / "out.tsv"
    with pytest.raises(RuntimeError):
        with atomic_output(dest) as handle:
            handle.write("partial")
            raise RuntimeError("disk full")
    assert list(tmp_path.iterdir()) == []


def test_summary_counts_and_order(tmp_path: Path) -> None:
    assert summarize_record("ACGTN-RY") == (4, 1, 3)
    aligned = tmp_path / "c.aligned.fasta"
    aligned.write_text(">b\nAC-T\n>a\nNNNN\n", encoding="utf-8")
    out = tmp_path / "c.summary.tsv"
    write_alignment_summary(aligned, out)
    assert out.read_text(encoding="utf-8").splitlines() == [
        "seqName\tlength\tacgt\tgaps\tambiguous",
        "b\t4\t3\t1\t0",
        "a\t4\t0\t0\t4",
    ]
