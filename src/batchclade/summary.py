"""Default per-chunk summary derived from a chunk's aligned output."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from .io import atomic_output, iter_fasta


Summarizer = Callable[[Path, Path], None]

SUMMARY_COLUMNS = ("seqName", "length", "acgt", "gaps", "ambiguous")
_NUCLEOTIDES = frozenset("ACGT")


def summarize_record(sequence: str) -> tuple[int, int, int]:
    acgt = sum(1 for ch in sequence if ch in _NUCLEOTIDES)
    gaps = sequence.count("-")
    return acgt, gaps, len(sequence) - acgt - gaps


def write_alignment_summary(aligned_path: Path, summary_path: Path) -> None:
    """One row per aligned record, in the record order of ``aligned_path``."""
    with atomic_output(summary_path) as handle:
        handle.write("\t".join(SUMMARY_COLUMNS) + "\n")
        for record in iter_fasta(aligned_path):
            acgt, gaps, ambiguous = summarize_record(record.sequence)
            name = record.name.replace("\t", " ")
            handle.write(f"{name}\t{record.length}\t{acgt}\t{gaps}\t{ambiguous}\n")
