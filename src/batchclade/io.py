from __future__ import annotations

import gzip
import lzma
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator


@dataclass(frozen=True)
class FastaRecord:
    name: str
    sequence: str

    @property
    def length(self) -> int:
        return len(self.sequence)


def open_text(path: str | Path) -> IO[str]:
    """Open a possibly gzip/xz-compressed text file for reading."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    if suffix == ".xz":
        return lzma.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def iter_fasta(path: str | Path) -> Iterator[FastaRecord]:
    """Stream FASTA records. Sequences need not be aligned."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    name: str | None = None
    parts: list[str] = []
    with open_text(path) as handle:
        for line_no, raw in enumerate(handle, start=1):
            line = raw.strip()
            if not line:
                continue
            if line.startswith(">"):
                if name is not None:
                    yield FastaRecord(name=name, sequence="".join(parts).upper())
                name = line[1:].strip()
                parts = []
                if not name:
                    raise ValueError(f"Missing FASTA header name at line {line_no} in {path}")
                continue
            if name is None:
                raise ValueError(f"FASTA sequence without header at line {line_no} in {path}")
            parts.append("".join(line.split()))
    if name is not None:
        yield FastaRecord(name=name, sequence="".join(parts).upper())


@contextmanager
def atomic_output(path: str | Path, mode: str = "w") -> Iterator[IO]:
    """Write to a sibling temp file and rename over ``path`` only on success."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    encoding = None if "b" in mode else "utf-8"
    try:
        with tmp.open(mode, encoding=encoding) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
