from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError, NoInputChunks


CHUNK_SUFFIXES = (
    ".fasta.gz",
    ".fa.gz",
    ".fna.gz",
    ".fasta.xz",
    ".fa.xz",
    ".fasta",
    ".fa",
    ".fas",
    ".fna",
)


@dataclass(frozen=True)
class OutputKind:
    """One category of per-chunk artifact and where its copies live."""

    name: str
    subdir: str
    suffix: str
    tabular: bool
    separator: str = "\t"

    @property
    def pattern(self) -> str:
        return f"*{self.suffix}"

    def chunk_path(self, work_dir: Path, chunk_name: str) -> Path:
        return Path(work_dir) / self.subdir / f"{chunk_name}{self.suffix}"

    def merged_path(self, output_dir: Path, basename: str) -> Path:
        return Path(output_dir) / f"{basename}{self.suffix}"


PRIMARY_TABLE = OutputKind(name="primary-table", subdir="tables", suffix=".tsv", tabular=True)
ALIGNED_OUTPUT = OutputKind(
    name="aligned-output", subdir="aligned", suffix=".aligned.fasta", tabular=False
)
CHUNK_SUMMARY = OutputKind(
    name="per-chunk-summary", subdir="summaries", suffix=".summary.tsv", tabular=True
)
OUTPUT_KINDS: tuple[OutputKind, ...] = (PRIMARY_TABLE, ALIGNED_OUTPUT, CHUNK_SUMMARY)


@dataclass(frozen=True)
class Chunk:
    name: str
    input_path: Path
    table_path: Path
    aligned_path: Path
    summary_path: Path
    scratch_dir: Path
    log_path: Path

    def output_path(self, kind: OutputKind) -> Path:
        if kind.name == PRIMARY_TABLE.name:
            return self.table_path
        if kind.name == ALIGNED_OUTPUT.name:
            return self.aligned_path
        if kind.name == CHUNK_SUMMARY.name:
            return self.summary_path
        raise ValueError(f"Unknown output kind: {kind.name}")


def chunk_name_for(path: Path) -> str | None:
    lower = path.name.lower()
    for suffix in CHUNK_SUFFIXES:
        if lower.endswith(suffix) and len(lower) > len(suffix):
            return path.name[: -len(suffix)]
    return None


def make_chunk(input_path: Path, work_dir: Path) -> Chunk:
    name = chunk_name_for(input_path)
    if name is None:
        raise ValueError(f"Not a chunk file: {input_path}")
    work_dir = Path(work_dir)
    return Chunk(
        name=name,
        input_path=Path(input_path),
        table_path=PRIMARY_TABLE.chunk_path(work_dir, name),
        aligned_path=ALIGNED_OUTPUT.chunk_path(work_dir, name),
        summary_path=CHUNK_SUMMARY.chunk_path(work_dir, name),
        scratch_dir=work_dir / "records" / name,
        log_path=work_dir / "logs" / f"{name}.log",
    )


def list_matching(directory: str | Path, pattern: str) -> list[Path]:
    """Regular files in ``directory`` whose names match ``pattern``, sorted by name.

    A missing directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return [
        p
        for p in sorted(directory.iterdir())
        if p.is_file() and fnmatch.fnmatchcase(p.name, pattern)
    ]


class ChunkSet:
    """Chunk files pre-split into ``input_dir``, in stable name order."""

    def __init__(self, input_dir: str | Path, work_dir: str | Path) -> None:
        self.input_dir = Path(input_dir)
        self.work_dir = Path(work_dir)

    def enumerate(self) -> list[Chunk]:
        if not self.input_dir.is_dir():
            raise ConfigurationError(f"input_dir not found: {self.input_dir}")
        chunks: list[Chunk] = []
        seen: dict[str, Path] = {}
        for path in sorted(self.input_dir.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            name = chunk_name_for(path)
            if name is None:
                continue
            if name in seen:
                raise ConfigurationError(
                    f"Chunk name collision: {seen[name].name} and {path.name} both map to '{name}'"
                )
            seen[name] = path
            chunks.append(make_chunk(path, self.work_dir))
        return chunks

    def require(self) -> list[Chunk]:
        chunks = self.enumerate()
        if not chunks:
            raise NoInputChunks(self.input_dir)
        return chunks

    def __len__(self) -> int:
        return len(self.enumerate())
