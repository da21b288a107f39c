from __future__ import annotations

import csv
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import pandas as pd

from .chunks import OUTPUT_KINDS, OutputKind, list_matching
from .errors import MergeFailure, MissingOutputs
from .io import atomic_output, open_text


logger = logging.getLogger(__name__)


@dataclass
class MergedArtifact:
    kind: str
    path: Path
    n_inputs: int
    n_rows: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "path": str(self.path),
            "n_inputs": self.n_inputs,
            "n_rows": self.n_rows,
        }


def find_outputs(work_dir: str | Path, kind: OutputKind) -> list[Path]:
    return list_matching(Path(work_dir) / kind.subdir, kind.pattern)


def _check_field_counts(path: Path, sep: str) -> None:
    # the parser pads short rows with empty cells; field counts come from the raw lines
    width = None
    with open_text(path) as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.rstrip("\r\n")
            if not line:
                continue
            n_fields = line.count(sep) + 1
            if width is None:
                width = n_fields
            elif n_fields != width:
                raise ValueError(
                    f"{path}: line {lineno} has {n_fields} fields but the header has {width}"
                )


def _read_table(path: Path, sep: str) -> tuple[list[str], pd.DataFrame]:
    """Return the header and data rows of one per-chunk table.

    The header line is parsed as an ordinary row so repeated column names are
    kept as written and a wide first data row is never taken for an index.
    Every cell stays a string.
    """
    _check_field_counts(path, sep)
    raw = pd.read_csv(
        path,
        sep=sep,
        header=None,
        dtype=str,
        keep_default_na=False,
        quoting=csv.QUOTE_NONE,
    )
    header = [str(name) for name in raw.iloc[0]]
    rows = raw.iloc[1:].reset_index(drop=True)
    rows.columns = range(len(header))
    return header, rows


def _align_rows(path: Path, header: list[str], canonical: list[str], rows: pd.DataFrame) -> pd.DataFrame:
    if header == canonical:
        return rows
    if len(set(header)) != len(header) or len(set(canonical)) != len(canonical):
        raise ValueError(
            f"{path}: header differs from the first table and repeats a column name; "
            "columns cannot be matched by name"
        )
    rows = rows.set_axis(header, axis=1).reindex(columns=canonical, fill_value="")
    return rows.set_axis(range(len(canonical)), axis=1)


def merge_tables(inputs: Sequence[Path], dest: Path, *, sep: str = "\t") -> int:
    """Stack the data rows of ``inputs`` under the first file's header.

    Columns missing from a later file are left empty and columns it adds are
    dropped. Ragged rows are an error. Returns the number of data rows written.
    """
    if not inputs:
        raise ValueError("merge_tables needs at least one input file.")
    canonical, first = _read_table(Path(inputs[0]), sep)
    frames = [first]
    for path in inputs[1:]:
        header, rows = _read_table(Path(path), sep)
        frames.append(_align_rows(Path(path), header, canonical, rows))
    merged = pd.concat(frames, ignore_index=True)
    with atomic_output(dest) as handle:
        handle.write(sep.join(canonical) + "\n")
        for row in merged.itertuples(index=False, name=None):
            handle.write(sep.join(row) + "\n")
    return int(len(merged))


def concatenate_files(inputs: Sequence[Path], dest: Path) -> None:
    with atomic_output(dest, mode="wb") as out:
        for path in inputs:
            with Path(path).open("rb") as src:
                shutil.copyfileobj(src, out, 1024 * 1024)


def merge_kind(work_dir: str | Path, kind: OutputKind, dest: str | Path) -> MergedArtifact:
    dest = Path(dest)
    inputs = find_outputs(work_dir, kind)
    if not inputs:
        raise MissingOutputs(kind.name, Path(work_dir) / kind.subdir, kind.pattern)
    logger.info("merging %d %s files into %s", len(inputs), kind.name, dest)
    try:
        if kind.tabular:
            n_rows = merge_tables(inputs, dest, sep=kind.separator)
            return MergedArtifact(kind=kind.name, path=dest, n_inputs=len(inputs), n_rows=n_rows)
        concatenate_files(inputs, dest)
    except (OSError, ValueError) as exc:
        raise MergeFailure(kind.name, str(exc)) from exc
    return MergedArtifact(kind=kind.name, path=dest, n_inputs=len(inputs))


def aggregate_results(
    work_dir: str | Path,
    output_dir: str | Path,
    basename: str,
    kinds: Sequence[OutputKind] = OUTPUT_KINDS,
) -> list[MergedArtifact]:
    """Merge every output kind into one artifact per kind under ``output_dir``.

    All kinds are checked for at least one input before anything is written, so
    a missing kind leaves no merged artifacts behind.
    """
    for kind in kinds:
        if not find_outputs(work_dir, kind):
            raise MissingOutputs(kind.name, Path(work_dir) / kind.subdir, kind.pattern)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    merged: list[MergedArtifact] = []
    try:
        for kind in kinds:
            merged.append(merge_kind(work_dir, kind, kind.merged_path(output_dir, basename)))
    except (MissingOutputs, MergeFailure):
        # an incomplete artifact set is never left behind
        for artifact in merged:
            artifact.path.unlink(missing_ok=True)
        raise
    return merged


def clear_outputs(
    work_dir: str | Path,
    output_dir: str | Path,
    basename: str,
    kinds: Sequence[OutputKind] = OUTPUT_KINDS,
) -> int:
    """Remove per-chunk outputs and merged artifacts left by an earlier run.

    Returns the number of per-chunk files removed.
    """
    removed = 0
    for kind in kinds:
        for path in find_outputs(work_dir, kind):
            path.unlink()
            removed += 1
        kind.merged_path(Path(output_dir), basename).unlink(missing_ok=True)
    if removed:
        logger.info("removed %d per-chunk outputs from an earlier run in %s", removed, work_dir)
    return removed
