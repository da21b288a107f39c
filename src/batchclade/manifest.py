from __future__ import annotations

import hashlib
import json
import math
import os
import threading
from pathlib import Path
from typing import Any

from .io import atomic_output
from .system_info import get_system_metadata, now_utc_iso


MANIFEST_SCHEMA_VERSION = 1

PROGRESS_COLUMNS = (
    "idx",
    "chunk",
    "status",
    "returncode",
    "runtime_sec",
    "reason",
    "timestamp",
)


def sha256_file(path: str | Path) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for block in iter(lambda: handle.read(1024 * 1024), b""):
            h.update(block)
    return h.hexdigest()


def write_json_atomic(path: str | Path, payload: Any) -> None:
    with atomic_output(path) as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.write("\n")


def build_manifest(
    *,
    status: str,
    config: dict[str, Any],
    batch: dict[str, Any] | None = None,
    artifacts: list[dict[str, Any]] | None = None,
    uploads: list[dict[str, Any]] | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    from . import __version__

    artifact_rows = []
    for item in artifacts or []:
        row = dict(item)
        path = Path(str(row["path"]))
        row["sha256"] = sha256_file(path) if path.exists() else None
        artifact_rows.append(row)
    return {
        "schema_version": MANIFEST_SCHEMA_VERSION,
        "tool_version": __version__,
        "status": status,
        "error": error,
        "system": get_system_metadata(),
        "config": config,
        "batch": batch,
        "artifacts": artifact_rows,
        "uploads": list(uploads or []),
    }


def _tsv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return ""
        return f"{value:.6f}"
    return str(value).replace("\t", " ").replace("\n", " | ")


class ProgressLog:
    """Append-only TSV with one row per reaped task."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def reset(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            handle.write("\t".join(PROGRESS_COLUMNS) + "\n")

    def append(self, row: dict[str, Any]) -> None:
        row = dict(row)
        row.setdefault("timestamp", now_utc_iso())
        line = "\t".join(_tsv_cell(row.get(col)) for col in PROGRESS_COLUMNS)
        with self._lock:
            if not self.path.exists():
                self.reset()
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
