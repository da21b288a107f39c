from __future__ import annotations

import os
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from .aggregate import find_outputs
from .chunks import OUTPUT_KINDS, ChunkSet
from .config import BatchConfig
from .errors import BatchError
from .worker import ENV_BIN, resolve_backend


CHECK_STATUSES = ("PASS", "WARN", "FAIL")


@dataclass
class DoctorCheck:
    name: str
    status: str  # one of CHECK_STATUSES
    message: str
    fix: str | None = None

    def lines(self) -> list[str]:
        out = [f"[{self.status}] {self.name}: {self.message}"]
        if self.fix:
            out.append(f"  fix: {self.fix}")
        return out


@dataclass
class DoctorReport:
    """Readiness checks for one batch configuration."""

    checks: list[DoctorCheck]

    def counts(self) -> dict[str, int]:
        tally = Counter(check.status for check in self.checks)
        return {status: tally.get(status, 0) for status in CHECK_STATUSES}

    @property
    def has_failures(self) -> bool:
        return self.counts()["FAIL"] > 0

    @property
    def overall(self) -> str:
        counts = self.counts()
        if counts["FAIL"]:
            return "FAIL"
        return "WARN" if counts["WARN"] else "PASS"

    def render(self) -> str:
        body = [line for check in self.checks for line in check.lines()]
        tally = ", ".join(f"{n} {status.lower()}" for status, n in self.counts().items())
        body.append("")
        body.append(f"Batch readiness: {self.overall} ({tally})")
        return "\n".join(body)


def _check_chunks(config: BatchConfig) -> DoctorCheck:
    if not config.input_dir.is_dir():
        return DoctorCheck(
            "input_chunks",
            "FAIL",
            f"input_dir not found: {config.input_dir}",
            fix="Point --input-dir at the directory written by the splitter.",
        )
    try:
        chunks = ChunkSet(config.input_dir, config.work_dir).enumerate()
    except BatchError as exc:
        return DoctorCheck("input_chunks", "FAIL", str(exc))
    if not chunks:
        return DoctorCheck(
            "input_chunks",
            "WARN",
            f"no chunk files in {config.input_dir}; a run would exit without doing anything",
        )
    return DoctorCheck("input_chunks", "PASS", f"{len(chunks)} chunks found")


def _check_dataset(config: BatchConfig) -> DoctorCheck:
    if not config.dataset_dir.is_dir():
        return DoctorCheck(
            "dataset_dir",
            "FAIL",
            f"dataset_dir not found: {config.dataset_dir}",
            fix="Download the reference dataset before running the batch.",
        )
    if not any(config.dataset_dir.iterdir()):
        return DoctorCheck("dataset_dir", "WARN", f"dataset_dir is empty: {config.dataset_dir}")
    return DoctorCheck("dataset_dir", "PASS", str(config.dataset_dir))


def _check_backend(config: BatchConfig) -> DoctorCheck:
    try:
        backend = resolve_backend(config.binary, config.backend)
    except BatchError as exc:
        return DoctorCheck(
            "tool_backend",
            "FAIL",
            str(exc),
            fix=f"Install nextclade, pass --binary, or set {ENV_BIN}.",
        )
    return DoctorCheck("tool_backend", "PASS", backend.describe())


def _check_budget(config: BatchConfig) -> DoctorCheck:
    k = config.max_workers
    msg = (
        f"processors={config.processors} threads_per_worker={config.threads_per_worker} "
        f"-> {k} concurrent workers"
    )
    if config.threads_per_worker > config.processors:
        return DoctorCheck(
            "concurrency_budget",
            "WARN",
            msg + " (one worker alone exceeds the processor budget)",
            fix="Lower --threads-per-worker to at most --processors.",
        )
    return DoctorCheck("concurrency_budget", "PASS", msg)


def _check_output_dir(config: BatchConfig) -> DoctorCheck:
    out = config.output_dir
    probe_root = out if out.exists() else next((p for p in out.parents if p.exists()), None)
    if probe_root is None or not os.access(probe_root, os.W_OK):
        return DoctorCheck("output_dir", "FAIL", f"output_dir is not writable: {out}")
    return DoctorCheck("output_dir", "PASS", str(out))


def _check_stale_outputs(config: BatchConfig) -> DoctorCheck:
    stale = {k.name: len(find_outputs(config.work_dir, k)) for k in OUTPUT_KINDS}
    if any(stale.values()):
        detail = ", ".join(f"{name}={n}" for name, n in stale.items())
        return DoctorCheck(
            "work_dir",
            "WARN",
            f"work_dir already holds per-chunk outputs ({detail}); `run` clears them, `merge` would include them",
            fix=f"Use `run` rather than `merge` after changing the input set in {config.input_dir}.",
        )
    return DoctorCheck("work_dir", "PASS", str(Path(config.work_dir)))


def run_doctor(config: BatchConfig) -> DoctorReport:
    return DoctorReport(
        checks=[
            _check_chunks(config),
            _check_dataset(config),
            _check_backend(config),
            _check_budget(config),
            _check_output_dir(config),
            _check_stale_outputs(config),
        ]
    )
