from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .aggregate import MergedArtifact, aggregate_results, clear_outputs
from .chunks import Chunk, ChunkSet
from .config import BatchConfig
from .errors import BatchError, BatchFailed, ConfigurationError, NoInputChunks, UploadFailure
from .gate import ConcurrencyGate
from .handoff import Notifier, Uploader, log_notifier
from .manifest import ProgressLog, build_manifest, write_json_atomic
from .scheduler import BatchResult, BatchScheduler, BatchState, ChunkRunner
from .worker import WorkerOutcome, WorkerProcessAdapter, resolve_backend


logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
PROGRESS_NAME = "progress.tsv"


@dataclass
class PipelineReport:
    status: str  # succeeded | empty
    batch: BatchResult
    artifacts: list[MergedArtifact] = field(default_factory=list)
    uploads: list[dict[str, Any]] = field(default_factory=list)
    manifest_path: Path | None = None


def build_runner(config: BatchConfig) -> WorkerProcessAdapter:
    if not config.dataset_dir.is_dir():
        raise ConfigurationError(f"dataset_dir not found: {config.dataset_dir}")
    backend = resolve_backend(config.binary, config.backend)
    logger.info("analysis tool backend: %s", backend.describe())
    return WorkerProcessAdapter(
        backend,
        config.dataset_dir,
        timeout_sec=config.timeout_sec,
        bind_dirs=[config.work_dir],
    )


def _write_manifest(config: BatchConfig, **kwargs: Any) -> Path:
    path = config.output_dir / MANIFEST_NAME
    write_json_atomic(path, build_manifest(config=config.to_dict(), **kwargs))
    return path


def _upload_all(
    artifacts: list[MergedArtifact], upload: Uploader, destination: str
) -> list[dict[str, Any]]:
    uploads: list[dict[str, Any]] = []
    for artifact in artifacts:
        try:
            upload(artifact.path, destination)
        except Exception as exc:
            if isinstance(exc, UploadFailure):
                raise
            raise UploadFailure(artifact.path, destination, str(exc)) from exc
        uploads.append({"path": str(artifact.path), "destination": destination, "status": "OK"})
    return uploads


def merge_outputs(config: BatchConfig) -> list[MergedArtifact]:
    return aggregate_results(config.work_dir, config.output_dir, config.output_basename)


def run_pipeline(
    config: BatchConfig,
    *,
    runner: ChunkRunner | None = None,
    upload: Uploader | None = None,
    notify: Notifier | None = log_notifier,
    cleanup: Callable[[], None] | None = None,
) -> PipelineReport:
    """Run one batch end to end: enumerate, dispatch, drain, merge, hand off.

    An empty input directory is a successful no-op: nothing is dispatched,
    merged or uploaded, and ``cleanup`` is called. Otherwise per-chunk outputs
    and merged artifacts of an earlier run are removed first, so a failed run
    leaves no merged artifacts behind. Worker failures surface as
    ``BatchFailed`` only after every dispatched worker has been reaped.
    """
    try:
        chunks = ChunkSet(config.input_dir, config.work_dir).require()
    except NoInputChunks as exc:
        logger.info("%s; nothing to do", exc)
        if cleanup is not None:
            cleanup()
        empty = BatchResult(state=BatchState.EMPTY, max_workers=config.max_workers)
        manifest_path = _write_manifest(config, status="empty", batch=empty.to_dict())
        return PipelineReport(status="empty", batch=empty, manifest_path=manifest_path)

    batch: BatchResult | None = None
    artifacts: list[MergedArtifact] = []
    try:
        # outputs of chunks outside this batch must not reach the merged artifacts
        clear_outputs(config.work_dir, config.output_dir, config.output_basename)
        if runner is None:
            runner = build_runner(config)

        gate = ConcurrencyGate(config.max_workers)
        progress = ProgressLog(config.work_dir / PROGRESS_NAME)
        progress.reset()

        def _record(idx: int, chunk: Chunk, outcome: WorkerOutcome) -> None:
            progress.append(
                {
                    "idx": idx,
                    "chunk": chunk.name,
                    "status": outcome.status,
                    "returncode": outcome.returncode,
                    "runtime_sec": outcome.runtime_sec,
                    "reason": outcome.reason,
                }
            )

        if notify is not None:
            notify(
                f"Starting batch of {len(chunks)} chunks from {config.input_dir} "
                f"({gate.max_slots} concurrent workers x {config.threads_per_worker} threads)"
            )
        scheduler = BatchScheduler(
            runner, gate, config.threads_per_worker, on_complete=_record
        )
        batch = scheduler.run(chunks)
        if not batch.ok:
            raise BatchFailed(batch.failures, batch.submitted)

        artifacts = merge_outputs(config)
        uploads: list[dict[str, Any]] = []
        if upload is not None and config.upload_dest:
            uploads = _upload_all(artifacts, upload, config.upload_dest)
    except BatchError as exc:
        logger.error("%s", exc)
        _write_manifest(
            config,
            status="failed",
            batch=None if batch is None else batch.to_dict(),
            artifacts=[a.to_dict() for a in artifacts],
            error=str(exc),
        )
        raise

    manifest_path = _write_manifest(
        config,
        status="succeeded",
        batch=batch.to_dict(),
        artifacts=[a.to_dict() for a in artifacts],
        uploads=uploads,
    )
    return PipelineReport(
        status="succeeded",
        batch=batch,
        artifacts=artifacts,
        uploads=uploads,
        manifest_path=manifest_path,
    )
