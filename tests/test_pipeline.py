from __future__ import annotations

import json
from pathlib import Path

import pytest

from batchclade.chunks import Chunk
from batchclade.config import BatchConfig
from batchclade.errors import BatchFailed, MissingBinary, MissingOutputs, UploadFailure
from batchclade.handoff import DirectoryUploader
from batchclade.pipeline import run_pipeline
from batchclade.scheduler import BatchState
from batchclade.worker import WorkerOutcome


def _config(tmp_path: Path, dataset_dir: Path, **kwargs) -> BatchConfig:
    return BatchConfig(
        input_dir=tmp_path / "in",
        dataset_dir=dataset_dir,
        output_dir=tmp_path / "out",
        processors=4,
        threads_per_worker=2,
        **kwargs,
    )


def test_pipeline_merges_uploads_and_writes_manifest(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks, monkeypatch
) -> None:
    monkeypatch.setenv("BATCHCLADE_FIXED_TIMESTAMP_UTC", "2024-01-01T00:00:00+00:00")
    make_chunks(tmp_path / "in", [f"chunk_{i:03d}" for i in range(7)])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool), upload_dest="remote/run1")
    notes: list[str] = []

    report = run_pipeline(
        config, upload=DirectoryUploader(tmp_path / "bucket"), notify=notes.append
    )

    assert report.status == "succeeded"
    assert report.batch.state is BatchState.SUCCEEDED
    assert report.batch.max_workers == 3
    assert len(notes) == 1 and "7 chunks" in notes[0]

    table = (tmp_path / "out" / "nextclade.tsv").read_text(encoding="utf-8").splitlines()
    assert len(table) == 1 + 14
    aligned = (tmp_path / "out" / "nextclade.aligned.fasta").read_text(encoding="utf-8")
    assert aligned.count(">") == 14
    summary = (tmp_path / "out" / "nextclade.summary.tsv").read_text(encoding="utf-8").splitlines()
    assert summary[0] == "seqName\tlength\tacgt\tgaps\tambiguous"
    assert len(summary) == 15

    uploaded = sorted(p.name for p in (tmp_path / "bucket" / "remote" / "run1").iterdir())
    assert uploaded == ["nextclade.aligned.fasta", "nextclade.summary.tsv", "nextclade.tsv"]

    manifest = json.loads(report.manifest_path.read_text(encoding="utf-8"))
    assert manifest["status"] == "succeeded"
    assert manifest["batch"]["submitted"] == 7
    assert manifest["batch"]["peak_concurrency"] <= 3
    assert manifest["system"]["timestamp_utc"] == "2024-01-01T00:00:00+00:00"
    assert all(len(a["sha256"]) == 64 for a in manifest["artifacts"])
    assert len(manifest["uploads"]) == 3

    progress = (config.work_dir / "progress.tsv").read_text(encoding="utf-8").splitlines()
    assert len(progress) == 1 + 7


def test_pipeline_failure_surfaces_after_drain(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks
) -> None:
    make_chunks(tmp_path / "in", ["a", "b_fail", "c", "d"])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool), upload_dest="x")
    uploads: list[tuple[Path, str]] = []

    with pytest.raises(BatchFailed) as info:
        run_pipeline(config, upload=lambda p, d: uploads.append((p, d)), notify=None)

    assert [f.chunk for f in info.value.failures] == ["b_fail"]
    assert info.value.submitted == 4
    assert uploads == []
    # siblings ran to completion
    assert len(list((config.work_dir / "tables").glob("*.tsv"))) == 3
    assert not (tmp_path / "out" / "nextclade.tsv").exists()
    manifest = json.loads((tmp_path / "out" / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "failed"
    assert manifest["batch"]["failed"] == 1


def test_empty_input_short_circuits(tmp_path: Path, dataset_dir: Path) -> None:
    (tmp_path / "in").mkdir()
    config = _config(tmp_path, dataset_dir, binary="/definitely/missing/nextclade", upload_dest="x")
    calls: list[str] = []

    report = run_pipeline(
        config,
        upload=lambda p, d: calls.append("upload"),
        notify=lambda m: calls.append("notify"),
        cleanup=lambda: calls.append("cleanup"),
    )

    assert report.status == "empty"
    assert report.batch.state is BatchState.EMPTY
    assert report.artifacts == []
    assert calls == ["cleanup"]
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["manifest.json"]


def test_missing_binary_is_fatal(tmp_path: Path, dataset_dir: Path, make_chunks, monkeypatch) -> None:
    monkeypatch.delenv("BATCHCLADE_NEXTCLADE_BACKEND", raising=False)
    make_chunks(tmp_path / "in", ["a"])
    config = _config(tmp_path, dataset_dir, binary="/definitely/missing/nextclade")
    with pytest.raises(MissingBinary):
        run_pipeline(config, notify=None)


def test_silent_worker_crash_is_caught_at_merge(tmp_path: Path, dataset_dir: Path, make_chunks) -> None:
    class SilentRunner:
        def run(self, chunk: Chunk, threads: int) -> WorkerOutcome:
            chunk.table_path.parent.mkdir(parents=True, exist_ok=True)
            chunk.table_path.write_text("seqName\nx\n", encoding="utf-8")
            return WorkerOutcome(chunk.name, "OK", 0, "ok", 0.0)

    make_chunks(tmp_path / "in", ["a", "b"])
    config = _config(tmp_path, dataset_dir)

    with pytest.raises(MissingOutputs) as info:
        run_pipeline(config, runner=SilentRunner(), notify=None)

    assert info.value.kind == "aligned-output"
    assert not (tmp_path / "out" / "nextclade.tsv").exists()


def test_upload_errors_become_upload_failure(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks
) -> None:
    def _refuse(path: Path, destination: str) -> None:
        raise ConnectionError("remote unavailable")

    make_chunks(tmp_path / "in", ["a"])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool), upload_dest="s3://bucket/run")
    with pytest.raises(UploadFailure, match="remote unavailable"):
        run_pipeline(config, upload=_refuse, notify=None)


def test_rerun_with_new_input_set_merges_only_its_chunks(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks
) -> None:
    (old,) = make_chunks(tmp_path / "in", ["old"])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool))
    run_pipeline(config, notify=None)
    old.unlink()
    make_chunks(tmp_path / "in", ["new"])

    report = run_pipeline(config, notify=None)

    table = (tmp_path / "out" / "nextclade.tsv").read_text(encoding="utf-8")
    assert "new_s1" in table and "new_s2" in table
    assert "old_s" not in table
    aligned = (tmp_path / "out" / "nextclade.aligned.fasta").read_text(encoding="utf-8")
    assert aligned.count(">") == 2
    assert all(a.n_inputs == 1 for a in report.artifacts)
    assert not (config.work_dir / "tables" / "old.tsv").exists()


def test_failed_rerun_leaves_no_merged_artifacts(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks
) -> None:
    make_chunks(tmp_path / "in", ["a"])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool))
    run_pipeline(config, notify=None)
    assert (tmp_path / "out" / "nextclade.tsv").exists()
    make_chunks(tmp_path / "in", ["b_fail"])

    with pytest.raises(BatchFailed):
        run_pipeline(config, notify=None)

    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["manifest.json", "work"]
    manifest = json.loads((tmp_path / "out" / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "failed"
    assert manifest["artifacts"] == []


def test_uploader_failure_is_not_wrapped_twice(
    tmp_path: Path, fake_tool: Path, dataset_dir: Path, make_chunks
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory\n", encoding="utf-8")
    make_chunks(tmp_path / "in", ["a"])
    config = _config(tmp_path, dataset_dir, binary=str(fake_tool), upload_dest="run1")

    with pytest.raises(UploadFailure) as info:
        run_pipeline(config, upload=DirectoryUploader(blocker), notify=None)

    assert isinstance(info.value.__cause__, OSError)
    assert info.value.destination == "run1"
