from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .config import BACKENDS, BatchConfig, load_config
from .errors import BatchError, ConfigurationError


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _emit_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, stream=sys.stderr)


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, metavar="JSON", help="Batch config file; flags override it.")
    p.add_argument("--input-dir", default=None, metavar="DIR", help="Directory of pre-split chunk files.")
    p.add_argument("--dataset-dir", default=None, metavar="DIR", help="Reference dataset directory.")
    p.add_argument("--output-dir", default=None, metavar="DIR")
    p.add_argument("--work-dir", default=None, metavar="DIR", help="Per-chunk outputs (default: OUTPUT_DIR/work).")
    p.add_argument("--processors", type=int, default=None, help="Total processor budget.")
    p.add_argument("--threads-per-worker", type=int, default=None)
    p.add_argument("--binary", default=None, metavar="PATH", help="Analysis tool executable.")
    p.add_argument("--backend", choices=list(BACKENDS), default=None)
    p.add_argument("--timeout-sec", type=int, default=None, help="Kill a worker after this many seconds.")
    p.add_argument("--output-basename", default=None)


def _config_from_args(args: argparse.Namespace) -> BatchConfig:
    overrides = {
        "input_dir": None if args.input_dir is None else Path(args.input_dir),
        "dataset_dir": None if args.dataset_dir is None else Path(args.dataset_dir),
        "output_dir": None if args.output_dir is None else Path(args.output_dir),
        "work_dir": None if args.work_dir is None else Path(args.work_dir),
        "processors": args.processors,
        "threads_per_worker": args.threads_per_worker,
        "binary": args.binary,
        "backend": args.backend,
        "timeout_sec": args.timeout_sec,
        "output_basename": args.output_basename,
        "upload_dest": getattr(args, "upload_dir", None),
    }
    if args.config:
        return load_config(args.config).with_overrides(**overrides)
    missing = [
        flag
        for flag, key in (
            ("--input-dir", "input_dir"),
            ("--dataset-dir", "dataset_dir"),
            ("--output-dir", "output_dir"),
        )
        if overrides[key] is None
    ]
    if missing:
        raise ConfigurationError(f"Missing required options (or --config): {', '.join(missing)}")
    return BatchConfig(**{k: v for k, v in overrides.items() if v is not None})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchclade",
        description="Run the analysis tool over pre-split chunks with a bounded worker pool and merge the results.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Process every chunk and merge the outputs.")
    _add_config_args(run)
    run.add_argument("--upload-dir", default=None, metavar="DIR", help="Copy merged artifacts here.")

    merge = subparsers.add_parser("merge", help="Merge existing per-chunk outputs only.")
    _add_config_args(merge)

    plan = subparsers.add_parser("plan", help="Show the chunk set and concurrency without running.")
    _add_config_args(plan)

    doctor = subparsers.add_parser("doctor", help="Check inputs, dataset, tool and budgets.")
    _add_config_args(doctor)

    return parser


def _cmd_run(args: argparse.Namespace) -> int:
    from .handoff import DirectoryUploader
    from .pipeline import run_pipeline

    config = _config_from_args(args)
    uploader = DirectoryUploader() if config.upload_dest else None
    report = run_pipeline(config, upload=uploader)
    if report.status == "empty":
        print(f"No chunks in {config.input_dir}; nothing to do.")
        return 0
    batch = report.batch
    print(f"Batch complete. OK={batch.succeeded} FAIL={batch.failed} workers={batch.max_workers}")
    for artifact in report.artifacts:
        print(f"{artifact.kind}: {artifact.path.resolve()}")
    print(f"manifest: {report.manifest_path}")
    return 0


def _cmd_merge(args: argparse.Namespace) -> int:
    from .pipeline import merge_outputs

    config = _config_from_args(args)
    for artifact in merge_outputs(config):
        print(f"{artifact.kind}: {artifact.path.resolve()} ({artifact.n_inputs} inputs)")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    from .chunks import ChunkSet

    config = _config_from_args(args)
    chunks = ChunkSet(config.input_dir, config.work_dir).enumerate()
    _emit_json(
        {
            "max_workers": config.max_workers,
            "processors": config.processors,
            "threads_per_worker": config.threads_per_worker,
            "n_chunks": len(chunks),
            "chunks": [{"name": c.name, "input": str(c.input_path)} for c in chunks],
        }
    )
    return 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    from .doctor import run_doctor

    report = run_doctor(_config_from_args(args))
    print(report.render())
    return 1 if report.has_failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    try:
        if args.command == "run":
            return _cmd_run(args)
        if args.command == "merge":
            return _cmd_merge(args)
        if args.command == "plan":
            return _cmd_plan(args)
        if args.command == "doctor":
            return _cmd_doctor(args)
    except BatchError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except Exception as exc:  # pragma: no cover
        parser.exit(status=2, message=f"error: {exc}\n")
    parser.exit(status=2, message="error: unknown command\n")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
