"""batchclade package."""

from .aggregate import MergedArtifact, aggregate_results
from .chunks import Chunk, ChunkSet, OutputKind
from .config import BatchConfig, compute_max_workers, load_config
from .errors import (
    BatchError,
    BatchFailed,
    ConfigurationError,
    MergeFailure,
    MissingBinary,
    MissingOutputs,
    NoInputChunks,
    UploadFailure,
    WorkerFailure,
)
from .gate import ConcurrencyGate
from .pipeline import PipelineReport, run_pipeline
from .scheduler import BatchResult, BatchScheduler, BatchState
from .worker import WorkerOutcome, WorkerProcessAdapter

__all__ = [
    "BatchConfig",
    "BatchError",
    "BatchFailed",
    "BatchResult",
    "BatchScheduler",
    "BatchState",
    "Chunk",
    "ChunkSet",
    "ConcurrencyGate",
    "ConfigurationError",
    "MergeFailure",
    "MergedArtifact",
    "MissingBinary",
    "MissingOutputs",
    "NoInputChunks",
    "OutputKind",
    "PipelineReport",
    "UploadFailure",
    "WorkerFailure",
    "WorkerOutcome",
    "WorkerProcessAdapter",
    "aggregate_results",
    "compute_max_workers",
    "load_config",
    "run_pipeline",
]

__version__ = "0.1.0"
