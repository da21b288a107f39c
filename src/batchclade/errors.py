from __future__ import annotations

from pathlib import Path


class BatchError(Exception):
    """Base class for every condition that ends a batch run."""

    exit_code = 1


class ConfigurationError(BatchError, ValueError):
    pass


class MissingBinary(BatchError, RuntimeError):
    pass


class NoInputChunks(BatchError):
    """Raised when the input directory holds no chunks. Not a failure."""

    exit_code = 0

    def __init__(self, input_dir: str | Path) -> None:
        self.input_dir = Path(input_dir)
        super().__init__(f"No input chunks found in: {self.input_dir}")


class WorkerFailure(BatchError):
    def __init__(self, chunk: str, returncode: int | None, reason: str) -> None:
        self.chunk = chunk
        self.returncode = returncode
        self.reason = reason
        super().__init__(f"chunk {chunk} failed (rc={returncode}): {reason}")


class BatchFailed(BatchError):
    def __init__(self, failures: list[WorkerFailure], submitted: int) -> None:
        self.failures = list(failures)
        self.submitted = int(submitted)
        names = ", ".join(f.chunk for f in self.failures[:5])
        if len(self.failures) > 5:
            names += ", ..."
        super().__init__(
            f"{len(self.failures)}/{self.submitted} chunks failed: {names}"
        )


class MissingOutputs(BatchError):
    def __init__(self, kind: str, directory: str | Path, pattern: str) -> None:
        self.kind = kind
        self.directory = Path(directory)
        self.pattern = pattern
        super().__init__(
            f"No '{kind}' outputs matching {pattern!r} in {self.directory}"
        )


class MergeFailure(BatchError):
    def __init__(self, kind: str, reason: str) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(f"Merging '{kind}' outputs failed: {reason}")


class UploadFailure(BatchError):
    def __init__(self, path: str | Path, destination: str, reason: str) -> None:
        self.path = Path(path)
        self.destination = destination
        super().__init__(f"Upload of {self.path} to {destination} failed: {reason}")
